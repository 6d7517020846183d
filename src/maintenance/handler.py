from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from common.config import PersistenceSettings, configure_logging
from state.aggregator import AppStateAggregator
from state.factory import store_from_settings


logger = logging.getLogger(__name__)

ENV_BACKUP_PATH = "GRASP_STATE_BACKUP_PATH"


def _backup_path(event: Dict[str, Any]) -> str:
    path = event.get("path") or os.environ.get(ENV_BACKUP_PATH)
    if not path:
        raise RuntimeError(f"Missing required configuration: path or {ENV_BACKUP_PATH}")
    return str(path)


def _build_aggregator() -> AppStateAggregator:
    settings = PersistenceSettings.from_env()
    return AppStateAggregator(
        store_from_settings(settings),
        autosave_interval=settings.autosave_seconds,
        max_age_ms=settings.max_age_ms,
    )


def run_once(
    event: Optional[Dict[str, Any]] = None,
    *,
    aggregator: Optional[AppStateAggregator] = None,
) -> Dict[str, Any]:
    """
    Housekeeping over stored page state.

    Actions (event["action"]):
    - "evict" (default): remove stale and unreadable records.
    - "export": write every known page's raw record to `path` as JSON.
    - "import": load such a file and write the records back verbatim.
    """
    event = event or {}
    action = str(event.get("action") or "evict").lower()
    agg = aggregator or _build_aggregator()

    if action == "evict":
        removed = agg.clear_old_states()
        logger.info("Evicted %d stale state record(s)", len(removed))
        return {"ok": True, "action": action, "evicted": len(removed), "keys": removed}

    if action == "export":
        path = Path(_backup_path(event))
        states = agg.export_states()
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            json.dump(states, f, indent=2, sort_keys=True)
        logger.info("Exported %d page state(s) to %s", len(states), path)
        return {"ok": True, "action": action, "exported": len(states), "path": str(path)}

    if action == "import":
        path = Path(_backup_path(event))
        with path.open("r", encoding="utf-8") as f:
            states = json.load(f)
        if not isinstance(states, dict):
            return {"ok": False, "action": action, "note": "backup file is not a JSON object"}
        written = agg.import_states(states)
        return {"ok": True, "action": action, "imported": written, "path": str(path)}

    return {"ok": False, "action": action, "note": f"unknown action {action!r}"}


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    configure_logging()
    return run_once(event)
