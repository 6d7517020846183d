from __future__ import annotations

import logging
from typing import Iterable, List

from .codec import parse_record
from .keyed_store import KeyedStore, UnreadableEntryError
from .keys import PAGE_KEYS, is_state_key, legacy_storage_key
from .models import MAX_AGE_MS


logger = logging.getLogger(__name__)


def state_keys_in(store: KeyedStore, pages: Iterable[str] = ()) -> List[str]:
    """
    Every key in `store` that holds page state: `grasp-*-state` keys, plus
    the legacy `<page>State` key of each known page and of `pages`.
    """
    try:
        keys = store.keys()
    except Exception as ex:
        logger.error("Cannot list keys for eviction: %s", ex)
        return []
    legacy = {legacy_storage_key(p) for p in (*PAGE_KEYS, *pages)}
    return [k for k in keys if is_state_key(k) or k in legacy]


def evict_stale(
    store: KeyedStore,
    keys: Iterable[str],
    *,
    now: int,
    max_age_ms: int = MAX_AGE_MS,
) -> List[str]:
    """
    Remove every record in `keys` that is older than `max_age_ms` or cannot
    be read back (bad JSON, wrong encryption key). Missing keys are skipped.
    Returns the removed keys.
    """
    removed: List[str] = []
    for key in dict.fromkeys(keys):
        try:
            text = store.fetch_text(key)
        except UnreadableEntryError as ex:
            store.remove(key)
            removed.append(key)
            logger.info("Removed undecodable state %s: %s", key, ex)
            continue
        if text is None:
            continue
        try:
            record = parse_record(text)
        except ValueError:
            store.remove(key)
            removed.append(key)
            logger.info("Removed unreadable state: %s", key)
            continue
        if not record.is_fresh(now, max_age_ms):
            store.remove(key)
            removed.append(key)
            logger.info("Cleared old state: %s", key)
    return removed


__all__ = ["evict_stale", "state_keys_in"]
