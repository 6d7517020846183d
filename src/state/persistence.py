from __future__ import annotations

import atexit
import copy
import logging
import threading
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

from common.timers import RepeatingTimer, Scheduler, ThreadingScheduler

from .codec import Clock, DecodeOutcome, decode, encode, now_ms
from .eviction import evict_stale, state_keys_in
from .keyed_store import KeyedStore, WriteResult
from .keys import legacy_storage_key, storage_key
from .models import MAX_AGE_MS, StateSchema

if TYPE_CHECKING:  # pragma: no cover
    from .aggregator import AppStateAggregator


logger = logging.getLogger(__name__)

DEFAULT_AUTOSAVE_SECONDS = 30.0


class PagePersistence:
    """
    Resume-where-you-left-off state for one page.

    Usage
    - Construct once per page activation with the page's defaults; `state`
      is loaded immediately (stored values over defaults, shallow merge).
    - Mutate through `set_state` / `update_state`; every mutation is saved.
    - A repeating timer re-saves every `autosave_interval` seconds even
      without changes, and `on_unload()` saves once more on teardown.
    - `close()` stops the timer and detaches from the aggregator.

    Nothing here raises on storage problems: failures are logged and the
    page keeps working from memory.
    """

    def __init__(
        self,
        page_name: str,
        default_state: Optional[Mapping[str, Any]] = None,
        *,
        store: KeyedStore,
        schema: Optional[StateSchema] = None,
        clock: Clock = now_ms,
        scheduler: Optional[Scheduler] = None,
        autosave_interval: Optional[float] = DEFAULT_AUTOSAVE_SECONDS,
        max_age_ms: int = MAX_AGE_MS,
        aggregator: Optional["AppStateAggregator"] = None,
        save_on_exit: bool = True,
    ) -> None:
        self.page_name = page_name
        self.storage_key = aggregator.key_for(page_name) if aggregator is not None else storage_key(page_name)
        self.default_state: Dict[str, Any] = copy.deepcopy(dict(default_state or {}))
        self._store = store
        self._schema = schema
        self._clock = clock
        self._max_age_ms = max_age_ms
        self._aggregator = aggregator
        self._lock = threading.RLock()
        self._closed = False

        self.state: Dict[str, Any] = self.load_state()

        self._autosave: Optional[RepeatingTimer] = None
        if autosave_interval:
            self._autosave = RepeatingTimer(scheduler or ThreadingScheduler(), autosave_interval, self.save_state)
            self._autosave.start()
            logger.debug("Auto-save enabled for %s every %ss", page_name, autosave_interval)

        self._save_on_exit = save_on_exit
        if save_on_exit:
            atexit.register(self.on_unload)
        if aggregator is not None:
            aggregator.register(page_name, self)

    # -------- Load --------
    def load_state(self) -> Dict[str, Any]:
        """Read stored state; stale or unreadable entries are purged."""
        key = self.storage_key
        raw = self._store.read_text(key)
        legacy_key = legacy_storage_key(self.page_name)
        from_legacy = False
        if raw is None and legacy_key != key:
            raw = self._store.read_text(legacy_key)
            if raw is not None:
                key, from_legacy = legacy_key, True

        result = decode(
            raw,
            self.default_state,
            now=self._clock(),
            max_age_ms=self._max_age_ms,
            schema=self._schema,
            page=self.page_name,
        )
        if result.should_purge:
            self._store.remove(key)
        if result.outcome is DecodeOutcome.ABSENT:
            logger.debug("No saved state found for %s, using defaults", self.page_name)
        elif result.outcome is DecodeOutcome.FRESH:
            logger.info("Loaded saved state for %s", self.page_name)
            if from_legacy:
                self._migrate_legacy(legacy_key, result.state)
        return result.state

    def _migrate_legacy(self, legacy_key: str, state: Mapping[str, Any]) -> None:
        record = encode(self.page_name, state, self._clock())
        if self._store.write(self.storage_key, record.model_dump()):
            self._store.remove(legacy_key)
            logger.info("Migrated %s to %s", legacy_key, self.storage_key)

    # -------- Accessors --------
    def get_state(self, key: str, default: Any = None) -> Any:
        return self.state.get(key, default)

    def get_snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self.state)

    # -------- Mutations --------
    def set_state(self, key: str, value: Any) -> bool:
        with self._lock:
            self.state[key] = value
        return self.save_state()

    def update_state(self, patch: Mapping[str, Any]) -> bool:
        with self._lock:
            self.state = {**self.state, **patch}
        return self.save_state()

    def clear_state(self) -> None:
        with self._lock:
            self._store.remove(self.storage_key)
            self.state = copy.deepcopy(self.default_state)
        logger.info("State cleared for %s", self.page_name)

    # -------- Save --------
    def save_state(self) -> bool:
        """
        Persist the current state. On a full medium, evict stale records
        everywhere and retry exactly once. Returns True when written.
        """
        with self._lock:
            try:
                payload = encode(self.page_name, self.state, self._clock()).model_dump()
            except ValueError as ex:
                logger.error("Error saving state for %s: %s", self.page_name, ex)
                return False

            result = self._store.write(self.storage_key, payload)
            if result is WriteResult.QUOTA_EXCEEDED:
                self._evict_stale()
                result = self._store.write(self.storage_key, payload)
                if result is not WriteResult.OK:
                    logger.error("Retry failed saving state for %s; dropped", self.page_name)
        if result is WriteResult.OK:
            logger.debug("State saved for %s", self.page_name)
        return result is WriteResult.OK

    def _evict_stale(self) -> None:
        if self._aggregator is not None:
            self._aggregator.clear_old_states()
            return
        evict_stale(
            self._store,
            state_keys_in(self._store, [self.page_name]),
            now=self._clock(),
            max_age_ms=self._max_age_ms,
        )

    # -------- Lifecycle --------
    def on_unload(self) -> None:
        if not self._closed:
            self.save_state()

    def close(self) -> None:
        """Stop auto-save and detach. Does not touch stored state."""
        if self._closed:
            return
        self._closed = True
        if self._autosave is not None:
            self._autosave.cancel()
        if self._save_on_exit:
            atexit.unregister(self.on_unload)
        if self._aggregator is not None:
            self._aggregator.unregister(self.page_name, self)

    def __enter__(self) -> "PagePersistence":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.on_unload()
        self.close()


__all__ = ["PagePersistence", "DEFAULT_AUTOSAVE_SECONDS"]
