from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from common.config import PersistenceSettings
from common.timers import Debouncer, RepeatingTimer, Scheduler, ThreadingScheduler

from .codec import Clock, decode, encode, now_ms
from .eviction import evict_stale, state_keys_in
from .keyed_store import ABSENT, KeyedStore, WriteResult
from .keys import PAGE_KEYS, storage_key
from .models import MAX_AGE_MS


logger = logging.getLogger(__name__)

AUTOSAVE_SECONDS = 30.0
CHANGE_DEBOUNCE_SECONDS = 1.0
INPUT_DEBOUNCE_SECONDS = 2.0
PAGE_LOADED_DELAY_SECONDS = 2.0


class StateProvider(Protocol):
    """What a page exposes so its state can be saved by the aggregator."""

    def get_snapshot(self) -> Optional[Mapping[str, Any]]: ...


class AppStateAggregator:
    """
    Process-wide "save everything" coordinator.

    Pages register a provider (usually their PagePersistence) and the
    aggregator saves every registered snapshot when:
    - the 30 s auto-save timer fires (`start()` / `stop()`),
    - the page is hidden (`on_visibility_change(True)`) or unloaded
      (`on_before_unload()`),
    - form activity settles: 1 s after the last `on_change()`, 2 s after the
      last `on_input()`; each event type keeps one pending timer,
    - shortly after load (`on_page_loaded()`).

    It also owns eviction of stale records and raw export/import for backup.
    """

    def __init__(
        self,
        store: KeyedStore,
        *,
        page_keys: Optional[Mapping[str, str]] = None,
        clock: Clock = now_ms,
        scheduler: Optional[Scheduler] = None,
        autosave_interval: float = AUTOSAVE_SECONDS,
        change_delay: float = CHANGE_DEBOUNCE_SECONDS,
        input_delay: float = INPUT_DEBOUNCE_SECONDS,
        loaded_delay: float = PAGE_LOADED_DELAY_SECONDS,
        max_age_ms: int = MAX_AGE_MS,
    ) -> None:
        self._store = store
        self._page_keys: Dict[str, str] = dict(PAGE_KEYS if page_keys is None else page_keys)
        self._clock = clock
        self._max_age_ms = max_age_ms
        self._providers: Dict[str, StateProvider] = {}
        self._lock = threading.RLock()

        sched = scheduler or ThreadingScheduler()
        self._timer = RepeatingTimer(sched, autosave_interval, self.save_all_states)
        self._debouncers: Dict[str, Debouncer] = {
            "change": Debouncer(sched, change_delay, self.save_all_states),
            "input": Debouncer(sched, input_delay, self.save_all_states),
            "loaded": Debouncer(sched, loaded_delay, self.save_all_states),
        }

    @property
    def store(self) -> KeyedStore:
        return self._store

    def key_for(self, page: str) -> str:
        return storage_key(page, self._page_keys)

    # -------- Registry --------
    def register(self, page: str, provider: StateProvider) -> None:
        with self._lock:
            self._providers[page] = provider
        logger.debug("Registered state provider for %s", page)

    def unregister(self, page: str, provider: Optional[StateProvider] = None) -> None:
        """Drop `page`; when `provider` is given, only if it is still the registered one."""
        with self._lock:
            current = self._providers.get(page)
            if current is None or (provider is not None and current is not provider):
                return
            del self._providers[page]

    def registered_pages(self) -> List[str]:
        with self._lock:
            return list(self._providers)

    # -------- Single page --------
    def save_state(self, page: str, data: Mapping[str, Any]) -> bool:
        key = self.key_for(page)
        try:
            payload = encode(page, data, self._clock()).model_dump()
        except ValueError as ex:
            logger.error("Error saving state for %s: %s", page, ex)
            return False

        result = self._store.write(key, payload)
        if result is WriteResult.QUOTA_EXCEEDED:
            self.clear_old_states()
            result = self._store.write(key, payload)
            if result is not WriteResult.OK:
                logger.error("Retry failed saving state for %s; dropped", page)
        return result is WriteResult.OK

    def load_state(self, page: str, default_state: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        key = self.key_for(page)
        result = decode(
            self._store.read_text(key),
            default_state or {},
            now=self._clock(),
            max_age_ms=self._max_age_ms,
            page=page,
        )
        if result.should_purge:
            self.clear_state(page)
        return result.state

    def restore_state(
        self,
        page: str,
        callback: Optional[Callable[[Dict[str, Any]], Any]] = None,
    ) -> Dict[str, Any]:
        state = self.load_state(page)
        if callback is not None:
            callback(state)
        return state

    def clear_state(self, page: str) -> None:
        self._store.remove(self.key_for(page))
        logger.info("State cleared for %s", page)

    # -------- All pages --------
    def save_all_states(self) -> int:
        """Save every registered snapshot; returns how many were written."""
        with self._lock:
            providers = list(self._providers.items())

        saved = 0
        for page, provider in providers:
            try:
                snapshot = provider.get_snapshot()
            except Exception:
                logger.exception("State provider for %s failed; skipped", page)
                continue
            if snapshot is None:
                continue
            if self.save_state(page, snapshot):
                saved += 1
        return saved

    def _known_keys(self) -> List[str]:
        keys = list(self._page_keys.values())
        keys.extend(self.key_for(p) for p in self.registered_pages())
        keys.extend(state_keys_in(self._store, [*self._page_keys, *self.registered_pages()]))
        return list(dict.fromkeys(keys))

    def clear_old_states(self) -> List[str]:
        """Remove stale or unreadable records everywhere; returns removed keys."""
        return evict_stale(
            self._store,
            self._known_keys(),
            now=self._clock(),
            max_age_ms=self._max_age_ms,
        )

    def export_states(self) -> Dict[str, Any]:
        """page -> raw stored record, for every known page with a readable entry."""
        pages = list(dict.fromkeys([*self._page_keys, *self.registered_pages()]))
        out: Dict[str, Any] = {}
        for page in pages:
            raw = self._store.read(self.key_for(page))
            if raw is not ABSENT:
                out[page] = raw
        return out

    def import_states(self, states: Mapping[str, Any]) -> int:
        """Write records back verbatim (no freshness check); returns the count written."""
        written = 0
        for page, record in states.items():
            try:
                key = self.key_for(page)
            except (AttributeError, ValueError) as ex:
                logger.error("Error importing state for %r: %s", page, ex)
                continue
            if self._store.write(key, record) is WriteResult.OK:
                written += 1
                logger.info("Imported state for %s", page)
            else:
                logger.error("Error importing state for %s", page)
        return written

    # -------- Triggers --------
    def start(self) -> None:
        self._timer.start()

    def stop(self) -> None:
        self._timer.cancel()
        for d in self._debouncers.values():
            d.cancel()

    def on_visibility_change(self, hidden: bool) -> None:
        if hidden:
            self.save_all_states()

    def on_before_unload(self) -> None:
        self.save_all_states()

    def on_page_loaded(self) -> None:
        self._debouncers["loaded"].trigger()

    def on_change(self) -> None:
        self._debouncers["change"].trigger()

    def on_input(self) -> None:
        self._debouncers["input"].trigger()


_default: Optional[AppStateAggregator] = None
_default_lock = threading.Lock()


def default_aggregator() -> AppStateAggregator:
    """The process-wide aggregator, created (and started) on first use from env settings."""
    global _default
    with _default_lock:
        if _default is None:
            from .factory import store_from_settings

            settings = PersistenceSettings.from_env()
            _default = AppStateAggregator(
                store_from_settings(settings),
                autosave_interval=settings.autosave_seconds,
                max_age_ms=settings.max_age_ms,
            )
            _default.start()
        return _default


__all__ = [
    "AppStateAggregator",
    "StateProvider",
    "default_aggregator",
]
