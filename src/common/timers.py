from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, Protocol


logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Anything that can run `fn` once after `delay` seconds."""

    def call_later(self, delay: float, fn: Callable[[], None]) -> TimerHandle: ...


class ThreadingScheduler:
    """Scheduler backed by daemon `threading.Timer` threads."""

    def call_later(self, delay: float, fn: Callable[[], None]) -> TimerHandle:
        t = threading.Timer(delay, fn)
        t.daemon = True
        t.start()
        return t


def _run_guarded(fn: Callable[[], None], what: str) -> None:
    try:
        fn()
    except Exception:
        # Never let a callback kill the timer thread
        logger.exception("%s callback failed", what)


class RepeatingTimer:
    """
    Calls `fn` every `interval` seconds until cancelled.

    - Re-arms itself after each run, so a slow callback delays the next tick
      rather than stacking runs.
    - `cancel()` is idempotent; a tick already executing finishes normally.
    """

    def __init__(self, scheduler: Scheduler, interval: float, fn: Callable[[], None]) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self._scheduler = scheduler
        self._interval = interval
        self._fn = fn
        self._handle: Optional[TimerHandle] = None
        self._active = False
        # Bumped on every start/cancel; a tick only re-arms its own chain
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self._active

    def start(self) -> None:
        with self._lock:
            if self._active:
                return
            self._active = True
            self._generation += 1
            self._arm()

    def cancel(self) -> None:
        with self._lock:
            self._active = False
            self._generation += 1
            if self._handle is not None:
                self._handle.cancel()
                self._handle = None

    def _arm(self) -> None:
        gen = self._generation
        self._handle = self._scheduler.call_later(self._interval, lambda: self._tick(gen))

    def _tick(self, gen: int) -> None:
        with self._lock:
            if gen != self._generation:
                return
        _run_guarded(self._fn, "repeating timer")
        with self._lock:
            if self._active and gen == self._generation:
                self._arm()


class Debouncer:
    """
    Single-slot debounce: each `trigger()` cancels the pending call and
    schedules a fresh one `delay` seconds out.
    """

    def __init__(self, scheduler: Scheduler, delay: float, fn: Callable[[], None]) -> None:
        if delay < 0:
            raise ValueError("delay must be >= 0")
        self._scheduler = scheduler
        self._delay = delay
        self._fn = fn
        self._handle: Optional[TimerHandle] = None
        # Bumped on every trigger/cancel so a superseded call that already
        # started cannot run the callback.
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.cancel()
            self._generation += 1
            gen = self._generation
            self._handle = self._scheduler.call_later(self._delay, lambda: self._fire(gen))

    def cancel(self) -> None:
        with self._lock:
            self._generation += 1
            if self._handle is not None:
                self._handle.cancel()
                self._handle = None

    def _fire(self, gen: int) -> None:
        with self._lock:
            if gen != self._generation:
                return
            self._handle = None
        _run_guarded(self._fn, "debounced")


__all__ = [
    "Scheduler",
    "TimerHandle",
    "ThreadingScheduler",
    "RepeatingTimer",
    "Debouncer",
]
