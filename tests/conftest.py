import os
import sys
from typing import Callable, List, Optional

import pytest


def pytest_configure():
    # Ensure `src/` is importable as top-level for `common.*` / `state.*` imports
    root = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    src_path = os.path.join(root, "src")
    if src_path not in sys.path:
        sys.path.insert(0, src_path)


DAY_MS = 24 * 60 * 60 * 1000


class FakeClock:
    """Epoch-milliseconds clock that only moves when told to."""

    def __init__(self, t: int = 1_700_000_000_000) -> None:
        self.t = t

    def __call__(self) -> int:
        return self.t

    def advance(self, ms: int) -> None:
        self.t += ms

    def advance_days(self, days: float) -> None:
        self.t += int(days * DAY_MS)


class _FakeHandle:
    def __init__(self, due: float, fn: Callable[[], None]) -> None:
        self.due = due
        self.fn = fn
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Deterministic stand-in for ThreadingScheduler; time moves via advance()."""

    def __init__(self) -> None:
        self.now = 0.0
        self._handles: List[_FakeHandle] = []

    def call_later(self, delay: float, fn: Callable[[], None]) -> _FakeHandle:
        h = _FakeHandle(self.now + delay, fn)
        self._handles.append(h)
        return h

    @property
    def pending(self) -> int:
        return sum(1 for h in self._handles if not h.cancelled)

    def _next_due(self, until: float) -> Optional[_FakeHandle]:
        live = [h for h in self._handles if not h.cancelled and h.due <= until]
        return min(live, key=lambda h: h.due) if live else None

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            h = self._next_due(target)
            if h is None:
                break
            self._handles.remove(h)
            self.now = h.due
            h.fn()
        self.now = target


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()
