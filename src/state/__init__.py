"""
Page state persistence.

A `PagePersistence` keeps one page's working state in memory and mirrors it
into a `KeyedStore` as a timestamped `StateRecord`; the `AppStateAggregator`
saves every registered page at once on timers and lifecycle events.
Records older than seven days are discarded on load and by eviction.
"""

from .aggregator import AppStateAggregator, default_aggregator
from .keyed_store import ABSENT, JsonFileStore, KeyedStore, MemoryStore, WriteResult
from .models import MAX_AGE_MS, FieldKind, StateRecord
from .persistence import PagePersistence

__all__ = [
    "ABSENT",
    "AppStateAggregator",
    "FieldKind",
    "JsonFileStore",
    "KeyedStore",
    "MAX_AGE_MS",
    "MemoryStore",
    "PagePersistence",
    "StateRecord",
    "WriteResult",
    "default_aggregator",
]
