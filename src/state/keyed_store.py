from __future__ import annotations

import errno
import json
import logging
import os
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """The keyed medium failed to read, write or delete."""


class QuotaExceededError(StoreError):
    """The keyed medium has no room left for the write."""


class UnreadableEntryError(StoreError):
    """The entry exists but its stored body cannot be decoded (e.g. wrong key)."""


class WriteResult(str, Enum):
    OK = "ok"
    QUOTA_EXCEEDED = "quota_exceeded"
    FAILED = "failed"

    def __bool__(self) -> bool:
        return self is WriteResult.OK


class _Absent:
    _instance: Optional["_Absent"] = None

    def __new__(cls) -> "_Absent":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "ABSENT"


# Returned by `KeyedStore.read` for missing or unreadable entries
ABSENT = _Absent()


def _dump_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


class KeyedStore:
    """
    Key -> JSON text medium with error containment.

    Subclasses implement the raw primitives (`_get_text`, `_set_text`,
    `_delete`, `keys`) and may raise anything; the public methods below
    never raise:

    - `write(key, value)` -> WriteResult
    - `read(key)` -> decoded value or ABSENT
    - `read_text(key)` -> stored text or None
    - `fetch_text(key)` -> like `read_text`, but raises UnreadableEntryError
      for an entry that exists and cannot be decoded
    - `remove(key)` -> None (idempotent)
    """

    # -------- Primitives --------
    def _get_text(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def _set_text(self, key: str, text: str) -> None:
        raise NotImplementedError

    def _delete(self, key: str) -> None:
        raise NotImplementedError

    def keys(self) -> List[str]:
        raise NotImplementedError

    # -------- Contained operations --------
    def write(self, key: str, value: Any) -> WriteResult:
        try:
            text = _dump_json(value)
        except (TypeError, ValueError) as ex:
            logger.error("Cannot serialize value for %s: %s", key, ex)
            return WriteResult.FAILED
        try:
            self._set_text(key, text)
        except QuotaExceededError as ex:
            logger.warning("Storage quota exceeded writing %s: %s", key, ex)
            return WriteResult.QUOTA_EXCEEDED
        except Exception as ex:
            logger.error("Failed to write %s: %s", key, ex)
            return WriteResult.FAILED
        logger.debug("Wrote %s (%d chars)", key, len(text))
        return WriteResult.OK

    def fetch_text(self, key: str) -> Optional[str]:
        try:
            return self._get_text(key)
        except UnreadableEntryError:
            raise
        except Exception as ex:
            logger.error("Failed to read %s: %s", key, ex)
            return None

    def read_text(self, key: str) -> Optional[str]:
        try:
            return self.fetch_text(key)
        except UnreadableEntryError as ex:
            logger.warning("Unreadable entry %s treated as absent: %s", key, ex)
            return None

    def read(self, key: str) -> Any:
        text = self.read_text(key)
        if text is None:
            return ABSENT
        try:
            return json.loads(text)
        except ValueError:
            logger.warning("Stored value for %s is not valid JSON", key)
            return ABSENT

    def remove(self, key: str) -> None:
        try:
            self._delete(key)
        except Exception as ex:
            logger.error("Failed to remove %s: %s", key, ex)

    def used_bytes(self) -> int:
        total = 0
        for k in self.keys():
            text = self.read_text(k)
            if text is not None:
                total += len(k.encode("utf-8")) + len(text.encode("utf-8"))
        return total


def _check_quota(entries: Dict[str, str], key: str, text: str, quota_bytes: Optional[int]) -> None:
    if not quota_bytes:
        return
    size = 0
    for k, v in entries.items():
        if k != key:
            size += len(k.encode("utf-8")) + len(v.encode("utf-8"))
    size += len(key.encode("utf-8")) + len(text.encode("utf-8"))
    if size > quota_bytes:
        raise QuotaExceededError(f"{size} bytes exceeds quota of {quota_bytes}")


class MemoryStore(KeyedStore):
    """Process-local medium; `quota_bytes` caps the total key+text size."""

    def __init__(self, *, quota_bytes: Optional[int] = None) -> None:
        self._data: Dict[str, str] = {}
        self._quota = quota_bytes
        self._lock = threading.Lock()

    def _get_text(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def _set_text(self, key: str, text: str) -> None:
        with self._lock:
            _check_quota(self._data, key, text, self._quota)
            self._data[key] = text

    def _delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data)


class JsonFileStore(KeyedStore):
    """
    Medium backed by a single JSON file: { key: text, ... }.

    - Loaded lazily on first access; a corrupt or unreadable file starts empty.
    - Every mutation rewrites the whole file (the data set is small).
    - Not safe for several processes writing the same file.
    """

    def __init__(self, path: os.PathLike[str] | str, *, quota_bytes: Optional[int] = None) -> None:
        self._path = Path(path)
        self._quota = quota_bytes
        self._data: Dict[str, str] = {}
        self._loaded = False
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if not self._path.exists():
            return
        try:
            with self._path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as ex:
            logger.warning("State file %s unreadable, starting empty: %s", self._path, ex)
            return
        if isinstance(raw, dict):
            self._data = {str(k): v for k, v in raw.items() if isinstance(v, str)}

    def _flush(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(self._data, f, indent=2, sort_keys=True)
        os.replace(tmp, self._path)

    def _get_text(self, key: str) -> Optional[str]:
        with self._lock:
            self._ensure_loaded()
            return self._data.get(key)

    def _set_text(self, key: str, text: str) -> None:
        with self._lock:
            self._ensure_loaded()
            _check_quota(self._data, key, text, self._quota)
            previous = self._data.get(key)
            self._data[key] = text
            try:
                self._flush()
            except OSError as ex:
                # Keep memory consistent with disk
                if previous is None:
                    self._data.pop(key, None)
                else:
                    self._data[key] = previous
                if ex.errno == errno.ENOSPC:
                    raise QuotaExceededError(str(ex)) from ex
                raise

    def _delete(self, key: str) -> None:
        with self._lock:
            self._ensure_loaded()
            previous = self._data.pop(key, None)
            if previous is None:
                return
            try:
                self._flush()
            except OSError:
                self._data[key] = previous
                raise

    def keys(self) -> List[str]:
        with self._lock:
            self._ensure_loaded()
            return list(self._data)


__all__ = [
    "ABSENT",
    "KeyedStore",
    "MemoryStore",
    "JsonFileStore",
    "StoreError",
    "QuotaExceededError",
    "UnreadableEntryError",
    "WriteResult",
]
