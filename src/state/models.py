from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Mapping

from pydantic import BaseModel, Field


# 7 days
MAX_AGE_MS = 7 * 24 * 60 * 60 * 1000


class FieldKind(str, Enum):
    """How a stored list field is rebuilt on load."""

    PLAIN = "plain"
    SET = "set"
    MAP = "map"


# Per-page descriptor: field name -> kind. Fields not listed load as plain.
StateSchema = Mapping[str, FieldKind]


class StateRecord(BaseModel):
    """
    Timestamped envelope persisted for one page.

    Fields
    - data: the page's working state, already sanitized to plain JSON values.
    - timestamp: milliseconds since epoch at last save.
    - page: logical page name; redundant with the storage key, kept for
      diagnostics and export.

    Stored layout:
        {"data": {...}, "timestamp": 1700000000000, "page": "questionBank"}
    """

    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: int = Field(..., ge=0, description="Epoch milliseconds of the save")
    page: str = ""

    def age_ms(self, now_ms: int) -> int:
        return now_ms - self.timestamp

    def is_fresh(self, now_ms: int, max_age_ms: int = MAX_AGE_MS) -> bool:
        return self.age_ms(now_ms) <= max_age_ms

    @classmethod
    def from_legacy(cls, raw: Mapping[str, Any], page: str = "") -> "StateRecord":
        """Build a record from the older flat layout `{...fields, timestamp}`."""
        data = {k: v for k, v in raw.items() if k != "timestamp"}
        return cls(data=data, timestamp=raw.get("timestamp", 0), page=page)


__all__ = ["MAX_AGE_MS", "FieldKind", "StateSchema", "StateRecord"]
