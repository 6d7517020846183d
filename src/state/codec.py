from __future__ import annotations

import copy
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import BaseModel, ValidationError

from .models import MAX_AGE_MS, FieldKind, StateRecord, StateSchema


logger = logging.getLogger(__name__)

Clock = Callable[[], int]


def now_ms() -> int:
    return int(time.time() * 1000)


# -------- Sanitize (save path) --------
def _ordered(values: Iterable[Any]) -> List[Any]:
    # Stable output for sets of comparable items; insertion order otherwise
    try:
        return sorted(values)
    except TypeError:
        return list(values)


def sanitize(value: Any) -> Any:
    """
    Reduce `value` to plain JSON-shaped data.

    - set / frozenset -> list of elements
    - map-like (a Mapping that is not a plain dict, e.g. OrderedDict)
      -> list of [key, value] pairs
    - dict, list, tuple -> recursed
    - pydantic models -> dumped, then recursed
    """
    if isinstance(value, BaseModel):
        return sanitize(value.model_dump())
    if isinstance(value, (set, frozenset)):
        return [sanitize(v) for v in _ordered(value)]
    if isinstance(value, Mapping):
        if type(value) is dict:
            return {k: sanitize(v) for k, v in value.items()}
        return [[sanitize(k), sanitize(v)] for k, v in value.items()]
    if isinstance(value, (list, tuple)):
        return [sanitize(v) for v in value]
    return value


# -------- Rehydrate (load path) --------
def is_set_key(key: str) -> bool:
    return "selected" in key or "Set" in key or "Ids" in key


def is_map_key(key: str) -> bool:
    return "Map" in key or "cache" in key


def _kind_for(key: str, schema: Optional[StateSchema]) -> FieldKind:
    if schema is not None:
        return FieldKind(schema.get(key, FieldKind.PLAIN))
    if is_set_key(key):
        return FieldKind.SET
    if is_map_key(key):
        return FieldKind.MAP
    return FieldKind.PLAIN


def _to_set(key: str, items: List[Any]) -> Union[set, List[Any]]:
    try:
        return set(items)
    except TypeError:
        logger.warning("Field %r has unhashable items; left as a list", key)
        return items


def _to_map(key: str, items: List[Any]) -> Union["OrderedDict[Any, Any]", List[Any]]:
    try:
        return OrderedDict((k, v) for k, v in items)
    except (TypeError, ValueError):
        logger.warning("Field %r is not a list of [key, value] pairs; left as a list", key)
        return items


def rehydrate(data: Mapping[str, Any], schema: Optional[StateSchema] = None) -> Dict[str, Any]:
    """
    Rebuild set and map fields from their stored list form.

    With a schema, only the listed top-level fields are converted. Without
    one, field names decide (see `is_set_key` / `is_map_key`) and nested
    mappings are walked the same way.
    """
    out: Dict[str, Any] = {}
    for key, value in data.items():
        kind = _kind_for(str(key), schema)
        if isinstance(value, list) and kind is FieldKind.SET:
            out[key] = _to_set(key, value)
        elif isinstance(value, list) and kind is FieldKind.MAP:
            out[key] = _to_map(key, value)
        elif isinstance(value, dict) and schema is None:
            out[key] = rehydrate(value)
        else:
            out[key] = value
    return out


# -------- Encode / decode --------
def encode(page: str, data: Mapping[str, Any], now: Optional[int] = None) -> StateRecord:
    ts = now if now is not None else now_ms()
    return StateRecord(data=sanitize(dict(data)), timestamp=ts, page=page)


def parse_record(raw: Union[str, bytes, Mapping[str, Any]], page: str = "") -> StateRecord:
    """
    Parse stored text (or an already-decoded object) into a StateRecord.

    Accepts the envelope layout and the older flat `{...fields, timestamp}`
    layout. Raises ValueError when neither fits.
    """
    obj = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
    if not isinstance(obj, Mapping):
        raise ValueError("stored state is not a JSON object")
    try:
        if isinstance(obj.get("data"), Mapping) and "timestamp" in obj:
            return StateRecord.model_validate(obj)
        return StateRecord.from_legacy(obj, page=page)
    except ValidationError as ve:
        raise ValueError(f"invalid state record: {ve}") from ve


class DecodeOutcome(str, Enum):
    FRESH = "fresh"
    ABSENT = "absent"
    STALE = "stale"
    CORRUPT = "corrupt"


@dataclass
class DecodeResult:
    state: Dict[str, Any]
    outcome: DecodeOutcome
    record: Optional[StateRecord] = None

    @property
    def should_purge(self) -> bool:
        return self.outcome in (DecodeOutcome.STALE, DecodeOutcome.CORRUPT)


def decode(
    raw: Union[str, bytes, Mapping[str, Any], None],
    default_state: Mapping[str, Any],
    *,
    now: Optional[int] = None,
    max_age_ms: int = MAX_AGE_MS,
    schema: Optional[StateSchema] = None,
    page: str = "",
) -> DecodeResult:
    """
    Turn stored text into working state.

    Missing, corrupt and stale records all yield a copy of `default_state`;
    the outcome tells the caller whether the stored entry should be purged.
    A fresh record is shallow-merged over the defaults (loaded values win at
    the top level only).
    """
    defaults = copy.deepcopy(dict(default_state))
    if raw is None:
        return DecodeResult(defaults, DecodeOutcome.ABSENT)

    try:
        record = parse_record(raw, page=page)
    except ValueError as ex:
        logger.warning("Discarding unreadable state for %s: %s", page or "<unknown>", ex)
        return DecodeResult(defaults, DecodeOutcome.CORRUPT)

    ts = now if now is not None else now_ms()
    if not record.is_fresh(ts, max_age_ms):
        logger.info("Saved state for %s is too old (%d ms), discarding", page or record.page, record.age_ms(ts))
        return DecodeResult(defaults, DecodeOutcome.STALE, record)

    merged = {**defaults, **rehydrate(record.data, schema)}
    return DecodeResult(merged, DecodeOutcome.FRESH, record)


def shallow_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    return {**base, **override}


__all__ = [
    "Clock",
    "now_ms",
    "sanitize",
    "rehydrate",
    "is_set_key",
    "is_map_key",
    "encode",
    "parse_record",
    "decode",
    "DecodeOutcome",
    "DecodeResult",
    "shallow_merge",
]
