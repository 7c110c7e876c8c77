"""
Field-level change detection between two versions of a record.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from .models import FieldChange

# Stored as lists, compared as sets
SET_FIELDS = frozenset({"labels", "assignees"})


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _sort_key(value: Any) -> str:
    return repr(value)


def jsonable(value: Any) -> Any:
    """Convert a value into something a JSON column accepts."""
    if hasattr(value, "to_dict"):
        return jsonable(value.to_dict())
    if isinstance(value, datetime):
        return _as_utc(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted((jsonable(v) for v in value), key=_sort_key)
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    return value


def normalize(value: Any, *, as_set: bool = False) -> Any:
    """Canonical form used for equality: order-free sets, recursive maps, UTC instants."""
    value = jsonable(value)
    if as_set and isinstance(value, list):
        return sorted({_sort_key(v): v for v in value}.values(), key=_sort_key)
    if isinstance(value, dict):
        return {k: normalize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [normalize(v) for v in value]
    return value


def values_differ(key: str, old: Any, new: Any) -> bool:
    as_set = key in SET_FIELDS
    return normalize(old, as_set=as_set) != normalize(new, as_set=as_set)


def compute_changes(
    before: Mapping[str, Any],
    after: Mapping[str, Any],
    keys: Iterable[str],
) -> dict[str, FieldChange]:
    """Return ``{field: {"old", "new"}}`` for every tracked key whose value changed."""
    changes: dict[str, FieldChange] = {}
    for key in keys:
        old = before.get(key)
        new = after.get(key)
        if values_differ(key, old, new):
            changes[key] = {"old": jsonable(old), "new": jsonable(new)}
    return changes
