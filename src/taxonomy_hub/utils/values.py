"""Helpers for inspecting raw record values."""

from typing import Any, Mapping, Tuple

import pandas as pd

_MISSING = object()


def is_missing(value: Any, blank_is_missing: bool = False) -> bool:
    """True for None, NaN/NaT/pd.NA and, optionally, blank strings."""
    if value is None:
        return True
    if isinstance(value, str):
        return blank_is_missing and not value.strip()
    if pd.api.types.is_scalar(value):
        return bool(pd.isna(value))
    return False


def resolve_field(record: Mapping[str, Any], path: str) -> Tuple[bool, Any]:
    """
    Look up ``path`` on a raw record.

    A literal key wins over a dotted path (``{"respondent.age": 30}``); otherwise
    ``respondent.age`` walks nested mappings. Returns ``(present, value)`` where
    present means the value resolved and is not missing.
    """
    if path in record:
        value = record[path]
        return (not is_missing(value), value)

    current: Any = record
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return (False, None)
        current = current.get(part, _MISSING)
        if current is _MISSING:
            return (False, None)
    return (not is_missing(current), current)
