"""Helpers for probing loosely-structured printer JSON."""

import math
from typing import Any

Path = tuple[str | int, ...]


def dig(data: Any, path: Path) -> Any:
    """Follow a path of dict keys / list indices, returning None on any miss."""
    current = data
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or not -len(current) <= step < len(current):
                return None
            current = current[step]
        else:
            if not isinstance(current, dict) or step not in current:
                return None
            current = current[step]
    return current


def to_number(value: Any) -> float | None:
    """Coerce an int, float or numeric string to a finite float.

    Booleans are not numbers here. NaN and infinities (which the JSON decoder
    accepts) are treated as absent.
    """
    if isinstance(value, bool) or value is None:
        return None
    try:
        if isinstance(value, (int, float)):
            number = float(value)
        elif isinstance(value, str):
            number = float(value.strip())
        else:
            return None
    except (ValueError, OverflowError):
        return None
    if not math.isfinite(number):
        return None
    return number


def to_int(value: Any) -> int | None:
    number = to_number(value)
    if number is None:
        return None
    return int(number)


def to_text(value: Any) -> str | None:
    """Non-empty string form of a scalar, or None."""
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None
