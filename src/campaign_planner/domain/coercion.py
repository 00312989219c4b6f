"""Lenient value coercion used when rebuilding stored records.

Stored data may be hand-edited, imported from CSV or written by older app
versions, so every helper here maps a bad value to a type-correct default
instead of raising.
"""

from __future__ import annotations

import math
import re
from uuid import uuid4

_NUMBER_NOISE = re.compile(r"[,$\s]")


def new_record_id() -> str:
    return uuid4().hex


def coerce_id(value: object) -> str:
    if isinstance(value, bool):
        return new_record_id()
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return new_record_id()


def coerce_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return ""


def coerce_optional_text(value: object) -> str | None:
    text = coerce_text(value)
    return text or None


def _to_number(value: object) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        cleaned = _NUMBER_NOISE.sub("", value)
        if not cleaned:
            return None
        try:
            number = float(cleaned)
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _normalize(number: float) -> int | float:
    return int(number) if number.is_integer() else number


def coerce_amount(value: object) -> int | float:
    """Non-negative number; anything unusable becomes 0."""
    number = _to_number(value)
    if number is None or number < 0:
        return 0
    return _normalize(number)


def coerce_optional_amount(value: object) -> int | float | None:
    """Like ``coerce_amount`` but keeps "not recorded yet" as None."""
    if value is None or value == "":
        return None
    number = _to_number(value)
    if number is None or number < 0:
        return None
    return _normalize(number)


def coerce_count(value: object) -> int:
    number = _to_number(value)
    if number is None or number < 0:
        return 0
    return int(number)


def coerce_flag(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y"}
    if isinstance(value, (int, float)):
        return value != 0
    return False


def coerce_string_list(value: object) -> list[str]:
    """Lists keep their non-empty string items; a string is split on commas."""
    if value is None:
        return []
    if isinstance(value, str):
        items: list[object] = list(value.split(","))
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = list(value)
    else:
        return []
    result: list[str] = []
    for item in items:
        text = coerce_text(item).strip()
        if text and text not in result:
            result.append(text)
    return result


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))
