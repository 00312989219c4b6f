"""JSON serialization utilities."""

from __future__ import annotations

import datetime
import decimal
import json


def json_default(obj: object) -> object:
    """JSON serializer for objects not serializable by default json code."""
    if isinstance(obj, (datetime.date, datetime.datetime)):
        return obj.isoformat()
    if isinstance(obj, decimal.Decimal):
        if obj == obj.to_integral_value():
            return int(obj)
        return float(obj)
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    if isinstance(obj, bytes):
        return obj.decode("utf-8", errors="replace")
    return str(obj)


def dumps(value: object, *, pretty: bool = False) -> str:
    if pretty:
        return json.dumps(value, ensure_ascii=False, indent=2, default=json_default)
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=json_default)


def byte_size(key: str, value: str) -> int:
    """UTF-8 size of a stored entry, key included."""
    return len(key.encode("utf-8")) + len(value.encode("utf-8"))


def is_record_collection(value: object) -> bool:
    """True for a list whose entries are all JSON objects."""
    return isinstance(value, list) and all(isinstance(item, dict) for item in value)
