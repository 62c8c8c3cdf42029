"""
JSON-safe conversion for metadata columns.

Audit metadata and notification metadata are stored in JSON columns, which
only accept plain JSON values.  Everything the kernel puts there goes
through ``to_json_safe`` first so Decimals, UUIDs and datetimes are stored
as strings in one consistent format.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    """
    Custom JSON serializer for types not natively supported.

    Raises:
        TypeError: If object type is not supported.
    """
    if isinstance(obj, Decimal):
        # Normalize so 100 and 100.000000000 serialize the same way
        normalized = obj.normalize()
        if normalized == normalized.to_integral_value():
            return str(normalized.quantize(Decimal(1)))
        return str(normalized)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, bytes):
        return obj.hex()

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def to_json_safe(value: Any) -> Any:
    """
    Recursively convert a value into plain JSON types.

    Dict keys become strings; tuples and sets become lists; unsupported
    leaf types fall back to ``str()``.
    """
    if isinstance(value, Enum):
        return to_json_safe(value.value)
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, dict):
        return {str(k): to_json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_json_safe(v) for v in value]
    try:
        return _json_serializer(value)
    except TypeError:
        return str(value)
