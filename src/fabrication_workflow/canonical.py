from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

# JSON-primitive types that rfc8785 can serialize directly.
_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _normalize(value: Any) -> Any:
    """Recursively convert models, enums, timestamps and money into JSON primitives.

    Raises:
        TypeError: If *value* holds a type with no JSON representation.
    """
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value
    if isinstance(value, BaseModel):
        return _normalize(value.model_dump(mode="python"))
    if isinstance(value, dict):
        return {str(key): _normalize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    if isinstance(value, Enum):
        return _normalize(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise TypeError(f"Cannot serialize non-finite Decimal to JSON: {value!r}")
        # Whole amounts stay integers so quantities and prices round-trip exactly.
        return int(value) if value == value.to_integral_value() else float(value)
    raise TypeError(f"Cannot serialize type {type(value).__name__} to canonical JSON")


def to_canonical_json(value: Any) -> str:
    """Serialize *value* to RFC 8785 canonical JSON.

    Used for the event log and CLI output so identical projects and events
    always render byte-for-byte identically.
    """
    return rfc8785.dumps(_normalize(value)).decode("utf-8")
