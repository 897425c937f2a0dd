"""Conversion of native driver values into transport-neutral scalars."""

from __future__ import annotations

import datetime as dt
import json
import math
from decimal import Decimal
from typing import Any, Iterable, Sequence

from .models import TransportValue


def to_transport(value: Any) -> TransportValue:
    """Map a value returned by any driver onto str/int/float/bool/None."""

    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return value.isoformat()
    if isinstance(value, dt.timedelta):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "\\x" + bytes(value).hex()
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(_jsonable(value), separators=(",", ":"))
    return str(value)


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return to_transport(value)


def normalize_row(row: Sequence[Any]) -> tuple[TransportValue, ...]:
    return tuple(to_transport(value) for value in row)


def normalize_rows(rows: Iterable[Sequence[Any]]) -> tuple[tuple[TransportValue, ...], ...]:
    return tuple(normalize_row(row) for row in rows)


__all__ = ["normalize_row", "normalize_rows", "to_transport"]
