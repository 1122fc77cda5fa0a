"""JSON serialization utilities."""

from __future__ import annotations

import dataclasses
import datetime
import decimal
import enum
import json

from request_lifecycle.utils.time import isoformat_z


def json_default(obj: object) -> object:
    """JSON serializer for objects not serializable by default json code."""
    if isinstance(obj, datetime.datetime):
        return isoformat_z(obj)
    if isinstance(obj, datetime.date):
        return obj.isoformat()
    if isinstance(obj, enum.Enum):
        return obj.value
    if isinstance(obj, decimal.Decimal):
        # Preserve numeric type: int if no decimal part, else float unless that loses precision.
        if obj == obj.to_integral_value():
            return int(obj)
        f = float(obj)
        if decimal.Decimal(str(f)) != obj:
            return str(obj)
        return f
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    model_dump = getattr(obj, "model_dump", None)
    if callable(model_dump):
        return model_dump(mode="json", by_alias=True, exclude_none=True)
    return str(obj)


def dumps(payload: object, *, indent: int | None = 2) -> str:
    return json.dumps(payload, default=json_default, indent=indent, ensure_ascii=False)
