"""Dataclass ⇄ JSON codec for persisted records.

Handles the value types used by the models: Decimal (as string),
timezone-aware datetime (ISO 8601), str-valued enums, Optional, list,
tuple, dict, frozenset and nested dataclasses.
"""

from __future__ import annotations

import dataclasses
import enum
import sys
import types
import typing
from datetime import datetime
from decimal import Decimal
from typing import Any, Union


def encode(value: Any) -> Any:
    """Convert a model value into JSON-compatible primitives."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: encode(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(encode(k)): encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted(encode(v) for v in value)
    return value


def decode(tp: Any, data: Any) -> Any:
    """Rebuild a value of type ``tp`` from encoded primitives."""
    if data is None or tp is Any:
        return data

    origin = typing.get_origin(tp)
    args = typing.get_args(tp)
    if origin is Union or (sys.version_info >= (3, 10) and origin is types.UnionType):
        inner = [a for a in args if a is not type(None)]
        return decode(inner[0], data) if len(inner) == 1 else data

    if isinstance(tp, type) and dataclasses.is_dataclass(tp):
        hints = typing.get_type_hints(tp)
        kwargs = {
            f.name: decode(hints[f.name], data[f.name])
            for f in dataclasses.fields(tp)
            if f.init and f.name in data
        }
        return tp(**kwargs)
    if isinstance(tp, type) and issubclass(tp, enum.Enum):
        return tp(data)
    if tp is Decimal:
        return Decimal(data)
    if tp is datetime:
        return datetime.fromisoformat(data)

    if origin is list:
        return [decode(args[0] if args else Any, v) for v in data]
    if origin is tuple:
        item = args[0] if args else Any
        return tuple(decode(item, v) for v in data)
    if origin in (set, frozenset):
        item = args[0] if args else Any
        return origin(decode(item, v) for v in data)
    if origin is dict:
        key_tp, value_tp = args if args else (Any, Any)
        return {decode(key_tp, k): decode(value_tp, v) for k, v in data.items()}
    return data
