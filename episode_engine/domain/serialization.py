"""
Record serialization for persistent storage.

RULES:
1. Timestamps MUST be ISO 8601 strings (UTC).
2. Enums MUST use their .value.
3. Sets -> lists (sorted for determinism).
4. Output is canonical: sorted keys, fixed separators.

Decoding is driven by the record's type hints, so a record read back is
equal to the record written.
"""

import dataclasses
import json
import typing
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Type, TypeVar

from ..contracts.base import Timestamp
from ..contracts.events import RECORD_TYPES


T = TypeVar("T")

RECORD_CLASSES: Dict[str, type] = {cls.KIND: cls for cls in RECORD_TYPES}


class StrictRecordEncoder(json.JSONEncoder):
    """JSON encoder that prioritizes fidelity over flexibility."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Timestamp):
            return obj.to_iso()
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, (set, frozenset)):
            return sorted(list(obj))
        if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
            return {f.name: getattr(obj, f.name) for f in dataclasses.fields(obj)}
        return super().default(obj)


def dumps(obj: Any) -> str:
    return json.dumps(obj, cls=StrictRecordEncoder, sort_keys=True, separators=(",", ":"))


def encode_record(record: Any) -> str:
    return dumps(record)


def decode_record(kind: str, payload: str) -> Any:
    cls = RECORD_CLASSES.get(kind)
    if cls is None:
        raise ValueError(f"Unknown record kind: {kind}")
    return from_dict(cls, json.loads(payload))


def from_dict(cls: Type[T], data: Dict[str, Any]) -> T:
    """Rebuild a frozen dataclass from its encoded dict."""
    hints = typing.get_type_hints(cls)
    kwargs = {}
    for f in dataclasses.fields(cls):
        if f.name in data:
            kwargs[f.name] = _decode(hints[f.name], data[f.name])
    return cls(**kwargs)


def _decode(hint: Any, value: Any) -> Any:
    if value is None:
        return None

    origin = typing.get_origin(hint)
    args = typing.get_args(hint)

    if origin is typing.Union:
        concrete = [a for a in args if a is not type(None)]
        if len(concrete) == 1:
            return _decode(concrete[0], value)
        # Scalar unions (fact values) are stored as plain JSON scalars
        return value

    if origin is tuple:
        if len(args) == 2 and args[1] is Ellipsis:
            return tuple(_decode(args[0], item) for item in value)
        if args:
            return tuple(_decode(a, item) for a, item in zip(args, value))
        return tuple(value)

    if isinstance(hint, type):
        if issubclass(hint, Enum):
            return hint(value)
        if hint is Timestamp:
            return Timestamp.from_iso(value)
        if dataclasses.is_dataclass(hint):
            return from_dict(hint, value)

    return value
