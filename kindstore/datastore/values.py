"""Typed property values and the bidirectional value codec.

Every wire property value is a JSON object with exactly one type tag
(``stringValue``, ``integerValue`` ...) plus an optional
``excludeFromIndexes`` flag. Each tag has a frozen dataclass here;
``encode_value`` maps native Python values onto them and ``decode_value``
maps them back into a requested destination type.
"""

from __future__ import annotations

import base64
import binascii
import dataclasses
import enum
import math
import types
import typing
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Mapping, Union

from kindstore.core.errors import (
    DecodeError,
    EncodeError,
    RecursionLimitExceeded,
    TypeMismatchError,
    UnsupportedTypeError,
)
from kindstore.datastore.keys import Key
from kindstore.utils.time import ZERO_TIME, Timestamp, format_rfc3339, parse_rfc3339

DEFAULT_MAX_DEPTH = 32

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1

_NON_FINITE = {"NaN": math.nan, "Infinity": math.inf, "-Infinity": -math.inf}


@dataclass(frozen=True, slots=True)
class Value:
    """Base of the typed property value union."""

    wire_tag: ClassVar[str] = ""

    exclude_from_indexes: bool = field(default=False, kw_only=True)

    def payload(self) -> Any:
        raise NotImplementedError

    def to_wire(self) -> dict[str, Any]:
        doc: dict[str, Any] = {self.wire_tag: self.payload()}
        if self.exclude_from_indexes:
            doc["excludeFromIndexes"] = True
        return doc

    def excluded(self) -> "Value":
        """Copy of this value flagged as excluded from indexes."""
        return dataclasses.replace(self, exclude_from_indexes=True)


@dataclass(frozen=True, slots=True)
class NullValue(Value):
    wire_tag: ClassVar[str] = "nullValue"

    def payload(self) -> Any:
        return None


@dataclass(frozen=True, slots=True)
class StringValue(Value):
    wire_tag: ClassVar[str] = "stringValue"
    value: str

    def payload(self) -> Any:
        return self.value


@dataclass(frozen=True, slots=True)
class BooleanValue(Value):
    wire_tag: ClassVar[str] = "booleanValue"
    value: bool

    def payload(self) -> Any:
        return self.value


@dataclass(frozen=True, slots=True)
class IntegerValue(Value):
    wire_tag: ClassVar[str] = "integerValue"
    value: int

    def payload(self) -> Any:
        return str(self.value)


@dataclass(frozen=True, slots=True)
class DoubleValue(Value):
    wire_tag: ClassVar[str] = "doubleValue"
    value: float

    def payload(self) -> Any:
        if math.isnan(self.value):
            return "NaN"
        if math.isinf(self.value):
            return "Infinity" if self.value > 0 else "-Infinity"
        return self.value


@dataclass(frozen=True, slots=True)
class TimestampValue(Value):
    wire_tag: ClassVar[str] = "timestampValue"
    value: Timestamp

    def payload(self) -> Any:
        return format_rfc3339(self.value)


@dataclass(frozen=True, slots=True)
class BlobValue(Value):
    wire_tag: ClassVar[str] = "blobValue"
    value: bytes

    def payload(self) -> Any:
        return base64.b64encode(self.value).decode("ascii")


@dataclass(frozen=True, slots=True)
class KeyValue(Value):
    wire_tag: ClassVar[str] = "keyValue"
    value: Key

    def payload(self) -> Any:
        return self.value.to_wire()


@dataclass(frozen=True, slots=True)
class ArrayValue(Value):
    wire_tag: ClassVar[str] = "arrayValue"
    values: tuple[Value, ...] = ()

    def payload(self) -> Any:
        return {"values": [item.to_wire() for item in self.values]}

    def to_wire(self) -> dict[str, Any]:
        # the backend rejects the flag on the array itself; it belongs on each element
        if self.exclude_from_indexes:
            items = [item.excluded().to_wire() for item in self.values]
            return {self.wire_tag: {"values": items}}
        return {self.wire_tag: self.payload()}


@dataclass(frozen=True, slots=True)
class EntityValue(Value):
    wire_tag: ClassVar[str] = "entityValue"
    properties: Mapping[str, Value] = field(default_factory=dict)
    key: Key | None = None

    def payload(self) -> Any:
        doc: dict[str, Any] = {"properties": {name: value.to_wire() for name, value in self.properties.items()}}
        if self.key is not None:
            doc["key"] = self.key.to_wire()
        return doc


# ----------------------------------------------------------------------
# Wire parsing


def value_from_wire(doc: Any) -> Value:
    """Parse one wire property value document into its typed variant."""
    if not isinstance(doc, Mapping):
        raise DecodeError(f"property value must be an object, got {type(doc).__name__}")
    excluded = bool(doc.get("excludeFromIndexes", False))
    if "nullValue" in doc:
        return NullValue(exclude_from_indexes=excluded)
    if "stringValue" in doc:
        raw = doc["stringValue"]
        if not isinstance(raw, str):
            raise DecodeError("stringValue must be a string")
        return StringValue(raw, exclude_from_indexes=excluded)
    if "integerValue" in doc:
        return IntegerValue(_parse_integer(doc["integerValue"]), exclude_from_indexes=excluded)
    if "booleanValue" in doc:
        raw = doc["booleanValue"]
        if not isinstance(raw, bool):
            raise DecodeError("booleanValue must be a boolean")
        return BooleanValue(raw, exclude_from_indexes=excluded)
    if "doubleValue" in doc:
        return DoubleValue(_parse_double(doc["doubleValue"]), exclude_from_indexes=excluded)
    if "timestampValue" in doc:
        raw = doc["timestampValue"]
        try:
            stamp = parse_rfc3339(raw) if isinstance(raw, str) else None
        except ValueError as exc:
            raise DecodeError(str(exc)) from exc
        if stamp is None:
            raise DecodeError("timestampValue must be a string")
        return TimestampValue(stamp, exclude_from_indexes=excluded)
    if "blobValue" in doc:
        raw = doc["blobValue"]
        try:
            blob = base64.b64decode(raw, validate=True) if isinstance(raw, str) else None
        except binascii.Error as exc:
            raise DecodeError(f"blobValue is not valid base64: {exc}") from exc
        if blob is None:
            raise DecodeError("blobValue must be a base64 string")
        return BlobValue(blob, exclude_from_indexes=excluded)
    if "keyValue" in doc:
        return KeyValue(Key.from_wire(doc["keyValue"]), exclude_from_indexes=excluded)
    if "arrayValue" in doc:
        raw = doc["arrayValue"] or {}
        if not isinstance(raw, Mapping):
            raise DecodeError("arrayValue must be an object")
        items = raw.get("values") or []
        parsed = []
        for index, item in enumerate(items):
            try:
                parsed.append(value_from_wire(item))
            except DecodeError as err:
                err.add_context(index)
                raise
        return ArrayValue(tuple(parsed), exclude_from_indexes=excluded)
    if "entityValue" in doc:
        raw = doc["entityValue"] or {}
        if not isinstance(raw, Mapping):
            raise DecodeError("entityValue must be an object")
        properties = {}
        for name, item in (raw.get("properties") or {}).items():
            try:
                properties[name] = value_from_wire(item)
            except DecodeError as err:
                err.add_context(name)
                raise
        key = Key.from_wire(raw["key"]) if raw.get("key") else None
        return EntityValue(properties, key, exclude_from_indexes=excluded)
    tags = sorted(name for name in doc if name != "excludeFromIndexes")
    raise DecodeError(f"unsupported property value type {tags}")


def _parse_integer(raw: Any) -> int:
    if isinstance(raw, bool):
        raise DecodeError("integerValue must be a decimal string or number")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        try:
            return int(raw, 10)
        except ValueError as exc:
            raise DecodeError(f"integerValue {raw!r} is not a decimal integer") from exc
    if isinstance(raw, float) and raw.is_integer():
        return int(raw)
    raise DecodeError("integerValue must be a decimal string or number")


def _parse_double(raw: Any) -> float:
    if isinstance(raw, bool):
        raise DecodeError("doubleValue must be a number")
    if isinstance(raw, (int, float)):
        return float(raw)
    if isinstance(raw, str) and raw in _NON_FINITE:
        return _NON_FINITE[raw]
    raise DecodeError("doubleValue must be a number")


# ----------------------------------------------------------------------
# Encoding


def encode_value(value: Any, *, depth: int = 0, max_depth: int = DEFAULT_MAX_DEPTH, in_array: bool = False) -> Value:
    """Map a native Python value onto a typed property value."""
    if depth > max_depth:
        raise RecursionLimitExceeded(f"nesting exceeds the maximum depth of {max_depth}")
    if isinstance(value, Value):
        return value
    if value is None:
        return NullValue()
    if isinstance(value, enum.Enum):
        value = value.value
    if isinstance(value, datetime):
        return TimestampValue(Timestamp.from_datetime(value))
    if isinstance(value, Timestamp):
        return TimestampValue(value)
    if isinstance(value, Key):
        return KeyValue(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return BlobValue(bytes(value))
    if isinstance(value, (list, tuple)):
        if in_array:
            raise EncodeError("arrays cannot directly contain arrays")
        items = []
        for index, item in enumerate(value):
            try:
                items.append(encode_value(item, depth=depth, max_depth=max_depth, in_array=True))
            except EncodeError as err:
                err.add_context(index)
                raise
        return ArrayValue(tuple(items))
    if isinstance(value, str):
        return StringValue(value)
    if isinstance(value, bool):
        return BooleanValue(value)
    if isinstance(value, int):
        if not _INT64_MIN <= value <= _INT64_MAX:
            raise EncodeError(f"integer {value} does not fit in 64 bits")
        return IntegerValue(value)
    if isinstance(value, float):
        return DoubleValue(value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        from kindstore.datastore.records import encode_properties

        return EntityValue(encode_properties(value, depth=depth + 1, max_depth=max_depth))
    raise UnsupportedTypeError(type(value).__name__)


# ----------------------------------------------------------------------
# Decoding


def _unwrap_optional(tp: Any) -> tuple[Any, bool]:
    """Return ``(inner, True)`` for ``X | None`` and ``(tp, False)`` otherwise."""
    origin = typing.get_origin(tp)
    if origin is Union or origin is types.UnionType:
        args = [arg for arg in typing.get_args(tp) if arg is not type(None)]
        if len(args) != len(typing.get_args(tp)):
            if len(args) == 1:
                return args[0], True
            return Union[tuple(args)], True
    return tp, False


def zero_value(tp: Any) -> Any:
    """Zero value of a destination type, used for nulls and missing fields."""
    inner, optional = _unwrap_optional(tp)
    if optional or tp is Any or tp is object:
        return None
    origin = typing.get_origin(inner) or inner
    if origin is list:
        return []
    if origin is tuple:
        return ()
    if not isinstance(inner, type):
        return None
    if issubclass(inner, enum.Enum):
        return None
    if issubclass(inner, bool):
        return False
    if issubclass(inner, int):
        return 0
    if issubclass(inner, float):
        return 0.0
    if issubclass(inner, str):
        return ""
    if issubclass(inner, (bytes, bytearray)):
        return inner()
    if issubclass(inner, datetime):
        return ZERO_TIME
    if issubclass(inner, Timestamp):
        return Timestamp.zero()
    if issubclass(inner, Key):
        return None
    if dataclasses.is_dataclass(inner):
        from kindstore.datastore.records import decode_properties

        return decode_properties({}, inner)
    return None


def to_python(value: Value) -> Any:
    """Natural Python rendering of a typed value, used for ``Any`` destinations."""
    if isinstance(value, NullValue):
        return None
    if isinstance(value, TimestampValue):
        return value.value.to_datetime()
    if isinstance(value, ArrayValue):
        return [to_python(item) for item in value.values]
    if isinstance(value, EntityValue):
        return {name: to_python(item) for name, item in value.properties.items()}
    return value.value  # type: ignore[attr-defined]


def decode_value(wire: Value | Mapping[str, Any], tp: Any) -> Any:
    """Decode a typed value (or its wire document) into destination type ``tp``."""
    value = wire if isinstance(wire, Value) else value_from_wire(wire)
    if tp is Any or tp is object:
        return to_python(value)
    inner, optional = _unwrap_optional(tp)
    if isinstance(value, NullValue):
        return None if optional else zero_value(tp)
    if optional:
        return decode_value(value, inner)
    origin = typing.get_origin(tp)
    if origin is Union or origin is types.UnionType:
        return _decode_union(value, tp)
    if origin in (list, tuple) or tp in (list, tuple):
        return _decode_sequence(value, tp)
    if not isinstance(tp, type):
        raise TypeMismatchError(f"unsupported destination type {tp!r}")
    if issubclass(tp, enum.Enum):
        return _decode_enum(value, tp)
    if issubclass(tp, bool):
        if isinstance(value, BooleanValue):
            return value.value
    elif issubclass(tp, int):
        if isinstance(value, IntegerValue):
            return tp(value.value)
    elif issubclass(tp, float):
        if isinstance(value, DoubleValue):
            return tp(value.value)
    elif issubclass(tp, str):
        if isinstance(value, StringValue):
            return tp(value.value)
    elif issubclass(tp, (bytes, bytearray)):
        if isinstance(value, BlobValue):
            return tp(value.value)
    elif issubclass(tp, datetime):
        if isinstance(value, TimestampValue):
            return value.value.to_datetime()
    elif issubclass(tp, Timestamp):
        if isinstance(value, TimestampValue):
            return value.value
    elif issubclass(tp, Key):
        if isinstance(value, KeyValue):
            return value.value
    elif dataclasses.is_dataclass(tp):
        if isinstance(value, EntityValue):
            from kindstore.datastore.records import decode_properties

            return decode_properties(value.properties, tp, key=value.key)
    raise TypeMismatchError(f"cannot decode {value.wire_tag} into {tp.__name__}")


def _decode_sequence(value: Value, tp: Any) -> Any:
    container = typing.get_origin(tp) or tp
    if not isinstance(value, ArrayValue):
        raise TypeMismatchError(f"cannot decode {value.wire_tag} into {container.__name__}")
    args = typing.get_args(tp)
    if container is tuple and args and not (len(args) == 2 and args[1] is Ellipsis):
        if len(args) != len(value.values):
            raise TypeMismatchError(f"expected {len(args)} array elements, got {len(value.values)}")
        element_types = list(args)
    else:
        element_types = [args[0] if args else Any] * len(value.values)
    items = []
    for index, (item, element_type) in enumerate(zip(value.values, element_types)):
        try:
            items.append(decode_value(item, element_type))
        except DecodeError as err:
            err.add_context(index)
            raise
    return tuple(items) if container is tuple else items


def _decode_union(value: Value, tp: Any) -> Any:
    for candidate in typing.get_args(tp):
        try:
            return decode_value(value, candidate)
        except TypeMismatchError:
            continue
    raise TypeMismatchError(f"cannot decode {value.wire_tag} into {tp!r}")


def _decode_enum(value: Value, tp: type[enum.Enum]) -> Any:
    raw = to_python(value)
    try:
        return tp(raw)
    except ValueError as exc:
        raise TypeMismatchError(f"{raw!r} is not a valid {tp.__name__}") from exc


__all__ = [
    "ArrayValue",
    "BlobValue",
    "BooleanValue",
    "DEFAULT_MAX_DEPTH",
    "DoubleValue",
    "EntityValue",
    "IntegerValue",
    "KeyValue",
    "NullValue",
    "StringValue",
    "TimestampValue",
    "Value",
    "decode_value",
    "encode_value",
    "to_python",
    "value_from_wire",
    "zero_value",
]
