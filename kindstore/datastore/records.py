"""Record codec: dataclass instances <-> entity property maps.

Field behaviour is driven by a tag stored under the ``"datastore"`` key of
the field metadata, in the string form ``"name,opt,opt"``::

    @dataclass
    class Task:
        key: Key | None = prop("__key__")
        title: str = ""
        notes: str = prop(noindex=True, omitempty=True, default="")
        owner: Person | None = prop("owner", flatten=True, default=None)

Recognised options are ``omitempty``, ``noindex``, ``flatten`` and
``embed``; a bare ``"-"`` skips the field. Unknown options are ignored.
"""

from __future__ import annotations

import dataclasses
import typing
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any, Mapping

from kindstore.core.errors import (
    DecodeError,
    EncodeError,
    InvalidEntityTypeError,
    KeyDecodeError,
    RecursionLimitExceeded,
)
from kindstore.core.logging import get_logger
from kindstore.datastore.keys import KEY_PROPERTY, Key
from kindstore.datastore.values import (
    DEFAULT_MAX_DEPTH,
    Value,
    _unwrap_optional,
    decode_value,
    encode_value,
    to_python,
    value_from_wire,
    zero_value,
)
from kindstore.utils.time import ZERO_TIME, Timestamp, as_utc

TAG_KEY = "datastore"

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class TagOptions:
    name: str
    omitempty: bool = False
    noindex: bool = False
    flatten: bool = False
    embed: bool = False
    skip: bool = False


def parse_tag(field_name: str, tag: str | None) -> TagOptions:
    """Resolve a field tag string into options; an empty name keeps the field name."""
    if tag is None:
        return TagOptions(field_name)
    if tag == "-":
        return TagOptions(field_name, skip=True)
    name, *options = [part.strip() for part in tag.split(",")]
    flags = set(options)
    return TagOptions(
        name or field_name,
        omitempty="omitempty" in flags,
        noindex="noindex" in flags,
        flatten="flatten" in flags,
        embed="embed" in flags,
    )


def prop(
    name: str | None = None,
    *,
    omitempty: bool = False,
    noindex: bool = False,
    flatten: bool = False,
    embed: bool = False,
    skip: bool = False,
    **field_kwargs: Any,
) -> Any:
    """``dataclasses.field`` wrapper that writes the datastore tag.

    Extra keyword arguments (``default``, ``default_factory``, ``repr`` ...)
    are passed through to ``dataclasses.field``.
    """
    if skip:
        tag = "-"
    else:
        options = [
            option
            for option, enabled in (
                ("omitempty", omitempty),
                ("noindex", noindex),
                ("flatten", flatten),
                ("embed", embed),
            )
            if enabled
        ]
        tag = ",".join([name or ""] + options)
    metadata = dict(field_kwargs.pop("metadata", None) or {})
    metadata[TAG_KEY] = tag
    if name == KEY_PROPERTY and "default" not in field_kwargs and "default_factory" not in field_kwargs:
        field_kwargs["default"] = None
    return dataclasses.field(metadata=metadata, **field_kwargs)


@dataclass(frozen=True, slots=True)
class FieldSpec:
    attr: str
    options: TagOptions
    hint: Any
    init: bool

    @property
    def name(self) -> str:
        return self.options.name

    @property
    def record_type(self) -> type | None:
        """Dataclass type held by this field, looking through ``Optional``."""
        inner, _ = _unwrap_optional(self.hint)
        if isinstance(inner, type) and dataclasses.is_dataclass(inner) and not issubclass(inner, (Key, Timestamp)):
            return inner
        return None


@dataclass(frozen=True, slots=True)
class RecordSchema:
    """Resolved tag and type information for one dataclass."""

    cls: type
    fields: tuple[FieldSpec, ...]
    required: tuple[FieldSpec, ...]


@lru_cache(maxsize=None)
def schema_for(cls: type) -> RecordSchema:
    if not (isinstance(cls, type) and dataclasses.is_dataclass(cls)):
        raise InvalidEntityTypeError(f"{cls!r} is not a dataclass")
    try:
        hints = typing.get_type_hints(cls)
    except NameError as exc:
        # annotations naming classes local to a function cannot be resolved
        logger.debug("unresolved annotations on %s: %s", cls.__name__, exc)
        hints = {}
    fields: list[FieldSpec] = []
    required: list[FieldSpec] = []
    for item in dataclasses.fields(cls):
        hint = hints.get(item.name, item.type if not isinstance(item.type, str) else Any)
        spec = FieldSpec(
            attr=item.name,
            options=parse_tag(item.name, item.metadata.get(TAG_KEY)),
            hint=hint,
            init=item.init,
        )
        no_default = item.default is dataclasses.MISSING and item.default_factory is dataclasses.MISSING
        if item.init and no_default:
            required.append(spec)
        if item.name.startswith("_") or spec.options.skip:
            continue
        fields.append(spec)
    return RecordSchema(cls, tuple(fields), tuple(required))


def is_empty(value: Any) -> bool:
    """Emptiness test behind the ``omitempty`` option."""
    if value is None:
        return True
    if isinstance(value, bool):
        return not value
    if isinstance(value, (int, float)):
        return value == 0
    if isinstance(value, (str, bytes, bytearray, list, tuple, dict, set, frozenset)):
        return len(value) == 0
    if isinstance(value, datetime):
        return as_utc(value) == ZERO_TIME
    if isinstance(value, Timestamp):
        return value.is_zero()
    return False


def _is_record(value: Any) -> bool:
    return (
        dataclasses.is_dataclass(value)
        and not isinstance(value, type)
        and not isinstance(value, (Key, Timestamp, Value))
    )


# ----------------------------------------------------------------------
# Encoding


def encode_properties(
    obj: Any,
    prefix: str = "",
    *,
    depth: int = 0,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> dict[str, Value]:
    """Walk a dataclass instance and return its typed property map."""
    if depth > max_depth:
        raise RecursionLimitExceeded(f"nesting exceeds the maximum depth of {max_depth}")
    schema = schema_for(type(obj))
    properties: dict[str, Value] = {}
    for spec in schema.fields:
        if spec.name == KEY_PROPERTY:
            continue
        value = getattr(obj, spec.attr)
        options = spec.options
        try:
            if options.embed and _is_record(value):
                properties.update(encode_properties(value, prefix, depth=depth + 1, max_depth=max_depth))
                continue
            if options.embed and value is None and spec.record_type is not None:
                continue
            if options.omitempty and is_empty(value):
                continue
            name = prefix + spec.name
            if options.flatten and (_is_record(value) or (value is None and spec.record_type is not None)):
                if value is not None:
                    properties.update(encode_properties(value, f"{name}.", depth=depth + 1, max_depth=max_depth))
                continue
            # encode_value adds a level only when it descends into a record
            encoded = encode_value(value, depth=depth, max_depth=max_depth)
        except EncodeError as err:
            err.add_context(spec.attr)
            raise
        properties[name] = encoded.excluded() if options.noindex else encoded
    return properties


def encode_entity(key: Key, obj: Any, *, max_depth: int = DEFAULT_MAX_DEPTH) -> dict[str, Any]:
    """Entity wire document ``{"key": ..., "properties": ...}`` for a record."""
    if not _is_record(obj):
        raise InvalidEntityTypeError(f"entity must be a dataclass instance, got {type(obj).__name__}")
    properties = encode_properties(obj, max_depth=max_depth)
    return {
        "key": key.to_wire(),
        "properties": {name: value.to_wire() for name, value in properties.items()},
    }


# ----------------------------------------------------------------------
# Decoding


def decode_properties(
    properties: Mapping[str, Any],
    cls: type,
    *,
    key: Key | None = None,
    prefix: str = "",
) -> Any:
    """Build an instance of ``cls`` from a property map.

    Properties may be typed ``Value`` objects or raw wire documents. Fields
    without a matching property keep their default, or the zero value of
    their type when they have none.
    """
    schema = schema_for(cls)
    decoded: dict[str, Any] = {}
    for spec in schema.fields:
        options = spec.options
        if spec.name == KEY_PROPERTY:
            if key is not None:
                decoded[spec.attr] = key
            continue
        record_type = spec.record_type
        try:
            if options.embed and record_type is not None:
                _, optional = _unwrap_optional(spec.hint)
                if optional and not _has_properties_of(properties, record_type, prefix):
                    continue
                decoded[spec.attr] = decode_properties(properties, record_type, key=key, prefix=prefix)
                continue
            name = prefix + spec.name
            if options.flatten and record_type is not None:
                nested_prefix = f"{name}."
                _, optional = _unwrap_optional(spec.hint)
                if optional and not any(prop_name.startswith(nested_prefix) for prop_name in properties):
                    continue
                decoded[spec.attr] = decode_properties(properties, record_type, key=key, prefix=nested_prefix)
                continue
            if name not in properties:
                continue
            raw = properties[name]
            if not isinstance(raw, (Mapping, Value)):
                continue
            decoded[spec.attr] = decode_value(raw, spec.hint)
        except DecodeError as err:
            err.add_context(spec.attr)
            raise
    return _instantiate(schema, decoded)


def _has_properties_of(
    properties: Mapping[str, Any],
    cls: type,
    prefix: str,
    seen: frozenset[type] = frozenset(),
) -> bool:
    """Whether any property in the map would decode into a field of ``cls`` under ``prefix``."""
    if cls in seen:
        return False
    for spec in schema_for(cls).fields:
        if spec.name == KEY_PROPERTY:
            continue
        if spec.options.embed and spec.record_type is not None:
            if _has_properties_of(properties, spec.record_type, prefix, seen | {cls}):
                return True
            continue
        name = prefix + spec.name
        if name in properties or any(prop_name.startswith(f"{name}.") for prop_name in properties):
            return True
    return False


def _instantiate(schema: RecordSchema, decoded: dict[str, Any]) -> Any:
    init_kwargs = {attr: value for attr, value in decoded.items() if _is_init(schema, attr)}
    for spec in schema.required:
        if spec.attr not in init_kwargs:
            init_kwargs[spec.attr] = zero_value(spec.hint)
    instance = schema.cls(**init_kwargs)
    for attr, value in decoded.items():
        if attr not in init_kwargs:
            # non-init fields; object.__setattr__ also covers frozen dataclasses
            object.__setattr__(instance, attr, value)
    return instance


def _is_init(schema: RecordSchema, attr: str) -> bool:
    for spec in schema.fields:
        if spec.attr == attr:
            return spec.init
    return True


def decode_entity(entity: Mapping[str, Any], cls: type | None = None) -> Any:
    """Decode an entity wire document into ``cls``, or a plain dict when ``cls`` is None."""
    if not isinstance(entity, Mapping):
        raise DecodeError(f"entity must be an object, got {type(entity).__name__}")
    properties = entity.get("properties") or {}
    if not isinstance(properties, Mapping):
        raise DecodeError("entity properties must be an object")
    if cls is None:
        return entity_to_dict(properties)
    if not (isinstance(cls, type) and dataclasses.is_dataclass(cls)):
        raise InvalidEntityTypeError(f"destination must be a dataclass type, got {cls!r}")
    key = None
    if entity.get("key"):
        try:
            key = Key.from_wire(entity["key"])
        except KeyDecodeError as exc:
            logger.debug("ignoring malformed entity key: %s", exc)
    return decode_properties(properties, cls, key=key)


def entity_to_dict(properties: Mapping[str, Any]) -> dict[str, Any]:
    """Natural Python rendering of a property map."""
    rendered: dict[str, Any] = {}
    for name, raw in properties.items():
        try:
            rendered[name] = to_python(raw if isinstance(raw, Value) else value_from_wire(raw))
        except DecodeError as err:
            err.add_context(name)
            raise
    return rendered


__all__ = [
    "FieldSpec",
    "RecordSchema",
    "TAG_KEY",
    "TagOptions",
    "decode_entity",
    "decode_properties",
    "encode_entity",
    "encode_properties",
    "entity_to_dict",
    "is_empty",
    "parse_tag",
    "prop",
    "schema_for",
]
