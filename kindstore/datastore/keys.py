"""Entity keys and their canonical path encoding."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

import orjson

from kindstore.core.errors import InvalidKeyError, KeyDecodeError

KEY_PROPERTY = "__key__"

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
# ids arriving as JSON floats are exact only up to the double mantissa
_MAX_EXACT_FLOAT_ID = 2**53


@dataclass(frozen=True, slots=True)
class PathElement:
    """One ``(kind, name | id)`` segment of a key path."""

    kind: str
    name: str | None = None
    id: int | None = None

    def __post_init__(self) -> None:
        if self.name == "":
            object.__setattr__(self, "name", None)
        if self.id == 0:
            object.__setattr__(self, "id", None)
        if self.name is not None and self.id is not None:
            raise InvalidKeyError(f"path element {self.kind!r} has both a name and an id")

    @property
    def incomplete(self) -> bool:
        return self.name is None and self.id is None

    def to_wire(self) -> dict[str, Any]:
        element: dict[str, Any] = {"kind": self.kind}
        if self.name is not None:
            element["name"] = self.name
        elif self.id is not None:
            element["id"] = str(self.id)
        return element

    def __str__(self) -> str:
        if self.name is not None:
            return f"{self.kind},{orjson.dumps(self.name).decode('utf-8')}"
        if self.id is not None:
            return f"{self.kind},{self.id}"
        return f"{self.kind},incomplete"


@dataclass(frozen=True, slots=True)
class Key:
    """Immutable entity key: an ancestor path plus an optional namespace.

    Equality and hashing are structural, so keys work as dict keys for
    correlating batch results.
    """

    path: tuple[PathElement, ...]
    namespace: str = ""

    def __post_init__(self) -> None:
        path = tuple(self.path)
        if not path:
            raise InvalidKeyError("key path is empty")
        for element in path[:-1]:
            if element.incomplete:
                raise InvalidKeyError(f"ancestor {element.kind!r} of a key must be complete")
        object.__setattr__(self, "path", path)
        object.__setattr__(self, "namespace", self.namespace or "")

    # Constructors ------------------------------------------------------

    @classmethod
    def name_key(cls, kind: str, name: str, parent: "Key | None" = None, namespace: str = "") -> "Key":
        return cls._child(PathElement(kind, name=name), parent, namespace)

    @classmethod
    def id_key(cls, kind: str, id: int, parent: "Key | None" = None, namespace: str = "") -> "Key":
        return cls._child(PathElement(kind, id=id), parent, namespace)

    @classmethod
    def incomplete_key(cls, kind: str, parent: "Key | None" = None, namespace: str = "") -> "Key":
        return cls._child(PathElement(kind), parent, namespace)

    @classmethod
    def _child(cls, element: PathElement, parent: "Key | None", namespace: str) -> "Key":
        if parent is None:
            return cls((element,), namespace)
        if parent.incomplete:
            raise InvalidKeyError("parent key is incomplete")
        return cls(parent.path + (element,), parent.namespace)

    # Accessors ---------------------------------------------------------

    @property
    def kind(self) -> str:
        return self.path[-1].kind

    @property
    def name(self) -> str | None:
        return self.path[-1].name

    @property
    def id(self) -> int | None:
        return self.path[-1].id

    @property
    def parent(self) -> "Key | None":
        if len(self.path) == 1:
            return None
        return Key(self.path[:-1], self.namespace)

    @property
    def incomplete(self) -> bool:
        return self.path[-1].incomplete

    def with_id(self, id: int) -> "Key":
        """Return a copy whose last segment is completed with ``id``."""
        last = self.path[-1]
        return Key(self.path[:-1] + (PathElement(last.kind, id=id),), self.namespace)

    def is_ancestor_of(self, other: "Key") -> bool:
        """True when ``other`` lives strictly below this key in the same namespace."""
        if self.namespace != other.namespace or len(self.path) >= len(other.path):
            return False
        return other.path[: len(self.path)] == self.path

    # Wire form ---------------------------------------------------------

    def to_wire(self) -> dict[str, Any]:
        doc: dict[str, Any] = {"path": [element.to_wire() for element in self.path]}
        if self.namespace:
            doc["partitionId"] = {"namespaceId": self.namespace}
        return doc

    @classmethod
    def from_wire(cls, doc: Any) -> "Key":
        if not isinstance(doc, Mapping):
            raise KeyDecodeError(f"key document must be an object, got {type(doc).__name__}")
        raw_path = doc.get("path")
        if not isinstance(raw_path, list) or not raw_path:
            raise KeyDecodeError("key document has an empty or missing path")
        elements = [_element_from_wire(raw, index) for index, raw in enumerate(raw_path)]
        namespace = ""
        partition = doc.get("partitionId")
        if isinstance(partition, Mapping):
            namespace = partition.get("namespaceId") or ""
        try:
            return cls(tuple(elements), namespace)
        except InvalidKeyError as exc:
            raise KeyDecodeError(str(exc)) from exc

    def encode(self) -> str:
        """Opaque url-safe form suitable for URLs and CLI arguments."""
        return base64.urlsafe_b64encode(orjson.dumps(self.to_wire())).decode("ascii")

    def __str__(self) -> str:
        rendered = "".join(f"/{element}" for element in self.path)
        return f"[{self.namespace}]{rendered}" if self.namespace else rendered


def _element_from_wire(raw: Any, index: int) -> PathElement:
    if not isinstance(raw, Mapping):
        raise KeyDecodeError(f"path element {index} must be an object")
    kind = raw.get("kind", "")
    if not isinstance(kind, str):
        raise KeyDecodeError(f"path element {index} has a non-string kind")
    name = raw.get("name")
    if name is not None and not isinstance(name, str):
        raise KeyDecodeError(f"path element {index} has a non-string name")
    ident = _parse_id(raw["id"], index) if raw.get("id") is not None else None
    try:
        return PathElement(kind, name=name, id=ident)
    except InvalidKeyError as exc:
        raise KeyDecodeError(str(exc)) from exc


def _parse_id(value: Any, index: int) -> int:
    if isinstance(value, bool):
        raise KeyDecodeError(f"path element {index} has a boolean id")
    if isinstance(value, str):
        try:
            ident = int(value, 10)
        except ValueError as exc:
            raise KeyDecodeError(f"path element {index} has a non-numeric id {value!r}") from exc
    elif isinstance(value, int):
        ident = value
    elif isinstance(value, float):
        if not value.is_integer() or abs(value) > _MAX_EXACT_FLOAT_ID:
            raise KeyDecodeError(f"path element {index} has an id that is not an exact integer")
        ident = int(value)
    else:
        raise KeyDecodeError(f"path element {index} has an id of type {type(value).__name__}")
    if not _INT64_MIN <= ident <= _INT64_MAX:
        raise KeyDecodeError(f"path element {index} has an id outside the int64 range")
    return ident


def decode_key(encoded: str) -> Key:
    """Inverse of :meth:`Key.encode`."""
    if not encoded:
        raise KeyDecodeError("cannot decode an empty key string")
    padded = encoded + "=" * (-len(encoded) % 4)
    try:
        doc = orjson.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (binascii.Error, UnicodeEncodeError, orjson.JSONDecodeError) as exc:
        raise KeyDecodeError(f"malformed encoded key: {exc}") from exc
    return Key.from_wire(doc)


def keys_to_wire(keys: Iterable[Key]) -> list[dict[str, Any]]:
    return [key.to_wire() for key in keys]


__all__ = ["KEY_PROPERTY", "Key", "PathElement", "decode_key", "keys_to_wire"]
