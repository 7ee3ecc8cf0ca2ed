"""Chainable query builder and its structured-query rendering."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any

from kindstore.core.errors import DecodeError, EncodeError, QueryBuildError
from kindstore.core.logging import get_logger
from kindstore.datastore.keys import KEY_PROPERTY, Key
from kindstore.datastore.values import KeyValue, Value, encode_value

logger = get_logger(__name__)

OPERATORS: dict[str, str] = {
    "=": "EQUAL",
    "<": "LESS_THAN",
    "<=": "LESS_THAN_OR_EQUAL",
    ">": "GREATER_THAN",
    ">=": "GREATER_THAN_OR_EQUAL",
    "!=": "NOT_EQUAL",
    "in": "IN",
    "not-in": "NOT_IN",
}

ASCENDING = "ASCENDING"
DESCENDING = "DESCENDING"


class Cursor(str):
    """Opaque position in a result stream; the empty string means no cursor."""

    __slots__ = ()


def decode_cursor(text: str) -> Cursor:
    if not text:
        raise DecodeError("cannot decode an empty cursor string")
    return Cursor(text)


@dataclass(frozen=True, slots=True)
class PropertyFilter:
    property: str
    operator: str
    value: Value

    def to_wire(self) -> dict[str, Any]:
        return {
            "propertyFilter": {
                "property": {"name": self.property},
                "op": self.operator,
                "value": self.value.to_wire(),
            }
        }


@dataclass(frozen=True, slots=True)
class PropertyOrder:
    property: str
    direction: str = ASCENDING

    def to_wire(self) -> dict[str, Any]:
        return {"property": {"name": self.property}, "direction": self.direction}


class Query:
    """Accumulating query over one kind.

    Every builder method mutates the query and returns it, so calls chain::

        Query("Task").filter_field("done", "=", False).order("-created").limit(10)
    """

    def __init__(self, kind: str) -> None:
        self._kind = kind
        self._namespace = ""
        self._ancestor: Key | None = None
        self._filters: list[PropertyFilter] = []
        self._orders: list[PropertyOrder] = []
        self._projection: list[str] = []
        self._distinct_on: list[str] = []
        self._limit = 0
        self._offset = 0
        self._start_cursor = Cursor("")
        self._end_cursor = Cursor("")
        self._keys_only = False

    @property
    def kind(self) -> str:
        return self._kind

    @property
    def namespace_id(self) -> str:
        return self._namespace

    @property
    def is_keys_only(self) -> bool:
        return self._keys_only

    @property
    def filters(self) -> tuple[PropertyFilter, ...]:
        return tuple(self._filters)

    def filter(self, filter_str: str, value: Any) -> "Query":
        """Add a filter written as ``"Property op"``.

        Malformed filter strings are ignored and unknown operators fall back
        to equality.
        """
        parts = filter_str.split()
        if len(parts) != 2:
            logger.debug("ignoring malformed filter %r", filter_str)
            return self
        name, symbol = parts
        return self._add_filter(name, OPERATORS.get(symbol, "EQUAL"), value)

    def filter_field(self, field_name: str, operator: str, value: Any) -> "Query":
        """Add a filter with an explicit operator; unknown operators pass through."""
        return self._add_filter(field_name, OPERATORS.get(operator, operator), value)

    def _add_filter(self, name: str, operator: str, value: Any) -> "Query":
        try:
            encoded = encode_value(value)
        except EncodeError as exc:
            raise QueryBuildError(f"filter on {name!r}: {exc}") from exc
        self._filters.append(PropertyFilter(name, operator, encoded))
        return self

    def order(self, field_name: str) -> "Query":
        """Order by a property; a leading ``-`` sorts descending."""
        if field_name.startswith("-"):
            self._orders.append(PropertyOrder(field_name[1:], DESCENDING))
        else:
            self._orders.append(PropertyOrder(field_name, ASCENDING))
        return self

    def ancestor(self, key: Key | None) -> "Query":
        self._ancestor = key
        return self

    def namespace(self, namespace: str) -> "Query":
        self._namespace = namespace
        return self

    def project(self, *field_names: str) -> "Query":
        self._projection = list(field_names)
        return self

    def distinct(self) -> "Query":
        """Make results distinct on the projection as it stands now; a no-op without one."""
        if self._projection:
            self._distinct_on = list(self._projection)
        return self

    def distinct_on(self, *field_names: str) -> "Query":
        self._distinct_on = list(field_names)
        return self

    def limit(self, limit: int) -> "Query":
        self._limit = limit
        return self

    def offset(self, offset: int) -> "Query":
        self._offset = offset
        return self

    def start(self, cursor: Cursor | str) -> "Query":
        self._start_cursor = Cursor(cursor)
        return self

    def end(self, cursor: Cursor | str) -> "Query":
        self._end_cursor = Cursor(cursor)
        return self

    def keys_only(self) -> "Query":
        self._keys_only = True
        return self

    def clone(self) -> "Query":
        """Independent copy; filters and keys are immutable so sharing them is safe."""
        other = copy.copy(self)
        other._filters = list(self._filters)
        other._orders = list(self._orders)
        other._projection = list(self._projection)
        other._distinct_on = list(self._distinct_on)
        return other

    # ------------------------------------------------------------------

    def _filter_document(self) -> dict[str, Any] | None:
        clauses = [item.to_wire() for item in self._filters]
        if not clauses:
            combined = None
        elif len(clauses) == 1:
            combined = clauses[0]
        else:
            combined = {"compositeFilter": {"op": "AND", "filters": clauses}}
        if self._ancestor is None:
            return combined
        ancestor = PropertyFilter(KEY_PROPERTY, "HAS_ANCESTOR", KeyValue(self._ancestor)).to_wire()
        if combined is None:
            return ancestor
        return {"compositeFilter": {"op": "AND", "filters": [combined, ancestor]}}

    def to_wire(self) -> dict[str, Any]:
        """Render the structured-query document."""
        doc: dict[str, Any] = {"kind": [{"name": self._kind}]}
        filter_doc = self._filter_document()
        if filter_doc is not None:
            doc["filter"] = filter_doc
        if self._orders:
            doc["order"] = [item.to_wire() for item in self._orders]
        if self._projection:
            doc["projection"] = [{"property": {"name": name}} for name in self._projection]
        elif self._keys_only:
            doc["projection"] = [{"property": {"name": KEY_PROPERTY}}]
        if self._distinct_on:
            doc["distinctOn"] = [{"property": {"name": name}} for name in self._distinct_on]
        if self._limit > 0:
            doc["limit"] = self._limit
        if self._offset > 0:
            doc["offset"] = self._offset
        if self._start_cursor:
            doc["startCursor"] = str(self._start_cursor)
        if self._end_cursor:
            doc["endCursor"] = str(self._end_cursor)
        return doc

    def partition(self) -> dict[str, Any] | None:
        """Request-level ``partitionId`` for a namespaced query."""
        if not self._namespace:
            return None
        return {"namespaceId": self._namespace}

    def __repr__(self) -> str:
        return f"Query(kind={self._kind!r}, filters={len(self._filters)}, limit={self._limit})"


__all__ = [
    "ASCENDING",
    "Cursor",
    "DESCENDING",
    "OPERATORS",
    "PropertyFilter",
    "PropertyOrder",
    "Query",
    "decode_cursor",
]
