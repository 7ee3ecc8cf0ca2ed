"""In-memory entity store backing the emulator."""

from __future__ import annotations

import base64
import threading
from dataclasses import dataclass, field
from functools import cmp_to_key
from typing import Any, Mapping

from kindstore.core.errors import DecodeError
from kindstore.core.logging import get_logger
from kindstore.datastore.keys import KEY_PROPERTY, Key
from kindstore.datastore.values import (
    ArrayValue,
    BlobValue,
    BooleanValue,
    DoubleValue,
    EntityValue,
    IntegerValue,
    KeyValue,
    NullValue,
    StringValue,
    TimestampValue,
    Value,
    value_from_wire,
)
from kindstore.models.dto import EntityResult, QueryResultBatch
from kindstore.utils.ids import new_transaction_id

logger = get_logger(__name__)

MAX_MUTATIONS_PER_COMMIT = 500
FIRST_ALLOCATED_ID = 1000
DEFAULT_BATCH_SIZE = 300

# cross-type ordering of property values
_TYPE_RANK: Mapping[type, int] = {
    NullValue: 0,
    IntegerValue: 1,
    DoubleValue: 1,
    TimestampValue: 2,
    BooleanValue: 3,
    StringValue: 4,
    BlobValue: 4,
    KeyValue: 5,
    ArrayValue: 6,
    EntityValue: 7,
}


class StoreError(Exception):
    """Request rejected by the store; rendered as a Google API error body."""

    def __init__(self, status_code: int, status: str, message: str) -> None:
        self.status_code = status_code
        self.status = status
        self.message = message
        super().__init__(message)

    def to_wire(self) -> dict[str, Any]:
        return {"error": {"code": self.status_code, "message": self.message, "status": self.status}}


def invalid_argument(message: str) -> StoreError:
    return StoreError(400, "INVALID_ARGUMENT", message)


@dataclass(slots=True)
class _StoredEntity:
    document: dict[str, Any]
    version: int


@dataclass(slots=True)
class _TransactionState:
    read_only: bool
    read_versions: dict[Key, int] = field(default_factory=dict)


def _comparable(value: Value) -> tuple[int, Any]:
    rank = _TYPE_RANK.get(type(value), 8)
    if isinstance(value, NullValue):
        return rank, 0
    if isinstance(value, KeyValue):
        return rank, _key_order(value.value)
    if isinstance(value, StringValue):
        return rank, value.value.encode("utf-8")
    if isinstance(value, (ArrayValue, EntityValue)):
        return rank, 0
    return rank, value.value  # type: ignore[attr-defined]


def _key_order(key: Key) -> tuple[Any, ...]:
    parts: list[Any] = [key.namespace]
    for element in key.path:
        # ids sort before names within a kind
        if element.id is not None:
            parts.append((element.kind, 0, element.id, ""))
        else:
            parts.append((element.kind, 1, 0, element.name or ""))
    return tuple(parts)


def _compare(left: Value, right: Value) -> int:
    a, b = _comparable(left), _comparable(right)
    if a[0] != b[0]:
        return -1 if a[0] < b[0] else 1
    if a[1] == b[1]:
        return 0
    return -1 if a[1] < b[1] else 1


def _property(document: Mapping[str, Any], key: Key, name: str) -> Value | None:
    if name == KEY_PROPERTY:
        return KeyValue(key)
    raw = (document.get("properties") or {}).get(name)
    return value_from_wire(raw) if raw is not None else None


def _candidates(value: Value | None) -> list[Value]:
    """Array properties match if any element matches."""
    if value is None:
        return []
    if isinstance(value, ArrayValue):
        return list(value.values)
    return [value]


def matches_filter(document: Mapping[str, Any], key: Key, filter_doc: Mapping[str, Any]) -> bool:
    """Evaluate a query filter document against a stored entity."""
    if "compositeFilter" in filter_doc:
        composite = filter_doc["compositeFilter"]
        results = (matches_filter(document, key, item) for item in composite.get("filters") or [])
        op = composite.get("op", "AND")
        if op == "AND":
            return all(results)
        if op == "OR":
            return any(results)
        raise invalid_argument(f"unsupported composite operator {op}")
    if "propertyFilter" not in filter_doc:
        raise invalid_argument("filter must be a propertyFilter or compositeFilter")
    prop_filter = filter_doc["propertyFilter"]
    name = (prop_filter.get("property") or {}).get("name", "")
    op = prop_filter.get("op", "")
    operand = value_from_wire(prop_filter.get("value") or {"nullValue": None})
    if op == "HAS_ANCESTOR":
        if not isinstance(operand, KeyValue):
            raise invalid_argument("HAS_ANCESTOR requires a key value")
        ancestor = operand.value
        return key == ancestor or ancestor.is_ancestor_of(key)
    stored = _candidates(_property(document, key, name))
    if op in ("IN", "NOT_IN"):
        if not isinstance(operand, ArrayValue):
            raise invalid_argument(f"{op} requires an array value")
        hit = any(_compare(item, option) == 0 for item in stored for option in operand.values)
        return hit if op == "IN" else bool(stored) and not hit
    if op == "NOT_EQUAL":
        return bool(stored) and all(_compare(item, operand) != 0 for item in stored)
    checks = {
        "EQUAL": lambda c: c == 0,
        "LESS_THAN": lambda c: c < 0,
        "LESS_THAN_OR_EQUAL": lambda c: c <= 0,
        "GREATER_THAN": lambda c: c > 0,
        "GREATER_THAN_OR_EQUAL": lambda c: c >= 0,
    }
    check = checks.get(op)
    if check is None:
        raise invalid_argument(f"unsupported filter operator {op!r}")
    return any(check(_compare(item, operand)) for item in stored)


def encode_cursor(position: int) -> str:
    return base64.urlsafe_b64encode(f"pos:{position}".encode("ascii")).decode("ascii")


def decode_cursor(cursor: str) -> int:
    try:
        text = base64.urlsafe_b64decode(cursor.encode("ascii")).decode("ascii")
        prefix, _, position = text.partition(":")
        if prefix != "pos":
            raise ValueError(prefix)
        return int(position)
    except ValueError as exc:
        raise invalid_argument(f"invalid cursor {cursor!r}") from exc


class EmulatorStore:
    """Thread-safe, in-memory stand-in for the backend.

    Entities are partitioned by ``(project, database)``; namespaces live in
    the keys themselves.
    """

    def __init__(self, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        self.batch_size = batch_size
        self._lock = threading.RLock()
        self._entities: dict[tuple[str, str], dict[Key, _StoredEntity]] = {}
        self._transactions: dict[str, _TransactionState] = {}
        self._next_id = FIRST_ALLOCATED_ID
        self._version = 0

    def _partition(self, project_id: str, database_id: str | None) -> dict[Key, _StoredEntity]:
        return self._entities.setdefault((project_id, database_id or ""), {})

    @staticmethod
    def _parse_key(doc: Any) -> Key:
        try:
            return Key.from_wire(doc)
        except DecodeError as exc:
            raise invalid_argument(f"invalid key: {exc}") from exc

    def _allocate(self, key: Key) -> Key:
        allocated = key.with_id(self._next_id)
        self._next_id += 1
        return allocated

    # ------------------------------------------------------------------
    # RPCs

    def lookup(
        self,
        project_id: str,
        database_id: str | None,
        keys: list[dict[str, Any]],
        transaction: str | None = None,
    ) -> tuple[list[EntityResult], list[EntityResult]]:
        parsed = [self._parse_key(doc) for doc in keys]
        with self._lock:
            state = self._transaction(transaction) if transaction else None
            partition = self._partition(project_id, database_id)
            found: list[EntityResult] = []
            missing: list[EntityResult] = []
            for key in parsed:
                stored = partition.get(key)
                if state is not None:
                    state.read_versions.setdefault(key, stored.version if stored else 0)
                if stored is None:
                    missing.append(EntityResult(entity={"key": key.to_wire()}))
                else:
                    found.append(EntityResult(entity=stored.document, version=str(stored.version)))
            return found, missing

    def commit(
        self,
        project_id: str,
        database_id: str | None,
        mode: str,
        mutations: list[dict[str, Any]],
        transaction: str | None = None,
    ) -> list[dict[str, Any]]:
        """Apply mutations all-or-nothing; returns one mutation result per mutation."""
        if len(mutations) > MAX_MUTATIONS_PER_COMMIT:
            raise invalid_argument(
                f"too many mutations: {len(mutations)} exceeds limit of {MAX_MUTATIONS_PER_COMMIT}"
            )
        if mode == "TRANSACTIONAL" and not transaction:
            raise invalid_argument("transaction ID required for TRANSACTIONAL mode")
        with self._lock:
            if transaction:
                state = self._transactions.pop(transaction, None)
                if state is None:
                    raise invalid_argument("invalid or expired transaction")
                if state.read_only and mutations:
                    raise invalid_argument("cannot modify entities in a read-only transaction")
                self._check_conflicts(project_id, database_id, state)
            partition = self._partition(project_id, database_id)
            staged = dict(partition)
            results = [self._apply(staged, mutation) for mutation in mutations]
            partition.clear()
            partition.update(staged)
            return results

    def _check_conflicts(self, project_id: str, database_id: str | None, state: _TransactionState) -> None:
        partition = self._partition(project_id, database_id)
        for key, version in state.read_versions.items():
            stored = partition.get(key)
            if (stored.version if stored else 0) != version:
                raise StoreError(409, "ABORTED", f"transaction aborted: {key} was modified concurrently")

    def _apply(self, staged: dict[Key, _StoredEntity], mutation: Mapping[str, Any]) -> dict[str, Any]:
        ops = [op for op in ("insert", "update", "upsert", "delete") if op in mutation]
        if len(ops) != 1:
            raise invalid_argument("mutation must have exactly one operation")
        op = ops[0]
        if op == "delete":
            key = self._parse_key(mutation["delete"])
            if key.incomplete:
                raise invalid_argument("cannot delete an incomplete key")
            staged.pop(key, None)
            self._version += 1
            return {"version": str(self._version)}
        entity = mutation[op]
        if not isinstance(entity, Mapping):
            raise invalid_argument(f"{op} mutation must carry an entity")
        key = self._parse_key(entity.get("key"))
        assigned = key.incomplete
        if assigned:
            if op == "update":
                raise invalid_argument("cannot update an entity with an incomplete key")
            key = self._allocate(key)
        elif op == "insert" and key in staged:
            raise StoreError(409, "ALREADY_EXISTS", "entity already exists")
        elif op == "update" and key not in staged:
            raise StoreError(404, "NOT_FOUND", "no entity to update")
        self._version += 1
        document = {"key": key.to_wire(), "properties": dict(entity.get("properties") or {})}
        staged[key] = _StoredEntity(document, self._version)
        result: dict[str, Any] = {"version": str(self._version)}
        if assigned:
            result["key"] = key.to_wire()
        return result

    def run_query(
        self,
        project_id: str,
        database_id: str | None,
        query: Mapping[str, Any],
        namespace: str = "",
    ) -> QueryResultBatch:
        matches = self._matching(project_id, database_id, query, namespace)
        start = decode_cursor(query["startCursor"]) if query.get("startCursor") else 0
        end = decode_cursor(query["endCursor"]) if query.get("endCursor") else len(matches)
        offset = int(query.get("offset") or 0)
        limit = int(query.get("limit") or 0)
        position = min(start + offset, len(matches))
        skipped = position - min(start, len(matches))
        available = max(min(end, len(matches)) - position, 0)
        take = min(available, self.batch_size)
        if limit > 0:
            take = min(take, limit)
        window = matches[position : position + take]
        projection = [item["property"]["name"] for item in query.get("projection") or []]
        keys_only = projection == [KEY_PROPERTY]
        results = []
        for index, (key, document) in enumerate(window):
            if keys_only:
                entity: dict[str, Any] = {"key": key.to_wire()}
            elif projection:
                properties = document.get("properties") or {}
                entity = {
                    "key": key.to_wire(),
                    "properties": {name: properties[name] for name in projection if name in properties},
                }
            else:
                entity = document
            results.append(EntityResult(entity=entity, cursor=encode_cursor(position + index + 1)))
        next_position = position + take
        if next_position >= min(end, len(matches)):
            more_results = "NO_MORE_RESULTS"
        elif limit > 0 and take == limit:
            more_results = "MORE_RESULTS_AFTER_LIMIT"
        else:
            more_results = "NOT_FINISHED"
        return QueryResultBatch(
            entity_result_type="KEY_ONLY" if keys_only else ("PROJECTION" if projection else "FULL"),
            entity_results=results,
            end_cursor=encode_cursor(next_position),
            more_results=more_results,
            skipped_results=skipped or None,
        )

    def count(
        self,
        project_id: str,
        database_id: str | None,
        query: Mapping[str, Any],
        namespace: str = "",
    ) -> int:
        matches = self._matching(project_id, database_id, query, namespace)
        offset = int(query.get("offset") or 0)
        total = max(len(matches) - offset, 0)
        limit = int(query.get("limit") or 0)
        return min(total, limit) if limit > 0 else total

    def _matching(
        self,
        project_id: str,
        database_id: str | None,
        query: Mapping[str, Any],
        namespace: str,
    ) -> list[tuple[Key, dict[str, Any]]]:
        kinds = query.get("kind") or []
        if len(kinds) != 1 or not kinds[0].get("name"):
            raise invalid_argument("query must name exactly one kind")
        kind = kinds[0]["name"]
        filter_doc = query.get("filter")
        with self._lock:
            snapshot = list(self._partition(project_id, database_id).items())
        matches = [
            (key, stored.document)
            for key, stored in snapshot
            if key.kind == kind
            and key.namespace == namespace
            and (filter_doc is None or matches_filter(stored.document, key, filter_doc))
        ]
        matches.sort(key=lambda item: _key_order(item[0]))
        for order in reversed(query.get("order") or []):
            name = order["property"]["name"]
            descending = order.get("direction") == "DESCENDING"
            matches.sort(
                key=cmp_to_key(lambda a, b, name=name: _compare_property(a, b, name)),
                reverse=descending,
            )
        distinct_on = [item["property"]["name"] for item in query.get("distinctOn") or []]
        if distinct_on:
            matches = _distinct(matches, distinct_on)
        return matches

    def allocate_ids(self, keys: list[dict[str, Any]]) -> list[dict[str, Any]]:
        parsed = [self._parse_key(doc) for doc in keys]
        with self._lock:
            allocated = []
            for key in parsed:
                if not key.incomplete:
                    raise invalid_argument(f"key {key} is already complete")
                allocated.append(self._allocate(key).to_wire())
            return allocated

    def begin_transaction(self, options: Mapping[str, Any] | None = None) -> str:
        transaction_id = new_transaction_id()
        with self._lock:
            self._transactions[transaction_id] = _TransactionState(read_only="readOnly" in (options or {}))
        logger.debug("transaction started", extra={"ctx_transaction": transaction_id})
        return transaction_id

    def rollback(self, transaction: str) -> None:
        with self._lock:
            if self._transactions.pop(transaction, None) is None:
                raise invalid_argument("invalid or expired transaction")

    def _transaction(self, transaction: str) -> _TransactionState:
        state = self._transactions.get(transaction)
        if state is None:
            raise invalid_argument("invalid or expired transaction")
        return state

    def entity_count(self) -> int:
        with self._lock:
            return sum(len(partition) for partition in self._entities.values())


def _compare_property(a: tuple[Key, dict[str, Any]], b: tuple[Key, dict[str, Any]], name: str) -> int:
    left = _property(a[1], a[0], name) or NullValue()
    right = _property(b[1], b[0], name) or NullValue()
    return _compare(left, right)


def _distinct(matches: list[tuple[Key, dict[str, Any]]], names: list[str]) -> list[tuple[Key, dict[str, Any]]]:
    seen: set[tuple[Any, ...]] = set()
    unique = []
    for key, document in matches:
        signature = tuple(_comparable(_property(document, key, name) or NullValue()) for name in names)
        if signature in seen:
            continue
        seen.add(signature)
        unique.append((key, document))
    return unique


__all__ = ["EmulatorStore", "StoreError", "matches_filter"]
