"""Client orchestrating lookups, commits and queries over a transport."""

from __future__ import annotations

import time
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Sequence, TypeVar
from urllib.parse import quote, urlencode

import orjson
from pydantic import BaseModel, ValidationError

from kindstore.core.config import Settings, get_settings
from kindstore.core.errors import (
    DecodeError,
    EncodeError,
    InvalidEntityTypeError,
    InvalidKeyError,
    KeyDecodeError,
    KindstoreError,
    MultiError,
    NoSuchEntityError,
    QueryBuildError,
    TransactionAbortedError,
    TransportError,
)
from kindstore.core.logging import get_logger
from kindstore.core.metrics import TRANSACTION_ATTEMPTS
from kindstore.datastore.iterator import Iterator
from kindstore.datastore.keys import Key, keys_to_wire
from kindstore.datastore.mutation import Mutation, build_mutations, commit_body
from kindstore.datastore.query import Query
from kindstore.datastore.records import decode_entity, encode_entity
from kindstore.datastore.transaction import Transaction
from kindstore.models.dto import (
    AllocateIdsResponse,
    BeginTransactionResponse,
    CommitResponse,
    EntityResult,
    LookupResponse,
    QueryResultBatch,
    RunAggregationQueryResponse,
    RunQueryResponse,
)
from kindstore.security.credentials import StaticTokenSource, TokenSource, default_token_source, metadata_project_id
from kindstore.transport.http import HTTPTransport, Transport
from kindstore.utils.time import Timestamp, format_rfc3339

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
ResultT = TypeVar("ResultT")

COUNT_ALIAS = "total"
# backend limit on mutations in a single commit
MAX_MUTATIONS_PER_COMMIT = 500
# deferred lookups are re-requested at most this many times
MAX_LOOKUP_ROUNDS = 10
EMULATOR_TOKEN = "owner"


class Client:
    """Entry point for reading and writing entities of one project/database."""

    def __init__(
        self,
        project_id: str | None = None,
        database_id: str | None = None,
        *,
        settings: Settings | None = None,
        transport: Transport | None = None,
        token_source: TokenSource | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.database_id = self.settings.database_id if database_id is None else database_id
        self.base_url = self.settings.endpoint
        self.max_depth = self.settings.max_depth
        self.transport: Transport = transport or HTTPTransport(self.settings)
        if token_source is None:
            if self.settings.emulator_host:
                token_source = StaticTokenSource(EMULATOR_TOKEN)
            else:
                token_source = default_token_source(self.settings)
        self.token_source = token_source
        self.project_id = project_id or self.settings.project_id or self._discover_project_id()
        logger.debug(
            "client created",
            extra={"ctx_project": self.project_id, "ctx_database": self.database_id, "ctx_url": self.base_url},
        )

    def _discover_project_id(self) -> str:
        logger.info("project ID not provided, fetching from metadata server")
        return metadata_project_id(self.settings)

    def __enter__(self) -> "Client":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        close = getattr(self.transport, "close", None)
        if callable(close):
            close()

    # ------------------------------------------------------------------
    # Request plumbing

    def _post(self, method: str, body: dict[str, Any], model: type[ModelT]) -> ModelT:
        if self.database_id:
            body["databaseId"] = self.database_id
        url = f"{self.base_url}/projects/{quote(self.project_id, safe='')}:{method}"
        headers: dict[str, str] = {}
        if self.database_id:
            headers["X-Goog-Request-Params"] = urlencode(
                {"project_id": self.project_id, "database_id": self.database_id}
            )
        token = self.token_source.token()
        raw = self.transport.perform_request(url, orjson.dumps(body), token, headers)
        try:
            return model.model_validate_json(raw or b"{}")
        except ValidationError as exc:
            raise DecodeError(f"malformed {method} response: {exc}") from exc

    def _commit(self, mutations: list[dict[str, Any]]) -> CommitResponse:
        return self._post("commit", commit_body(mutations), CommitResponse)

    @staticmethod
    def _completed_keys(keys: Sequence[Key], response: CommitResponse) -> list[Key]:
        """Keys assigned by the backend replace their incomplete originals."""
        completed = []
        for index, key in enumerate(keys):
            result = response.mutation_results[index] if index < len(response.mutation_results) else None
            if result is not None and result.key:
                completed.append(Key.from_wire(result.key))
            else:
                completed.append(key)
        return completed

    def _lookup(self, keys: Sequence[Key], read_options: dict[str, Any] | None) -> list[EntityResult]:
        pending = keys_to_wire(keys)
        found: list[EntityResult] = []
        for _ in range(MAX_LOOKUP_ROUNDS):
            body: dict[str, Any] = {"keys": pending}
            if read_options:
                body["readOptions"] = read_options
            response = self._post("lookup", body, LookupResponse)
            found.extend(response.found)
            if not response.deferred:
                return found
            logger.debug("lookup deferred keys", extra={"ctx_count": len(response.deferred)})
            pending = response.deferred
        raise TransportError(f"lookup still deferred {len(pending)} keys after {MAX_LOOKUP_ROUNDS} rounds")

    @staticmethod
    def _check_key(key: Key | None) -> Key:
        if key is None:
            raise InvalidKeyError("key cannot be None")
        if key.incomplete:
            raise InvalidKeyError(f"key {key} is incomplete")
        return key

    # ------------------------------------------------------------------
    # Single-entity operations

    def get(self, key: Key | None, cls: type | None = None) -> Any:
        """Load one entity into ``cls`` (a dataclass) or a plain dict when ``cls`` is None."""
        return self._get_one(key, cls)

    def _get_one(self, key: Key | None, cls: type | None, read_options: dict[str, Any] | None = None) -> Any:
        key = self._check_key(key)
        logger.debug("get entity", extra={"ctx_kind": key.kind, "ctx_key": str(key)})
        found = self._lookup([key], read_options)
        if not found:
            raise NoSuchEntityError(key)
        return decode_entity(found[0].entity, cls)

    def put(self, key: Key | None, entity: Any) -> Key:
        """Upsert one entity; returns the key, completed when it was incomplete."""
        if key is None:
            raise InvalidKeyError("key cannot be None")
        if entity is None:
            raise InvalidEntityTypeError("entity cannot be None")
        document = encode_entity(key, entity, max_depth=self.max_depth)
        logger.debug("put entity", extra={"ctx_kind": key.kind, "ctx_key": str(key)})
        response = self._commit([{"upsert": document}])
        return self._completed_keys([key], response)[0]

    def delete(self, key: Key | None) -> None:
        key = self._check_key(key)
        logger.debug("delete entity", extra={"ctx_kind": key.kind, "ctx_key": str(key)})
        self._commit([{"delete": key.to_wire()}])

    # ------------------------------------------------------------------
    # Batch operations

    def get_multi(self, keys: Sequence[Key | None], cls: type | None = None) -> list[Any]:
        """Load many entities in one lookup.

        Results are positional. If any index fails, :class:`MultiError` is
        raised with ``NoSuchEntityError`` for missing keys, the decode error for
        undecodable ones and ``None`` for successes; ``MultiError.results``
        still holds every value that did decode.
        """
        return self._get_many(keys, cls)

    def _get_many(
        self,
        keys: Sequence[Key | None],
        cls: type | None,
        read_options: dict[str, Any] | None = None,
    ) -> list[Any]:
        if not keys:
            raise InvalidKeyError("keys cannot be empty")
        errors: list[BaseException | None] = [None] * len(keys)
        for index, key in enumerate(keys):
            try:
                self._check_key(key)
            except InvalidKeyError as exc:
                errors[index] = InvalidKeyError(f"key at index {index}: {exc}")
        if any(errors):
            raise MultiError(errors)

        positions: dict[str, list[int]] = defaultdict(list)
        for index, key in enumerate(keys):
            positions[str(key)].append(index)
        logger.debug("get entities", extra={"ctx_count": len(keys)})
        found = self._lookup(keys, read_options)  # type: ignore[arg-type]

        results: list[Any] = [None] * len(keys)
        errors = [NoSuchEntityError(key) for key in keys]
        for result in found:
            try:
                key = Key.from_wire(result.entity.get("key"))
            except KeyDecodeError as exc:
                # unmatched, so its index stays NoSuchEntityError
                logger.debug("skipping lookup result with malformed key", extra={"ctx_error": str(exc)})
                continue
            for index in positions.get(str(key), []):
                try:
                    results[index] = decode_entity(result.entity, cls)
                    errors[index] = None
                except DecodeError as exc:
                    errors[index] = exc
        if any(error is not None for error in errors):
            raise MultiError(errors, results)
        return results

    def put_multi(self, keys: Sequence[Key | None], entities: Sequence[Any]) -> list[Key]:
        """Upsert many entities in one commit; nothing is sent if any item is invalid."""
        if len(keys) != len(entities):
            raise InvalidEntityTypeError(f"keys and entities length mismatch: {len(keys)} != {len(entities)}")
        if not keys:
            return []
        errors: list[BaseException | None] = [None] * len(keys)
        mutations: list[dict[str, Any]] = []
        for index, (key, entity) in enumerate(zip(keys, entities)):
            if key is None:
                errors[index] = InvalidKeyError(f"key at index {index} is None")
                continue
            try:
                mutations.append({"upsert": encode_entity(key, entity, max_depth=self.max_depth)})
            except (EncodeError, InvalidEntityTypeError) as exc:
                errors[index] = exc
        if any(error is not None for error in errors):
            raise MultiError(errors)
        logger.debug("put entities", extra={"ctx_count": len(keys)})
        response = self._commit(mutations)
        return self._completed_keys(keys, response)  # type: ignore[arg-type]

    def delete_multi(self, keys: Sequence[Key | None]) -> None:
        if not keys:
            return
        errors: list[BaseException | None] = [None] * len(keys)
        for index, key in enumerate(keys):
            try:
                self._check_key(key)
            except InvalidKeyError as exc:
                errors[index] = exc
        if any(error is not None for error in errors):
            raise MultiError(errors)
        logger.debug("delete entities", extra={"ctx_count": len(keys)})
        self._commit([{"delete": key.to_wire()} for key in keys])  # type: ignore[union-attr]

    def mutate(self, *mutations: Mutation) -> list[Key]:
        """Commit mixed mutations atomically; returns one key per mutation."""
        if not mutations:
            return []
        rendered = build_mutations(mutations, self.max_depth)
        logger.debug("mutate", extra={"ctx_count": len(rendered)})
        response = self._commit(rendered)
        return self._completed_keys([mutation.key for mutation in mutations], response)  # type: ignore[misc]

    # ------------------------------------------------------------------
    # Queries

    def _query_body(self, query: Query) -> dict[str, Any]:
        body: dict[str, Any] = {"query": query.to_wire()}
        partition = query.partition()
        if partition:
            body["partitionId"] = partition
        return body

    def _run_query_batch(self, query: Query) -> QueryResultBatch:
        return self._post("runQuery", self._query_body(query), RunQueryResponse).batch

    def run(self, query: Query, cls: type | None = None) -> Iterator:
        """Lazily iterate ``(key, entity)`` pairs, fetching batches on demand."""
        logger.debug("run query", extra={"ctx_kind": query.kind})
        return Iterator(query, self._run_query_batch, cls)

    def get_all(self, query: Query, cls: type | None = None) -> tuple[list[Key], list[Any]]:
        """Drain a query; entities are ``None`` for keys-only queries."""
        keys: list[Key] = []
        entities: list[Any] = []
        for key, entity in self.run(query, cls):
            keys.append(key)
            entities.append(entity)
        return keys, entities

    def all_keys(self, query: Query) -> list[Key]:
        if not query.is_keys_only:
            raise QueryBuildError("all_keys requires a keys-only query")
        return [key for key, _ in self.run(query)]

    def count(self, query: Query) -> int:
        """Server-side count aggregation over the query."""
        body: dict[str, Any] = {
            "aggregationQuery": {
                "aggregations": [{"alias": COUNT_ALIAS, "count": {}}],
                "nestedQuery": query.to_wire(),
            }
        }
        partition = query.partition()
        if partition:
            body["partitionId"] = partition
        response = self._post("runAggregationQuery", body, RunAggregationQueryResponse)
        if not response.batch.aggregation_results:
            return 0
        total = response.batch.aggregation_results[0].aggregate_properties.get(COUNT_ALIAS)
        if not total or "integerValue" not in total:
            raise DecodeError(f"count response has no {COUNT_ALIAS!r} integer")
        try:
            return int(total["integerValue"])
        except (TypeError, ValueError) as exc:
            raise DecodeError(f"count response has a non-integer total: {total['integerValue']!r}") from exc

    # ------------------------------------------------------------------
    # Keys and bulk helpers

    def allocate_ids(self, keys: Sequence[Key | None]) -> list[Key]:
        """Complete the incomplete keys; complete keys are returned unchanged."""
        if not keys:
            return []
        for index, key in enumerate(keys):
            if key is None:
                raise InvalidKeyError(f"key at index {index} is None")
        positions = [index for index, key in enumerate(keys) if key.incomplete]  # type: ignore[union-attr]
        if not positions:
            return list(keys)  # type: ignore[arg-type]
        response = self._post(
            "allocateIds",
            {"keys": [keys[index].to_wire() for index in positions]},  # type: ignore[union-attr]
            AllocateIdsResponse,
        )
        if len(response.keys) != len(positions):
            raise DecodeError(f"allocateIds returned {len(response.keys)} keys for {len(positions)} requested")
        allocated = list(keys)
        for index, doc in zip(positions, response.keys):
            allocated[index] = Key.from_wire(doc)
        return allocated  # type: ignore[return-value]

    def delete_all_by_kind(self, kind: str, namespace: str = "") -> int:
        """Delete every entity of a kind; returns how many were deleted."""
        keys = self.all_keys(Query(kind).namespace(namespace).keys_only())
        for start in range(0, len(keys), MAX_MUTATIONS_PER_COMMIT):
            self.delete_multi(keys[start : start + MAX_MUTATIONS_PER_COMMIT])
        logger.info("deleted all entities of kind", extra={"ctx_kind": kind, "ctx_count": len(keys)})
        return len(keys)

    # ------------------------------------------------------------------
    # Transactions

    def new_transaction(self, read_time: datetime | Timestamp | None = None) -> Transaction:
        """Begin a transaction; ``read_time`` makes it read-only at that instant."""
        if read_time is not None:
            options: dict[str, Any] = {"readOnly": {"readTime": format_rfc3339(read_time)}}
        else:
            options = {"readWrite": {}}
        response = self._post("beginTransaction", {"transactionOptions": options}, BeginTransactionResponse)
        return Transaction(self, response.transaction)

    def run_in_transaction(
        self,
        fn: Callable[[Transaction], ResultT],
        *,
        attempts: int | None = None,
        read_time: datetime | Timestamp | None = None,
    ) -> ResultT:
        """Run ``fn`` in a fresh transaction and commit, retrying aborted commits.

        Errors raised by ``fn`` roll the transaction back and propagate
        without a retry.
        """
        max_attempts = attempts or self.settings.transaction_attempts
        last_error: TransportError | None = None
        for attempt in range(max_attempts):
            tx = self.new_transaction(read_time)
            try:
                result = fn(tx)
            except Exception:
                self._rollback_quietly(tx)
                raise
            try:
                tx.commit()
            except TransportError as exc:
                if not exc.aborted:
                    TRANSACTION_ATTEMPTS.labels(outcome="failed").inc()
                    raise
                TRANSACTION_ATTEMPTS.labels(outcome="aborted").inc()
                last_error = exc
                logger.warning(
                    "transaction aborted, will retry",
                    extra={"ctx_attempt": attempt + 1, "ctx_max_attempts": max_attempts},
                )
                if attempt < max_attempts - 1:
                    time.sleep(self.settings.retry_backoff_seconds * (2**attempt))
                continue
            TRANSACTION_ATTEMPTS.labels(outcome="committed").inc()
            logger.debug("transaction committed", extra={"ctx_attempt": attempt + 1})
            return result
        raise TransactionAbortedError(f"transaction failed after {max_attempts} attempts") from last_error

    @staticmethod
    def _rollback_quietly(tx: Transaction) -> None:
        try:
            tx.rollback()
        except KindstoreError as exc:
            logger.warning("rollback after failed transaction function failed: %s", exc)


__all__ = ["Client", "COUNT_ALIAS", "MAX_MUTATIONS_PER_COMMIT"]
