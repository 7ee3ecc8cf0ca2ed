"""Cursor-driven result iterator over paged query responses."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Any, Callable

from kindstore.core.errors import CursorUnavailableError, Done
from kindstore.core.logging import get_logger
from kindstore.core.metrics import ITERATOR_FETCHES
from kindstore.datastore.keys import Key
from kindstore.datastore.query import Cursor, Query
from kindstore.datastore.records import decode_entity
from kindstore.models.dto import QueryResultBatch

logger = get_logger(__name__)

# only these batch states promise more results behind the end cursor
CONTINUE_STATES = frozenset({"NOT_FINISHED", "MORE_RESULTS_AFTER_CURSOR"})

BatchFetcher = Callable[[Query], QueryResultBatch]


@dataclass(slots=True)
class _Buffered:
    key: Key
    entity: dict[str, Any]
    cursor: Cursor


class Iterator:
    """Single-consumer pagination state machine.

    ``next()`` serves buffered results, fetching the next batch with the
    tracked cursor as start cursor when the buffer runs dry and the last
    batch promised more. A failed fetch is remembered and raised again on
    every later call.
    """

    def __init__(self, query: Query, fetch: BatchFetcher, entity_cls: type | None = None) -> None:
        self._query = query
        self._fetch_batch = fetch
        self._entity_cls = entity_cls
        self._buffer: deque[_Buffered] = deque()
        self._cursor = Cursor("")
        self._fetch_next = True
        self._error: Exception | None = None
        self.batches_fetched = 0

    def next(self) -> tuple[Key, Any]:
        """Return the next ``(key, entity)``; raise :class:`Done` when exhausted.

        For keys-only queries the entity is ``None``.
        """
        if not self._buffer:
            if self._error is not None:
                raise self._error
            if not self._fetch_next:
                raise Done()
            try:
                self._fetch()
            except Exception as exc:
                self._error = exc
                raise
            if not self._buffer:
                self._fetch_next = False
                raise Done()
        item = self._buffer.popleft()
        if item.cursor:
            self._cursor = item.cursor
        if self._query.is_keys_only:
            return item.key, None
        return item.key, decode_entity(item.entity, self._entity_cls)

    def cursor(self) -> Cursor:
        """Cursor just past the last consumed result (or the last batch)."""
        if not self._cursor:
            raise CursorUnavailableError()
        return self._cursor

    def _fetch(self) -> None:
        query = self._query.clone()
        if self._cursor:
            query.start(self._cursor)
        batch = self._fetch_batch(query)
        self.batches_fetched += 1
        ITERATOR_FETCHES.inc()
        results = [
            _Buffered(Key.from_wire(result.entity.get("key")), result.entity, Cursor(result.cursor or ""))
            for result in batch.entity_results
        ]
        self._buffer.extend(results)
        self._fetch_next = batch.more_results in CONTINUE_STATES
        if batch.end_cursor:
            self._cursor = Cursor(batch.end_cursor)
        logger.debug(
            "fetched query batch",
            extra={
                "ctx_kind": self._query.kind,
                "ctx_count": len(batch.entity_results),
                "ctx_more_results": batch.more_results,
            },
        )

    def __iter__(self) -> "Iterator":
        return self

    def __next__(self) -> tuple[Key, Any]:
        try:
            return self.next()
        except Done:
            raise StopIteration from None


__all__ = ["CONTINUE_STATES", "Iterator"]
