"""Result iterator tests driven by scripted query batches."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import pytest

from kindstore.core.errors import CursorUnavailableError, Done, TransportError
from kindstore.datastore.iterator import Iterator
from kindstore.datastore.query import Query
from kindstore.models.dto import QueryResultBatch


@dataclass
class Task:
    title: str = ""


def _entity(ident: int, title: str = "") -> dict[str, Any]:
    return {
        "key": {"path": [{"kind": "Task", "id": str(ident)}]},
        "properties": {"title": {"stringValue": title or f"task-{ident}"}},
    }


def _batch(idents: list[int], more: str, end_cursor: str | None = None) -> QueryResultBatch:
    return QueryResultBatch.model_validate(
        {
            "entityResults": [{"entity": _entity(ident), "cursor": f"c{ident}"} for ident in idents],
            "endCursor": end_cursor,
            "moreResults": more,
        }
    )


class FakeFetcher:
    def __init__(self, *outcomes: QueryResultBatch | Exception) -> None:
        self.outcomes = list(outcomes)
        self.queries: list[dict[str, Any]] = []

    def __call__(self, query: Query) -> QueryResultBatch:
        self.queries.append(query.to_wire())
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def test_follows_cursors_until_batches_stop_continuing() -> None:
    fetch = FakeFetcher(
        _batch([1, 2], "NOT_FINISHED", "end-1"),
        _batch([3, 4], "MORE_RESULTS_AFTER_CURSOR", "end-2"),
        _batch([5], "MORE_RESULTS_AFTER_LIMIT", "end-3"),
    )
    iterator = Iterator(Query("Task").limit(2), fetch, Task)

    items = [iterator.next() for _ in range(5)]

    assert [key.id for key, _ in items] == [1, 2, 3, 4, 5]
    assert items[0][1] == Task(title="task-1")
    assert iterator.batches_fetched == 3
    assert "startCursor" not in fetch.queries[0]
    assert fetch.queries[1]["startCursor"] == "c2"
    assert fetch.queries[2]["startCursor"] == "c4"
    assert all(query["limit"] == 2 for query in fetch.queries)
    with pytest.raises(Done):
        iterator.next()
    with pytest.raises(Done):
        iterator.next()
    assert iterator.batches_fetched == 3


def test_empty_continuing_batch_ends_iteration() -> None:
    fetch = FakeFetcher(_batch([], "NOT_FINISHED", "end"))
    iterator = Iterator(Query("Task"), fetch)
    with pytest.raises(Done):
        iterator.next()
    with pytest.raises(Done):
        iterator.next()
    assert iterator.batches_fetched == 1


def test_fetch_error_is_sticky() -> None:
    failure = TransportError("backend unavailable", status_code=503)
    fetch = FakeFetcher(_batch([1], "NOT_FINISHED", "end-1"), failure)
    iterator = Iterator(Query("Task"), fetch)

    key, entity = iterator.next()
    assert key.id == 1
    assert entity == {"title": "task-1"}
    for _ in range(2):
        with pytest.raises(TransportError) as excinfo:
            iterator.next()
        assert excinfo.value is failure
    assert iterator.batches_fetched == 1


def test_cursor_tracks_consumed_results() -> None:
    fetch = FakeFetcher(_batch([1, 2], "NO_MORE_RESULTS", "end-1"))
    iterator = Iterator(Query("Task"), fetch)
    with pytest.raises(CursorUnavailableError):
        iterator.cursor()

    iterator.next()
    assert iterator.cursor() == "c1"
    iterator.next()
    assert iterator.cursor() == "c2"


def test_batch_end_cursor_is_used_without_result_cursors() -> None:
    first = QueryResultBatch.model_validate(
        {"entityResults": [{"entity": _entity(9)}], "endCursor": "end-9", "moreResults": "NOT_FINISHED"}
    )
    fetch = FakeFetcher(first, _batch([], "NO_MORE_RESULTS"))
    iterator = Iterator(Query("Task"), fetch)
    iterator.next()
    assert iterator.cursor() == "end-9"
    with pytest.raises(Done):
        iterator.next()
    assert fetch.queries[1]["startCursor"] == "end-9"


def test_keys_only_yields_no_entities() -> None:
    fetch = FakeFetcher(_batch([7, 8], "NO_MORE_RESULTS"))
    iterator = Iterator(Query("Task").keys_only(), fetch, Task)
    assert [(key.id, entity) for key, entity in iterator] == [(7, None), (8, None)]


def test_python_iteration_protocol() -> None:
    fetch = FakeFetcher(_batch([1], "NOT_FINISHED", "e1"), _batch([2], "NO_MORE_RESULTS", "e2"))
    titles = [entity.title for _, entity in Iterator(Query("Task"), fetch, Task)]
    assert titles == ["task-1", "task-2"]
