"""HTTP transport tests with a fake requests session."""

from __future__ import annotations

from typing import Any

import pytest
import requests

from kindstore.core.config import Settings
from kindstore.core.errors import TransportError
from kindstore.transport.http import HTTPTransport, rpc_name

URL = "https://datastore.example.test/v1/projects/p:lookup"


class FakeResponse:
    def __init__(self, status_code: int, content: bytes) -> None:
        self.status_code = status_code
        self._content = content
        self.closed = False

    def iter_content(self, chunk_size: int = 1) -> Any:
        for start in range(0, len(self._content), chunk_size):
            yield self._content[start : start + chunk_size]

    def close(self) -> None:
        self.closed = True


class FakeSession:
    def __init__(self, *outcomes: FakeResponse | Exception) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"url": url, **kwargs})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self) -> None:
        self.closed = True


def _transport(session: FakeSession, **overrides: Any) -> tuple[HTTPTransport, list[float]]:
    sleeps: list[float] = []
    settings = Settings(project_id="p", max_retries=2, retry_backoff_seconds=0.1, **overrides)
    return HTTPTransport(settings, session=session, sleep=sleeps.append), sleeps  # type: ignore[arg-type]


def test_rpc_name() -> None:
    assert rpc_name(URL) == "lookup"
    assert rpc_name("https://host/v1/projects/p:runAggregationQuery") == "runAggregationQuery"


def test_success_sends_bearer_token_and_headers() -> None:
    session = FakeSession(FakeResponse(200, b'{"found": []}'))
    transport, sleeps = _transport(session)

    body = transport.perform_request(URL, b"{}", "tok", {"X-Goog-Request-Params": "database_id=d"})

    assert body == b'{"found": []}'
    call = session.calls[0]
    assert call["data"] == b"{}"
    assert call["headers"]["Authorization"] == "Bearer tok"
    assert call["headers"]["Content-Type"] == "application/json"
    assert call["headers"]["X-Goog-Request-Params"] == "database_id=d"
    assert call["timeout"] == 30
    assert sleeps == []


def test_server_errors_are_retried_with_backoff() -> None:
    session = FakeSession(
        FakeResponse(503, b"unavailable"),
        requests.ConnectionError("reset"),
        FakeResponse(200, b"{}"),
    )
    transport, sleeps = _transport(session)

    assert transport.perform_request(URL, b"{}", "tok") == b"{}"
    assert len(session.calls) == 3
    assert len(sleeps) == 2
    assert 0.075 <= sleeps[0] <= 0.125
    assert 0.15 <= sleeps[1] <= 0.25


def test_retries_are_bounded() -> None:
    session = FakeSession(*(FakeResponse(500, b"boom") for _ in range(3)))
    transport, _ = _transport(session)
    with pytest.raises(TransportError) as excinfo:
        transport.perform_request(URL, b"{}", "tok")
    assert excinfo.value.status_code == 500
    assert len(session.calls) == 3


def test_client_errors_fail_immediately() -> None:
    payload = b'{"error": {"code": 409, "status": "ABORTED", "message": "contention"}}'
    session = FakeSession(FakeResponse(409, payload))
    transport, sleeps = _transport(session)
    with pytest.raises(TransportError) as excinfo:
        transport.perform_request(URL, b"{}", "tok")
    assert excinfo.value.status_code == 409
    assert excinfo.value.aborted
    assert "contention" in str(excinfo.value)
    assert sleeps == []


def test_oversized_body_is_rejected() -> None:
    response = FakeResponse(200, b"x" * 200_000)
    transport, _ = _transport(FakeSession(response), max_body_bytes=100_000)
    with pytest.raises(TransportError, match="exceeds"):
        transport.perform_request(URL, b"{}", "tok")
    assert response.closed


def test_close_closes_session() -> None:
    session = FakeSession()
    transport, _ = _transport(session)
    transport.close()
    assert session.closed
