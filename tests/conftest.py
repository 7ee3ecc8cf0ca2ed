"""Test fixtures for kindstore."""

from __future__ import annotations

import os
import sys
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Mapping

import orjson
import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from kindstore.core.config import Settings, get_settings  # noqa: E402
from kindstore.core.errors import TransportError  # noqa: E402
from kindstore.datastore.client import Client  # noqa: E402
from kindstore.emulator.app import create_app  # noqa: E402
from kindstore.emulator.store import EmulatorStore  # noqa: E402
from kindstore.security.credentials import StaticTokenSource  # noqa: E402

PROJECT = "test-project"


@pytest.fixture(autouse=True)
def reset_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Reset cached settings and environment between tests."""
    for name in list(os.environ):
        if name.startswith("KINDSTORE_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("DATASTORE_EMULATOR_HOST", raising=False)
    monkeypatch.delenv("GOOGLE_APPLICATION_CREDENTIALS", raising=False)
    monkeypatch.setenv("KINDSTORE_CONFIG", str(tmp_path / "absent.yaml"))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@dataclass
class RecordedRequest:
    url: str
    body: dict[str, Any]
    token: str
    headers: dict[str, str]

    @property
    def method(self) -> str:
        return self.url.rsplit(":", 1)[-1]


@dataclass
class ScriptedTransport:
    """Replays queued responses in order and records every request."""

    responses: deque = field(default_factory=deque)
    requests: list[RecordedRequest] = field(default_factory=list)

    def queue(self, *payloads: Mapping[str, Any] | Exception) -> "ScriptedTransport":
        self.responses.extend(payloads)
        return self

    def perform_request(
        self,
        url: str,
        body: bytes,
        token: str,
        headers: Mapping[str, str] | None = None,
    ) -> bytes:
        self.requests.append(RecordedRequest(url, orjson.loads(body), token, dict(headers or {})))
        if not self.responses:
            raise AssertionError(f"unexpected request to {url}")
        item = self.responses.popleft()
        if isinstance(item, Exception):
            raise item
        return orjson.dumps(item)


class EmulatorTransport:
    """Transport that sends requests to an in-process emulator app."""

    def __init__(self, test_client: TestClient) -> None:
        self.test_client = test_client
        self.calls: list[str] = []

    def perform_request(
        self,
        url: str,
        body: bytes,
        token: str,
        headers: Mapping[str, str] | None = None,
    ) -> bytes:
        self.calls.append(url.rsplit(":", 1)[-1])
        request_headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        request_headers.update(headers or {})
        response = self.test_client.post(url, content=body, headers=request_headers)
        if response.status_code != 200:
            raise TransportError(
                f"request failed with status {response.status_code}: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        return response.content


@pytest.fixture
def settings() -> Settings:
    return Settings(project_id=PROJECT, api_url="http://testserver/v1", retry_backoff_seconds=0.0)


@pytest.fixture
def scripted() -> ScriptedTransport:
    return ScriptedTransport()


@pytest.fixture
def scripted_client(settings: Settings, scripted: ScriptedTransport) -> Client:
    return Client(settings=settings, transport=scripted, token_source=StaticTokenSource("test-token"))


@pytest.fixture
def store() -> EmulatorStore:
    return EmulatorStore(batch_size=3)


@pytest.fixture
def emulator(store: EmulatorStore) -> Iterator[TestClient]:
    with TestClient(create_app(store)) as test_client:
        yield test_client


@pytest.fixture
def emulator_transport(emulator: TestClient) -> EmulatorTransport:
    return EmulatorTransport(emulator)


@pytest.fixture
def client(settings: Settings, emulator_transport: EmulatorTransport) -> Client:
    return Client(settings=settings, transport=emulator_transport, token_source=StaticTokenSource("test-token"))
