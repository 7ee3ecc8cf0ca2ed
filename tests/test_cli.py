"""CLI tests against the emulator-backed client."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

import pytest
from typer.testing import CliRunner

from kindstore.cli import main as cli
from kindstore.core.errors import TransportError
from kindstore.datastore.client import Client
from kindstore.datastore.keys import Key

runner = CliRunner()


@dataclass
class Task:
    title: str = ""
    priority: int = 0
    done: bool = False


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep log lines out of the JSON output and restore root handlers afterwards."""
    monkeypatch.setenv("KINDSTORE_LOG_LEVEL", "WARNING")
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def seeded(client: Client, monkeypatch: pytest.MonkeyPatch) -> Client:
    client.put(Key.name_key("Task", "write"), Task("Write docs", 2))
    client.put(Key.name_key("Task", "ship"), Task("Ship it", 5, done=True))
    client.put(Key.id_key("Task", 7), Task("Triage", 3))
    monkeypatch.setattr(cli, "_client", lambda project, database, emulator_host: client)
    return client


def test_get_prints_entity(seeded: Client) -> None:
    result = runner.invoke(cli.app, ["get", "Task", "write"])
    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["key"] == '/Task,"write"'
    assert payload["properties"] == {"title": "Write docs", "priority": 2, "done": False}


def test_get_numeric_identifier_is_an_id(seeded: Client) -> None:
    result = runner.invoke(cli.app, ["get", "Task", "7"])
    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["properties"]["title"] == "Triage"


def test_get_missing_entity_fails(seeded: Client) -> None:
    result = runner.invoke(cli.app, ["get", "Task", "ghost"])
    assert result.exit_code == 1
    assert "Request failed" in result.output


def test_query_with_filters_and_order(seeded: Client) -> None:
    result = runner.invoke(cli.app, ["query", "Task", "-f", "priority >= 3", "-o", "-priority"])
    assert result.exit_code == 0, result.output
    rows = json.loads(result.stdout)
    assert [row["properties"]["title"] for row in rows] == ["Ship it", "Triage"]


def test_query_keys_only(seeded: Client) -> None:
    result = runner.invoke(cli.app, ["query", "Task", "--keys-only", "-f", "done = true"])
    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout) == ['/Task,"ship"']


def test_query_rejects_malformed_filter(seeded: Client) -> None:
    result = runner.invoke(cli.app, ["query", "Task", "-f", "priority"])
    assert result.exit_code == 2


def test_count(seeded: Client) -> None:
    result = runner.invoke(cli.app, ["count", "Task", "-f", "done = false"])
    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout) == {"kind": "Task", "count": 2}


def test_delete_one_and_all(seeded: Client) -> None:
    result = runner.invoke(cli.app, ["delete", "Task", "write"])
    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["deleted"] == 1

    result = runner.invoke(cli.app, ["delete", "Task", "--all"])
    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["deleted"] == 2


def test_delete_requires_identifier_or_all(seeded: Client) -> None:
    result = runner.invoke(cli.app, ["delete", "Task"])
    assert result.exit_code == 2


def test_key_encode_decode_round_trip() -> None:
    encoded = runner.invoke(cli.app, ["key", "encode", "Task", "42", "--namespace", "ops"])
    assert encoded.exit_code == 0, encoded.output
    token = encoded.stdout.strip()
    assert Key.id_key("Task", 42, namespace="ops").encode() == token

    decoded = runner.invoke(cli.app, ["key", "decode", token])
    assert decoded.exit_code == 0, decoded.output
    assert json.loads(decoded.stdout)["key"] == "[ops]/Task,42"


def test_key_decode_rejects_garbage() -> None:
    result = runner.invoke(cli.app, ["key", "decode", "bm90LWpzb24"])
    assert result.exit_code == 1


def test_transport_failures_are_reported(monkeypatch: pytest.MonkeyPatch) -> None:
    class Failing:
        def __enter__(self) -> "Failing":
            return self

        def __exit__(self, *exc_info: object) -> None:
            return None

        def count(self, query: object) -> int:
            raise TransportError("count failed with status 503", status_code=503)

    monkeypatch.setattr(cli, "_client", lambda project, database, emulator_host: Failing())
    result = runner.invoke(cli.app, ["count", "Task"])
    assert result.exit_code == 1
    assert "status 503" in result.output
