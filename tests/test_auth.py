"""Token source tests with the HTTP layer monkeypatched."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
import requests

from kindstore.core.config import Settings
from kindstore.core.errors import AuthError
from kindstore.datastore.client import Client
from kindstore.security import credentials
from kindstore.security.credentials import (
    ADCTokenSource,
    ChainTokenSource,
    MetadataTokenSource,
    StaticTokenSource,
    default_token_source,
    metadata_project_id,
)


class FakeHTTPResponse:
    def __init__(self, status_code: int, payload: Any) -> None:
        self.status_code = status_code
        self.text = payload if isinstance(payload, str) else json.dumps(payload)
        self.content = self.text.encode("utf-8")


def _write_adc(tmp_path: Path, **overrides: Any) -> Path:
    path = tmp_path / "adc.json"
    creds = {
        "type": "authorized_user",
        "client_id": "cid",
        "client_secret": "secret",
        "refresh_token": "refresh",
        **overrides,
    }
    path.write_text(json.dumps(creds))
    return path


def test_adc_exchanges_refresh_token_and_caches(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    posts: list[dict[str, Any]] = []

    def fake_post(url: str, data: dict[str, str], timeout: float) -> FakeHTTPResponse:
        posts.append({"url": url, "data": data})
        return FakeHTTPResponse(200, {"access_token": "ya29.token", "expires_in": 3600})

    monkeypatch.setattr(credentials.requests, "post", fake_post)
    source = ADCTokenSource(_write_adc(tmp_path))

    assert source.token() == "ya29.token"
    assert source.token() == "ya29.token"
    assert len(posts) == 1
    assert posts[0]["url"] == credentials.TOKEN_URL
    assert posts[0]["data"]["grant_type"] == "refresh_token"
    assert posts[0]["data"]["refresh_token"] == "refresh"


def test_adc_refreshes_expired_token(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    tokens = iter(["first", "second"])
    monkeypatch.setattr(
        credentials.requests,
        "post",
        lambda url, data, timeout: FakeHTTPResponse(200, {"access_token": next(tokens), "expires_in": 30}),
    )
    source = ADCTokenSource(_write_adc(tmp_path))
    # lifetime below the refresh margin means every call refreshes
    assert source.token() == "first"
    assert source.token() == "second"


def test_adc_path_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(credentials.ADC_ENV, str(_write_adc(tmp_path)))
    monkeypatch.setattr(
        credentials.requests,
        "post",
        lambda url, data, timeout: FakeHTTPResponse(200, {"access_token": "env-token"}),
    )
    assert ADCTokenSource().token() == "env-token"


def test_adc_rejects_service_account_files(tmp_path: Path) -> None:
    with pytest.raises(AuthError, match="unsupported credential type"):
        ADCTokenSource(_write_adc(tmp_path, type="service_account")).token()


def test_adc_missing_file(tmp_path: Path) -> None:
    with pytest.raises(AuthError, match="failed to read"):
        ADCTokenSource(tmp_path / "absent.json").token()


def test_adc_exchange_failure(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        credentials.requests,
        "post",
        lambda url, data, timeout: FakeHTTPResponse(400, {"error": "invalid_grant"}),
    )
    with pytest.raises(AuthError, match="400"):
        ADCTokenSource(_write_adc(tmp_path)).token()


def test_metadata_token_sends_flavor_header(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: dict[str, Any] = {}

    def fake_get(url: str, headers: dict[str, str], timeout: float) -> FakeHTTPResponse:
        seen.update(url=url, headers=headers)
        return FakeHTTPResponse(200, {"access_token": "meta-token", "expires_in": 1800})

    monkeypatch.setattr(credentials.requests, "get", fake_get)
    source = MetadataTokenSource("http://metadata.test/computeMetadata/v1/")

    assert source.token() == "meta-token"
    assert seen["url"] == "http://metadata.test/computeMetadata/v1/instance/service-accounts/default/token"
    assert seen["headers"] == {"Metadata-Flavor": "Google"}


def test_metadata_unreachable(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_get(url: str, headers: dict[str, str], timeout: float) -> FakeHTTPResponse:
        raise requests.ConnectionError("no route to host")

    monkeypatch.setattr(credentials.requests, "get", fake_get)
    with pytest.raises(AuthError, match="no route to host"):
        MetadataTokenSource("http://metadata.test").token()


def test_chain_falls_through_to_next_source(tmp_path: Path) -> None:
    chain = ChainTokenSource([ADCTokenSource(tmp_path / "absent.json"), StaticTokenSource("fallback")])
    assert chain.token() == "fallback"


def test_chain_raises_last_error(tmp_path: Path) -> None:
    chain = ChainTokenSource([ADCTokenSource(tmp_path / "a.json"), ADCTokenSource(tmp_path / "b.json")])
    with pytest.raises(AuthError, match="b.json"):
        chain.token()


def test_default_token_source_respects_skip_adc() -> None:
    assert isinstance(default_token_source(Settings(skip_adc=True)), MetadataTokenSource)
    assert isinstance(default_token_source(Settings()), ChainTokenSource)


def test_project_id_from_metadata(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        credentials.requests,
        "get",
        lambda url, headers, timeout: FakeHTTPResponse(200, "my-project\n"),
    )
    assert metadata_project_id(Settings()) == "my-project"


def test_client_discovers_project_id(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        credentials.requests,
        "get",
        lambda url, headers, timeout: FakeHTTPResponse(200, "discovered"),
    )
    client = Client(settings=Settings(), token_source=StaticTokenSource("t"))
    assert client.project_id == "discovered"


def test_emulator_host_uses_static_token() -> None:
    client = Client(settings=Settings(project_id="p", emulator_host="localhost:8081"))
    assert client.base_url == "http://localhost:8081/v1"
    assert client.token_source.token() == "owner"
