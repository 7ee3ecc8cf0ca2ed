"""Access-token sources: static, application default credentials, metadata server."""

from __future__ import annotations

import os
import threading
import time
from pathlib import Path
from typing import Any, Protocol, Sequence

import orjson
import requests

from kindstore.core.config import Settings, get_settings
from kindstore.core.errors import AuthError
from kindstore.core.logging import get_logger

logger = get_logger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"
METADATA_FLAVOR = "Google"
ADC_ENV = "GOOGLE_APPLICATION_CREDENTIALS"
ADC_DEFAULT_PATH = Path("~/.config/gcloud/application_default_credentials.json")
# refresh a little before the token actually expires
EXPIRY_MARGIN_SECONDS = 60.0
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600.0


class TokenSource(Protocol):
    def token(self) -> str:
        ...


class StaticTokenSource:
    """Fixed token; used for emulators and tests."""

    def __init__(self, access_token: str) -> None:
        self._token = access_token

    def token(self) -> str:
        return self._token


class _CachingTokenSource:
    """Caches the fetched token until shortly before it expires."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        self._lock = threading.Lock()
        self._token = ""
        self._expires_at = 0.0

    def token(self) -> str:
        with self._lock:
            if self._token and time.monotonic() < self._expires_at:
                return self._token
            access_token, expires_in = self._fetch()
            self._token = access_token
            self._expires_at = time.monotonic() + max(expires_in - EXPIRY_MARGIN_SECONDS, 0.0)
            return access_token

    def _fetch(self) -> tuple[str, float]:
        raise NotImplementedError


def _parse_token_response(response: requests.Response, source: str) -> tuple[str, float]:
    try:
        payload: dict[str, Any] = orjson.loads(response.content)
    except orjson.JSONDecodeError as exc:
        raise AuthError(f"failed to parse {source} token response: {exc}") from exc
    access_token = payload.get("access_token")
    if not access_token:
        raise AuthError(f"{source} token response has no access_token")
    return access_token, float(payload.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS)


class ADCTokenSource(_CachingTokenSource):
    """Exchanges the refresh token of ``authorized_user`` application default credentials."""

    def __init__(self, credentials_path: Path | None = None, timeout: float = 30.0) -> None:
        super().__init__(timeout)
        self.credentials_path = credentials_path

    def _resolve_path(self) -> Path:
        if self.credentials_path is not None:
            return self.credentials_path
        env_path = os.environ.get(ADC_ENV)
        if env_path:
            return Path(env_path).expanduser()
        return ADC_DEFAULT_PATH.expanduser()

    def _fetch(self) -> tuple[str, float]:
        path = self._resolve_path()
        try:
            creds = orjson.loads(path.read_bytes())
        except OSError as exc:
            raise AuthError(f"failed to read credentials file {path}: {exc}") from exc
        except orjson.JSONDecodeError as exc:
            raise AuthError(f"failed to parse credentials file {path}: {exc}") from exc
        if not isinstance(creds, dict):
            raise AuthError(f"credentials file {path} is not a JSON object")
        if creds.get("type") != "authorized_user":
            raise AuthError(f"unsupported credential type: {creds.get('type')}")
        form = {
            "client_id": creds.get("client_id", ""),
            "client_secret": creds.get("client_secret", ""),
            "refresh_token": creds.get("refresh_token", ""),
            "grant_type": "refresh_token",
        }
        try:
            response = requests.post(TOKEN_URL, data=form, timeout=self.timeout)
        except requests.RequestException as exc:
            raise AuthError(f"token exchange failed: {exc}") from exc
        if response.status_code != 200:
            logger.error(
                "OAuth token exchange failed",
                extra={"ctx_status": response.status_code, "ctx_response": response.text[:512]},
            )
            raise AuthError(f"token exchange returned {response.status_code}")
        return _parse_token_response(response, "OAuth")


class MetadataTokenSource(_CachingTokenSource):
    """Token of the default service account from the compute metadata server."""

    def __init__(self, metadata_url: str, timeout: float = 30.0) -> None:
        super().__init__(timeout)
        self.metadata_url = metadata_url.rstrip("/")

    def _fetch(self) -> tuple[str, float]:
        url = f"{self.metadata_url}/instance/service-accounts/default/token"
        try:
            response = requests.get(url, headers={"Metadata-Flavor": METADATA_FLAVOR}, timeout=self.timeout)
        except requests.RequestException as exc:
            raise AuthError(f"token request failed: {exc}") from exc
        if response.status_code != 200:
            raise AuthError(f"metadata server returned {response.status_code}")
        return _parse_token_response(response, "metadata")


class ChainTokenSource:
    """First source that yields a token wins."""

    def __init__(self, sources: Sequence[TokenSource]) -> None:
        if not sources:
            raise ValueError("at least one token source is required")
        self.sources = list(sources)

    def token(self) -> str:
        last_error: AuthError | None = None
        for source in self.sources:
            try:
                return source.token()
            except AuthError as exc:
                logger.debug("token source %s failed: %s", type(source).__name__, exc)
                last_error = exc
        assert last_error is not None
        raise last_error


def default_token_source(settings: Settings | None = None) -> TokenSource:
    """ADC first (unless skipped), then the metadata server."""
    settings = settings or get_settings()
    metadata = MetadataTokenSource(settings.metadata_url, timeout=settings.request_timeout_seconds)
    if settings.skip_adc:
        return metadata
    adc = ADCTokenSource(settings.credentials_path, timeout=settings.request_timeout_seconds)
    return ChainTokenSource([adc, metadata])


def metadata_project_id(settings: Settings | None = None) -> str:
    """Project ID of the environment, read from the metadata server."""
    settings = settings or get_settings()
    url = f"{settings.metadata_url}/project/project-id"
    try:
        response = requests.get(
            url,
            headers={"Metadata-Flavor": METADATA_FLAVOR},
            timeout=settings.request_timeout_seconds,
        )
    except requests.RequestException as exc:
        raise AuthError(f"metadata request failed: {exc}") from exc
    if response.status_code != 200:
        raise AuthError(f"metadata server returned {response.status_code}")
    project_id = response.text.strip()
    if not project_id:
        raise AuthError("metadata server returned an empty project ID")
    return project_id


__all__ = [
    "ADCTokenSource",
    "ChainTokenSource",
    "MetadataTokenSource",
    "StaticTokenSource",
    "TokenSource",
    "default_token_source",
    "metadata_project_id",
]
