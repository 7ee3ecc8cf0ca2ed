"""HTTP transport for the Datastore REST API."""

from __future__ import annotations

import random
import time
from typing import Callable, Mapping, Protocol

import requests

from kindstore.core.config import Settings, get_settings
from kindstore.core.errors import TransportError
from kindstore.core.logging import get_logger
from kindstore.core.metrics import REQUEST_COUNT, REQUEST_LATENCY, RETRY_COUNT

logger = get_logger(__name__)

MAX_BACKOFF_SECONDS = 2.0
JITTER_FRACTION = 0.25
_ERROR_BODY_LIMIT = 2048


class Transport(Protocol):
    """Anything that can POST a JSON body with a bearer token and return the response body."""

    def perform_request(
        self,
        url: str,
        body: bytes,
        token: str,
        headers: Mapping[str, str] | None = None,
    ) -> bytes:
        ...


def rpc_name(url: str) -> str:
    """``https://host/v1/projects/p:lookup`` -> ``lookup``."""
    tail = url.rsplit("/", 1)[-1]
    return tail.split(":", 1)[1] if ":" in tail else tail


class HTTPTransport:
    """``requests``-backed transport with exponential backoff on server errors.

    5xx responses and connection failures are retried up to ``max_retries``
    times; 4xx responses fail immediately.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        settings = settings or get_settings()
        self.timeout = settings.request_timeout_seconds
        self.max_retries = settings.max_retries
        self.backoff = settings.retry_backoff_seconds
        self.max_body_bytes = settings.max_body_bytes
        self.session = session or requests.Session()
        self._sleep = sleep

    def perform_request(
        self,
        url: str,
        body: bytes,
        token: str,
        headers: Mapping[str, str] | None = None,
    ) -> bytes:
        method = rpc_name(url)
        request_headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        request_headers.update(headers or {})
        last_error: TransportError | None = None
        for attempt in range(self.max_retries + 1):
            if attempt:
                RETRY_COUNT.labels(method=method).inc()
                delay = self._backoff_delay(attempt)
                logger.warning(
                    "retrying request",
                    extra={"ctx_method": method, "ctx_attempt": attempt, "ctx_delay": round(delay, 3)},
                )
                self._sleep(delay)
            try:
                return self._attempt(url, body, request_headers, method)
            except TransportError as exc:
                if exc.status_code is not None and exc.status_code < 500:
                    raise
                last_error = exc
        assert last_error is not None
        raise last_error

    def _attempt(self, url: str, body: bytes, headers: Mapping[str, str], method: str) -> bytes:
        start = time.perf_counter()
        try:
            response = self.session.post(url, data=body, headers=dict(headers), timeout=self.timeout, stream=True)
        except requests.RequestException as exc:
            REQUEST_COUNT.labels(method=method, status="error").inc()
            raise TransportError(f"{method} request failed: {exc}") from exc
        try:
            content = self._read_body(response)
        finally:
            response.close()
            REQUEST_LATENCY.labels(method=method).observe(time.perf_counter() - start)
        REQUEST_COUNT.labels(method=method, status=str(response.status_code)).inc()
        if response.status_code != 200:
            text = content[:_ERROR_BODY_LIMIT].decode("utf-8", errors="replace")
            raise TransportError(
                f"{method} failed with status {response.status_code}: {text}",
                status_code=response.status_code,
                body=text,
            )
        return content

    def _read_body(self, response: requests.Response) -> bytes:
        chunks: list[bytes] = []
        size = 0
        for chunk in response.iter_content(chunk_size=64 * 1024):
            size += len(chunk)
            if size > self.max_body_bytes:
                raise TransportError(
                    f"response body exceeds {self.max_body_bytes} bytes",
                    status_code=response.status_code,
                )
            chunks.append(chunk)
        return b"".join(chunks)

    def _backoff_delay(self, attempt: int) -> float:
        base = min(self.backoff * (2 ** (attempt - 1)), MAX_BACKOFF_SECONDS)
        return base * (1 + random.uniform(-JITTER_FRACTION, JITTER_FRACTION))

    def close(self) -> None:
        self.session.close()


__all__ = ["HTTPTransport", "Transport", "rpc_name"]
