"""Prometheus metrics instrumentation."""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

REGISTRY = CollectorRegistry()

REQUEST_COUNT = Counter(
    "kindstore_requests_total",
    "Total backend RPC requests",
    labelnames=("method", "status"),
    registry=REGISTRY,
)

REQUEST_LATENCY = Histogram(
    "kindstore_request_latency_seconds",
    "Latency of backend RPC requests",
    labelnames=("method",),
    registry=REGISTRY,
)

RETRY_COUNT = Counter(
    "kindstore_request_retries_total",
    "Transport-level retries of backend RPC requests",
    labelnames=("method",),
    registry=REGISTRY,
)

TRANSACTION_ATTEMPTS = Counter(
    "kindstore_transaction_attempts_total",
    "Transaction attempts by outcome",
    labelnames=("outcome",),
    registry=REGISTRY,
)

ITERATOR_FETCHES = Counter(
    "kindstore_iterator_fetches_total",
    "Result batches fetched by query iterators",
    registry=REGISTRY,
)


def metrics_text() -> tuple[bytes, str]:
    """Return the exposition payload and its content type."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST


__all__ = [
    "ITERATOR_FETCHES",
    "REGISTRY",
    "REQUEST_COUNT",
    "REQUEST_LATENCY",
    "RETRY_COUNT",
    "TRANSACTION_ATTEMPTS",
    "metrics_text",
]
