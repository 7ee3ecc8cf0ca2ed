"""Structured logging shared by the client, the emulator and the CLI."""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

import orjson

CONTEXT_PREFIX = "ctx_"
# only surfaced when kindstore itself logs at DEBUG
_CHATTY_LOGGERS = ("urllib3", "httpx", "uvicorn.access")


class JsonFormatter(logging.Formatter):
    """One JSON object per line; ``ctx_*`` extras are gathered under ``context``."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: dict[str, Any] = {
            "time": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = {
            key[len(CONTEXT_PREFIX) :]: value
            for key, value in record.__dict__.items()
            if key.startswith(CONTEXT_PREFIX)
        }
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["error"] = self.formatException(record.exc_info)
        # keys, paths and the like fall back to their string form
        return orjson.dumps(payload, default=str).decode("utf-8")


def _numeric_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(level: str | int | None = None, use_json: bool = True) -> None:
    """Install a single stderr handler on the root logger.

    stdout stays free for command output. Without an explicit ``level`` the
    ``KINDSTORE_LOG_LEVEL`` environment variable decides, defaulting to INFO.
    """
    numeric = _numeric_level(level if level is not None else os.environ.get("KINDSTORE_LOG_LEVEL", "INFO"))
    handler = logging.StreamHandler(sys.stderr)
    if use_json:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(numeric)
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric, logging.WARNING))
    logging.captureWarnings(True)


def get_logger(name: str = "kindstore") -> logging.Logger:
    """Return a logger, configuring the root logger on first use."""
    if not logging.getLogger().handlers:
        configure_logging()
    return logging.getLogger(name)


__all__ = ["JsonFormatter", "configure_logging", "get_logger"]
