"""Shared FastAPI dependencies for the emulator."""

from __future__ import annotations

from fastapi import Request

from kindstore.emulator.store import DEFAULT_BATCH_SIZE, EmulatorStore

_STORE: EmulatorStore | None = None


def default_store() -> EmulatorStore:
    """Process-wide store used when an app is created without one."""
    global _STORE
    if _STORE is None:
        _STORE = EmulatorStore(batch_size=DEFAULT_BATCH_SIZE)
    return _STORE


def get_store(request: Request) -> EmulatorStore:
    return request.app.state.store


__all__ = ["default_store", "get_store"]
