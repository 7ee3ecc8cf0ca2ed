"""ID helpers."""

from __future__ import annotations

import base64
import uuid


def new_transaction_id() -> str:
    """Opaque base64 transaction handle, shaped like the ones the backend issues."""
    return base64.b64encode(uuid.uuid4().bytes).decode("ascii")


__all__ = ["new_transaction_id"]
