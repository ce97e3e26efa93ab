"""Time and identifier helpers shared by models and services."""

from __future__ import annotations

import secrets
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime, the storage convention."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat() + "Z"


def new_id(prefix: str) -> str:
    """Return a random identifier such as ``wf_3f9c0a1b2d4e``."""

    return f"{prefix}_{secrets.token_hex(8)}"
