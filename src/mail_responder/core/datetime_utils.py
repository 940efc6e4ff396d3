"""Datetime helpers shared across the application."""

from __future__ import annotations

import time
from datetime import UTC, datetime

__all__ = [
    "epoch_millis",
    "from_epoch_millis",
    "serialize_datetime",
    "utc_now",
]


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(tz=UTC)


def epoch_millis(value: datetime | None = None) -> int:
    """Return ``value`` (or now) as integer milliseconds since the epoch."""
    if value is None:
        return int(time.time() * 1000)
    return int(value.timestamp() * 1000)


def from_epoch_millis(value: int | None) -> datetime | None:
    """Convert epoch milliseconds back into an aware UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=UTC)


def serialize_datetime(value: datetime | None) -> str | None:
    """Serialise ``value`` to ISO 8601, normalising timezone-aware values."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.isoformat()
    return value.astimezone(UTC).isoformat()
