"""Persistence for dedup, rate-limit, and watermark state."""

from .sqlite import RATE_LIMIT_WINDOW_MS, SqliteStateStore, StoreError

__all__ = ["RATE_LIMIT_WINDOW_MS", "SqliteStateStore", "StoreError"]
