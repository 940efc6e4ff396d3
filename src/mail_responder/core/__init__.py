"""Core utilities for configuration, logging, and shared models."""

from .config import (
    AccountSettings,
    AppSettings,
    SmtpSettings,
    SyncSettings,
    load_app_settings,
)
from .logging import configure_logging

__all__ = [
    "AccountSettings",
    "AppSettings",
    "SmtpSettings",
    "SyncSettings",
    "configure_logging",
    "load_app_settings",
]
