"""Logging configuration helpers."""

from __future__ import annotations

import logging
import logging.config
from collections.abc import MutableMapping
from typing import Any

from .config import LoggingSettings


def _structured_formatter() -> dict[str, Any]:
    """Return a dictConfig fragment for structured logs."""
    return {
        "format": "{asctime} {levelname} {name} {threadName} {message}",
        "style": "{",
    }


def _plain_formatter() -> dict[str, Any]:
    """Return a dictConfig fragment for human readable logs."""
    return {
        "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
    }


def configure_logging(settings: LoggingSettings) -> None:
    """Configure application logging according to provided settings."""
    formatter = _structured_formatter() if settings.structured else _plain_formatter()

    dict_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": formatter,
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "level": settings.level,
            },
        },
        "root": {
            "handlers": ["console"],
            "level": settings.level,
        },
    }

    logging.config.dictConfig(dict_config)


class AccountLoggerAdapter(logging.LoggerAdapter):
    """Prefix every record with the owning account id."""

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        account_id = (self.extra or {}).get("account_id", "?")
        return f"[{account_id}] {msg}", kwargs


def account_logger(logger: logging.Logger, account_id: str) -> AccountLoggerAdapter:
    """Wrap ``logger`` so messages carry ``account_id``."""
    return AccountLoggerAdapter(logger, {"account_id": account_id})


__all__ = ["AccountLoggerAdapter", "account_logger", "configure_logging"]
