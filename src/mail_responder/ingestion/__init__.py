"""Ingestion pipeline components."""

from .filters import evaluate_message, normalize_email_address
from .parser import EmailParser, MessageParseError

__all__ = [
    "EmailParser",
    "MessageParseError",
    "evaluate_message",
    "normalize_email_address",
]
