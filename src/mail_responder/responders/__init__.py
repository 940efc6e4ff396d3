"""Adapters that produce reply text for inbound mail."""

from .webhook import ResponderError, WebhookResponder

__all__ = ["ResponderError", "WebhookResponder"]
