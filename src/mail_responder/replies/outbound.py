"""Explicit send actions outside the polling loop."""

from __future__ import annotations

import logging
import re

from ..core.config import AccountSettings
from ..core.models import DeliveryResult
from ..transport.smtp_client import SmtpClient, send_email
from .composer import build_thread_info

LOGGER = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
DEFAULT_SUBJECT = "Message from Mail Responder"
DEFAULT_REPLY_SUBJECT = "Re: Your message"
PAIRING_APPROVED_SUBJECT = "Mail Responder Pairing Approved"
PAIRING_APPROVED_MESSAGE = (
    "Your address has been approved. Replies to your messages will now be "
    "sent automatically."
)


def is_valid_address(value: str) -> bool:
    return bool(EMAIL_PATTERN.match(value.strip()))


def send_message(
    account: AccountSettings,
    to: str,
    text: str,
    *,
    subject: str | None = None,
    reply_to_id: str | None = None,
    transporter: SmtpClient | None = None,
) -> DeliveryResult:
    """Send ``text`` to ``to`` from ``account``; never raises on delivery errors."""
    target = to.strip()
    if not target:
        return DeliveryResult(ok=False, error="Sending email requires a target address")
    if not is_valid_address(target):
        return DeliveryResult(ok=False, error=f"Invalid email address: {target}")
    if not text:
        return DeliveryResult(ok=False, error="Missing message text")
    if not account.configured:
        return DeliveryResult(ok=False, error="Email account not configured")

    thread_info = build_thread_info(reply_to_id) if reply_to_id else None
    resolved_subject = subject or (
        DEFAULT_REPLY_SUBJECT if reply_to_id else DEFAULT_SUBJECT
    )
    result = send_email(
        transporter or SmtpClient(account.smtp),
        from_address=account.email,
        to=target,
        subject=resolved_subject,
        text=text,
        thread_info=thread_info,
        signature=account.signature,
        auto_reply=False,
    )
    if result.ok:
        LOGGER.info("Sent message to %s (%s)", target, result.message_id)
    else:
        LOGGER.error("Failed to send message to %s: %s", target, result.error)
    return result


def notify_pairing_approved(
    account: AccountSettings,
    address: str,
    *,
    transporter: SmtpClient | None = None,
) -> DeliveryResult:
    """Tell a newly approved sender that automatic replies are enabled."""
    if not account.configured:
        LOGGER.debug("Skipping pairing notice; account not configured")
        return DeliveryResult(ok=False, error="Email account not configured")
    return send_message(
        account,
        address,
        PAIRING_APPROVED_MESSAGE,
        subject=PAIRING_APPROVED_SUBJECT,
        transporter=transporter,
    )


__all__ = [
    "DEFAULT_SUBJECT",
    "EMAIL_PATTERN",
    "PAIRING_APPROVED_MESSAGE",
    "is_valid_address",
    "notify_pairing_approved",
    "send_message",
]
