"""Admission rules deciding which inbound messages get an automatic reply.

The checks run in a fixed order: loop avoidance first, then the account's
sender filter, then the direct-message policy. The first check that rejects
wins, so an auto-generated message is refused even when its sender is on the
allow list.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from fnmatch import fnmatchcase

from ..core.config import AccountSettings
from ..core.models import FilterDecision, FilterVerdict, ParsedMessage

AUTO_REPLY_HEADERS: tuple[str, ...] = (
    "x-auto-reply",
    "x-autoreply",
    "x-autorespond",
)
BULK_PRECEDENCE: frozenset[str] = frozenset({"bulk", "list", "junk"})
IGNORED_SENDERS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^noreply@", re.IGNORECASE),
    re.compile(r"^no-reply@", re.IGNORECASE),
    re.compile(r"^mailer-daemon@", re.IGNORECASE),
    re.compile(r"^postmaster@", re.IGNORECASE),
    re.compile(r"^bounce", re.IGNORECASE),
    re.compile(r"^notification", re.IGNORECASE),
)


def normalize_email_address(value: str) -> str:
    """Lower-case an address and strip whitespace and an ``email:`` prefix."""
    trimmed = value.strip()
    if trimmed.lower().startswith("email:"):
        trimmed = trimmed[len("email:") :]
    return trimmed.strip().lower()


def matches_sender(sender: str, entries: Iterable[str]) -> bool:
    """Return ``True`` if ``sender`` matches any address, glob, or ``@domain``."""
    address = normalize_email_address(sender)
    for raw_entry in entries:
        entry = normalize_email_address(str(raw_entry))
        if not entry:
            continue
        if entry == "*" or entry == address:
            return True
        if entry.startswith("@") and address.endswith(entry):
            return True
        if any(char in entry for char in "*?[") and fnmatchcase(address, entry):
            return True
    return False


def detect_auto_reply(headers: Mapping[str, str]) -> str | None:
    """Return a reason when headers mark the message as machine generated."""
    lowered = {key.lower(): value for key, value in headers.items()}
    for header in AUTO_REPLY_HEADERS:
        if header in lowered:
            return f"auto-reply header {header}"
    auto_submitted = lowered.get("auto-submitted")
    if auto_submitted is not None and auto_submitted.strip().lower() != "no":
        return f"auto-submitted: {auto_submitted.strip()}"
    precedence = (lowered.get("precedence") or "").strip().lower()
    if precedence in BULK_PRECEDENCE:
        return f"precedence: {precedence}"
    return None


def is_machine_sender(sender: str) -> bool:
    address = normalize_email_address(sender)
    return any(pattern.search(address) for pattern in IGNORED_SENDERS)


def evaluate_message(message: ParsedMessage, account: AccountSettings) -> FilterDecision:
    """Decide whether ``message`` should reach the reply agent."""
    sender = normalize_email_address(message.sender)

    auto_reason = detect_auto_reply(message.headers)
    if auto_reason is not None:
        return FilterDecision(FilterVerdict.REJECT, auto_reason)
    if is_machine_sender(sender):
        return FilterDecision(FilterVerdict.REJECT, f"machine sender {sender}")
    own_address = normalize_email_address(account.email)
    if own_address and sender == own_address:
        return FilterDecision(FilterVerdict.REJECT, "message sent by this account")

    if account.filter_mode == "allowlist":
        if not matches_sender(sender, account.allow_from):
            return FilterDecision(FilterVerdict.REJECT, f"{sender} not in allowFrom")
    elif account.filter_mode == "blocklist":
        if matches_sender(sender, account.block_from):
            return FilterDecision(FilterVerdict.REJECT, f"{sender} in blockFrom")

    if account.dm_policy != "open" and not matches_sender(sender, account.allow_from):
        if account.dm_policy == "pairing":
            return FilterDecision(
                FilterVerdict.NEEDS_PAIRING, f"{sender} awaiting pairing approval"
            )
        return FilterDecision(FilterVerdict.REJECT, f"{sender} not an approved sender")

    return FilterDecision(FilterVerdict.ADMIT, f"admitted ({account.filter_mode})")


__all__ = [
    "AUTO_REPLY_HEADERS",
    "IGNORED_SENDERS",
    "detect_auto_reply",
    "evaluate_message",
    "is_machine_sender",
    "matches_sender",
    "normalize_email_address",
]
