"""Core domain models used across the application."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


@dataclass(slots=True)
class MessageChunk:
    """Raw IMAP payload paired with its UID; empty when the server sent none."""

    uid: int
    raw: bytes


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class ParsedMessage:
    """Normalized inbound message used by the admission pipeline."""

    uid: int
    message_id: str
    sender: str
    sender_name: str | None
    to: tuple[str, ...]
    cc: tuple[str, ...]
    subject: str
    text_body: str
    html_body: str | None
    date: datetime | None
    in_reply_to: str | None
    references: tuple[str, ...]
    headers: Mapping[str, str]


@dataclass(slots=True)
class ThreadInfo:
    """Threading headers for a reply."""

    message_id: str
    in_reply_to: str | None
    references: tuple[str, ...]


@dataclass(slots=True)
class DeliveryResult:
    """Outcome of an SMTP delivery attempt."""

    ok: bool
    message_id: str | None = None
    error: str | None = None


class FilterVerdict(str, Enum):
    """Tri-state outcome of the filter pipeline."""

    ADMIT = "admit"
    REJECT = "reject"
    NEEDS_PAIRING = "needs_pairing"


@dataclass(slots=True)
class FilterDecision:
    """Filter verdict with a reason for logs and status."""

    verdict: FilterVerdict
    reason: str

    @property
    def admitted(self) -> bool:
        return self.verdict is FilterVerdict.ADMIT


@dataclass(slots=True)
class InboundContext:
    """Normalized message handed to the agent that writes the reply."""

    from_address: str
    from_name: str | None
    to: str
    subject: str
    body: str
    message_id: str
    account_id: str
    reply: Callable[[str], DeliveryResult] = field(repr=False)


@dataclass(slots=True)
class ProcessedMessageStore:
    """Persisted dedup and rate-limit state for an account."""

    processed_ids: list[str]
    rate_limits: dict[str, list[int]]
    last_poll_time: int | None = None


@dataclass(slots=True)
class PollCheckpoint:
    """Watermark for a monitored folder."""

    account_id: str
    folder: str
    last_uid: int | None
    uid_validity: int | None
    last_poll_time: int | None


@dataclass(slots=True)
class PollReport:
    """Outcome summary for a poll cycle."""

    fetched: int = 0
    admitted: int = 0
    replied: int = 0
    skipped: int = 0
    failed: int = 0
    new_last_uid: int | None = None


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class AccountStatus:
    """Runtime status reported for a monitored account."""

    account_id: str
    running: bool = False
    connected: bool = False
    last_start_at: datetime | None = None
    last_stop_at: datetime | None = None
    last_error: str | None = None
    last_poll_at: datetime | None = None
    last_inbound_at: datetime | None = None
    last_outbound_at: datetime | None = None


__all__ = [
    "AccountStatus",
    "DeliveryResult",
    "FilterDecision",
    "FilterVerdict",
    "InboundContext",
    "MessageChunk",
    "ParsedMessage",
    "PollCheckpoint",
    "PollReport",
    "ProcessedMessageStore",
    "ThreadInfo",
]
