"""Protocol interfaces for decoupling components."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, Protocol

from .models import (
    FilterDecision,
    InboundContext,
    MessageChunk,
    ParsedMessage,
    PollCheckpoint,
    ProcessedMessageStore,
)


class MailboxProvider(Protocol):
    """Abstraction over an email source such as IMAP."""

    mailbox: str

    def connect(self) -> None:
        """Open the session and select the mailbox."""
        raise NotImplementedError

    @property
    def uid_validity(self) -> int | None:
        """UIDVALIDITY of the selected mailbox, if the server reported one."""
        raise NotImplementedError

    def highest_uid(self) -> int | None:
        """Return the largest UID currently in the mailbox."""
        raise NotImplementedError

    def fetch_since(
        self, last_uid: int | None, batch_size: int
    ) -> Iterable[MessageChunk]:
        """Yield messages with UID greater than the provided checkpoint."""
        raise NotImplementedError

    def close(self) -> None:
        """Release any network resources."""
        raise NotImplementedError


class MessageStateStore(Protocol):
    """Dedup, rate-limit, and watermark persistence for a single account."""

    def has_processed(self, message_id: str) -> bool:
        """Return ``True`` if ``message_id`` was already admitted."""
        raise NotImplementedError

    def mark_processed(self, message_id: str) -> None:
        """Record ``message_id`` as admitted."""
        raise NotImplementedError

    def claim(self, message_id: str) -> bool:
        """Atomically check and record ``message_id``; ``False`` if seen before."""
        raise NotImplementedError

    def allow_reply(self, sender: str, now_ms: int, max_per_hour: int) -> bool:
        """Return whether another reply to ``sender`` fits the hourly budget."""
        raise NotImplementedError

    def record_reply(self, sender: str, now_ms: int) -> None:
        """Record a reply sent to ``sender``."""
        raise NotImplementedError

    def prune_rate_limits(self, now_ms: int) -> int:
        """Drop reply timestamps older than the rate-limit window."""
        raise NotImplementedError

    def get_checkpoint(self) -> PollCheckpoint | None:
        """Return the stored watermark."""
        raise NotImplementedError

    def update_checkpoint(
        self,
        *,
        last_uid: int | None,
        uid_validity: int | None,
        last_poll_time: int | None,
    ) -> None:
        """Persist the latest watermark."""
        raise NotImplementedError

    def snapshot(self) -> ProcessedMessageStore:
        """Return the persisted state in its exchange layout."""
        raise NotImplementedError

    def close(self) -> None:
        """Close database connections if necessary."""
        raise NotImplementedError


class InboundProcessor(Protocol):
    """Agent hook that turns an inbound message into reply text."""

    def __call__(self, ctx: InboundContext) -> str | None:
        """Handle ``ctx``; may reply through ``ctx.reply`` or return text."""
        raise NotImplementedError


class PairingHandler(Protocol):
    """Receives senders that need approval before they get replies."""

    def __call__(
        self, account_id: str, message: ParsedMessage, decision: FilterDecision
    ) -> None:
        raise NotImplementedError


class StatusSink(Protocol):
    """Receives partial status updates for an account."""

    def set_status(self, account_id: str, **changes: Any) -> None:
        """Merge ``changes`` into the status for ``account_id``."""
        raise NotImplementedError


__all__ = [
    "InboundProcessor",
    "MailboxProvider",
    "MessageStateStore",
    "PairingHandler",
    "StatusSink",
]
