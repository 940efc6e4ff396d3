"""Polling state machine that watches one mailbox and sends replies."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from ..core.config import AccountSettings, SyncSettings
from ..core.datetime_utils import epoch_millis, utc_now
from ..core.interfaces import (
    InboundProcessor,
    MailboxProvider,
    MessageStateStore,
    PairingHandler,
    StatusSink,
)
from ..core.logging import account_logger
from ..core.models import (
    DeliveryResult,
    FilterDecision,
    FilterVerdict,
    InboundContext,
    MessageChunk,
    ParsedMessage,
    PollReport,
)
from ..ingestion.filters import evaluate_message
from ..ingestion.parser import EmailParser, MessageParseError
from ..replies.composer import build_reply_subject, build_thread_info
from ..storage.sqlite import StoreError
from ..transport.imap_client import ImapError
from ..transport.smtp_client import SmtpClient, send_email

LOGGER = logging.getLogger(__name__)


class PollerState(str, Enum):
    """Lifecycle states of an :class:`ImapPoller`."""

    IDLE = "idle"
    CONNECTING = "connecting"
    POLLING = "polling"
    SLEEPING = "sleeping"
    STOPPED = "stopped"


@dataclass(slots=True)
class MonitorDependencies:
    """Collaborators supplied by the host application."""

    processor: InboundProcessor
    status_sink: StatusSink
    logger: logging.Logger | None = None
    pairing_handler: PairingHandler | None = None


def backoff_delay(attempt: int, initial: float, ceiling: float) -> float:
    """Exponential delay for the ``attempt``-th consecutive failure."""
    if attempt <= 0:
        return 0.0
    return min(initial * 2 ** (attempt - 1), ceiling)


class ImapPoller:
    """Watch a single account's folder until stopped.

    Messages are handled strictly one after another. Each admitted message is
    recorded in the state store before the agent is called, so a message is
    never handed to the agent twice even when delivery of its reply fails.
    """

    # pylint: disable=too-many-arguments,too-many-instance-attributes
    def __init__(
        self,
        account_id: str,
        account: AccountSettings,
        store: MessageStateStore,
        mailbox_factory: Callable[[], MailboxProvider],
        dependencies: MonitorDependencies,
        *,
        sync: SyncSettings | None = None,
        transporter: SmtpClient | None = None,
        parser: EmailParser | None = None,
        clock: Callable[[], int] = epoch_millis,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.account_id = account_id
        self._account = account
        self._store = store
        self._mailbox_factory = mailbox_factory
        self._deps = dependencies
        self._sync = sync or SyncSettings()
        self._transporter = transporter or SmtpClient(account.smtp)
        self._parser = parser or EmailParser()
        self._clock = clock
        self._stop_event = stop_event or threading.Event()
        self._log = account_logger(dependencies.logger or LOGGER, account_id)
        self.state = PollerState.IDLE

    # Lifecycle ---------------------------------------------------------------
    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Request shutdown at the next safe point."""
        self._stop_event.set()

    def run(self) -> None:
        """Connect, poll, and reconnect with backoff until stopped."""
        self._report(running=True, last_start_at=utc_now(), last_stop_at=None)
        self._log.info(
            "Starting email monitor for %s (folder %s)",
            self._account.email,
            self._account.folder,
        )
        failures = 0
        try:
            while not self.stopped:
                self.state = PollerState.CONNECTING
                mailbox = self._mailbox_factory()
                try:
                    mailbox.connect()
                except (ImapError, OSError) as exc:
                    failures += 1
                    self._fail(f"IMAP connection failed: {exc}", failures)
                    continue

                failures = 0
                self._report(connected=True, last_error=None)
                self._log.info("Connected to IMAP folder %s", self._account.folder)
                try:
                    while not self.stopped:
                        self.state = PollerState.POLLING
                        self.poll_once(mailbox)
                        self.state = PollerState.SLEEPING
                        if self._stop_event.wait(self._account.poll_interval_seconds):
                            break
                except (ImapError, StoreError, OSError) as exc:
                    failures += 1
                    self._fail(f"Poll cycle failed: {exc}", failures, mailbox)
                except Exception as exc:  # pylint: disable=broad-except
                    failures += 1
                    self._log.error("Unexpected poll failure: %s", exc, exc_info=True)
                    self._fail(f"Poll cycle crashed: {exc}", failures, mailbox)
                else:
                    self._close(mailbox)
        finally:
            self.state = PollerState.STOPPED
            self._report(running=False, connected=False, last_stop_at=utc_now())
            self._log.info("Email monitor stopped")

    # Poll cycle --------------------------------------------------------------
    def poll_once(self, mailbox: MailboxProvider) -> PollReport:
        """Run one fetch cycle against an already connected mailbox."""
        checkpoint = self._store.get_checkpoint()
        last_uid = checkpoint.last_uid if checkpoint else None
        uid_validity = mailbox.uid_validity
        if (
            checkpoint is not None
            and checkpoint.uid_validity is not None
            and uid_validity is not None
            and checkpoint.uid_validity != uid_validity
        ):
            self._log.warning(
                "UIDVALIDITY changed (%s -> %s); resetting watermark",
                checkpoint.uid_validity,
                uid_validity,
            )
            last_uid = None

        if last_uid is None and not self._account.process_existing:
            baseline = mailbox.highest_uid() or 0
            self._log.info("No watermark yet; starting after UID %s", baseline)
            self._finish_cycle(baseline, uid_validity)
            return PollReport(new_last_uid=baseline)

        report = PollReport(new_last_uid=last_uid)
        for chunk in mailbox.fetch_since(last_uid, self._sync.batch_size):
            if self.stopped:
                self._log.info("Stop requested; ending cycle early")
                break
            report.fetched += 1
            try:
                self._handle_chunk(chunk, report, uid_validity)
            except StoreError:
                raise
            except Exception as exc:  # pylint: disable=broad-except
                self._log.error(
                    "Failed to handle UID %s: %s", chunk.uid, exc, exc_info=True
                )
                self._report(last_error=f"Message UID {chunk.uid} failed: {exc}")
                report.failed += 1
            report.new_last_uid = chunk.uid

        self._finish_cycle(report.new_last_uid, uid_validity)
        self._log.info(
            "Poll completed: fetched=%s, admitted=%s, replied=%s, skipped=%s, "
            "failed=%s, last_uid=%s",
            report.fetched,
            report.admitted,
            report.replied,
            report.skipped,
            report.failed,
            report.new_last_uid,
        )
        return report

    def _finish_cycle(self, last_uid: int | None, uid_validity: int | None) -> None:
        now_ms = self._clock()
        self._store.update_checkpoint(
            last_uid=last_uid, uid_validity=uid_validity, last_poll_time=now_ms
        )
        self._store.prune_rate_limits(now_ms)
        self._report(last_poll_at=utc_now())

    def _handle_chunk(
        self, chunk: MessageChunk, report: PollReport, uid_validity: int | None
    ) -> None:
        if not chunk.raw:
            self._log.warning("Skipping UID %s: server returned no body", chunk.uid)
            report.failed += 1
            return
        try:
            message = self._parser.parse(
                chunk.uid, chunk.raw, self._account.folder, uid_validity
            )
        except MessageParseError as exc:
            self._log.warning("Skipping unparseable message UID %s: %s", chunk.uid, exc)
            report.failed += 1
            return

        decision = evaluate_message(message, self._account)
        if decision.verdict is FilterVerdict.REJECT:
            self._log.debug("Skipping UID %s: %s", message.uid, decision.reason)
            report.skipped += 1
            return
        if decision.verdict is FilterVerdict.NEEDS_PAIRING:
            self._route_pairing(message, decision)
            report.skipped += 1
            return

        if not self._store.claim(message.message_id):
            self._log.debug("Skipping already processed %s", message.message_id)
            report.skipped += 1
            return
        report.admitted += 1

        if not self._store.allow_reply(
            message.sender,
            self._clock(),
            self._account.max_replies_per_sender_per_hour,
        ):
            self._log.info(
                "Skipping %s from %s: rate-limited", message.message_id, message.sender
            )
            report.skipped += 1
            return

        self._dispatch(message, report)

    def _route_pairing(self, message: ParsedMessage, decision: FilterDecision) -> None:
        handler = self._deps.pairing_handler
        if handler is None:
            self._log.info(
                "Ignoring %s: %s (no pairing handler)", message.sender, decision.reason
            )
            return
        try:
            handler(self.account_id, message, decision)
        except Exception as exc:  # pylint: disable=broad-except
            self._log.error(
                "Pairing handler failed for %s: %s", message.sender, exc, exc_info=True
            )

    def _dispatch(self, message: ParsedMessage, report: PollReport) -> None:
        results: list[DeliveryResult] = []

        def reply(text: str) -> DeliveryResult:
            if results:
                self._log.warning("Reply already sent for %s", message.message_id)
                return DeliveryResult(ok=False, error="Reply already sent")
            result = self._send_reply(message, text)
            results.append(result)
            return result

        ctx = InboundContext(
            from_address=message.sender,
            from_name=message.sender_name,
            to=self._account.email,
            subject=message.subject,
            body=message.text_body,
            message_id=message.message_id,
            account_id=self.account_id,
            reply=reply,
        )
        self._log.info("Received email from %s: %s", message.sender, message.subject)
        self._report(last_inbound_at=utc_now())

        try:
            reply_text = self._deps.processor(ctx)
        except StoreError:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            self._log.error(
                "Inbound processor failed for %s: %s",
                message.message_id,
                exc,
                exc_info=True,
            )
            self._report(last_error=f"Inbound processing failed: {exc}")
            report.failed += 1
            return

        if reply_text and reply_text.strip() and not results:
            reply(reply_text)
        elif not results:
            self._log.info("No reply produced for %s", message.message_id)

        if any(result.ok for result in results):
            report.replied += 1
        elif results:
            report.failed += 1

    def _send_reply(self, message: ParsedMessage, text: str) -> DeliveryResult:
        thread_info = build_thread_info(
            message.message_id, message.in_reply_to, message.references
        )
        result = send_email(
            self._transporter,
            from_address=self._account.email,
            to=message.sender,
            subject=build_reply_subject(message.subject, self._account.reply_prefix),
            text=text,
            thread_info=thread_info,
            signature=self._account.signature,
        )
        if result.ok:
            self._store.record_reply(message.sender, self._clock())
            self._report(last_outbound_at=utc_now())
            self._log.info("Reply sent to %s (%s)", message.sender, result.message_id)
        else:
            self._report(last_error=f"Reply to {message.sender} failed: {result.error}")
            self._log.error("Failed to send reply to %s: %s", message.sender, result.error)
        return result

    # Helpers -----------------------------------------------------------------
    def _fail(
        self, error: str, failures: int, mailbox: MailboxProvider | None = None
    ) -> None:
        if mailbox is not None:
            self._close(mailbox)
        delay = backoff_delay(
            failures, self._sync.backoff_initial_seconds, self._sync.backoff_max_seconds
        )
        self._log.warning("%s; retrying in %.0fs", error, delay)
        self._report(connected=False, last_error=error)
        self._stop_event.wait(delay)

    def _close(self, mailbox: MailboxProvider) -> None:
        try:
            mailbox.close()
        except (ImapError, OSError) as exc:
            self._log.debug("Ignoring error while closing mailbox: %s", exc)

    def _report(self, **changes: object) -> None:
        self._deps.status_sink.set_status(self.account_id, **changes)


__all__ = ["ImapPoller", "MonitorDependencies", "PollerState", "backoff_delay"]
