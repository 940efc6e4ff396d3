"""Tests for the per-account polling state machine."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from pathlib import Path

import pytest

from mail_responder.core.config import (
    AccountSettings,
    ImapSettings,
    SmtpSettings,
    StorageSettings,
    SyncSettings,
)
from mail_responder.core.models import InboundContext, MessageChunk
from mail_responder.monitor import (
    ImapPoller,
    MonitorDependencies,
    PollerState,
    StatusRegistry,
)
from mail_responder.monitor.poller import backoff_delay
from mail_responder.storage import SqliteStateStore, StoreError
from mail_responder.transport import ImapError, OutgoingEmail, SmtpError

NOW_MS = 1_760_000_000_000


def _raw(
    uid: int,
    sender: str = "alice@example.com",
    subject: str = "Question",
    extra_headers: str = "",
) -> MessageChunk:
    payload = (
        f"From: Alice <{sender}>\r\n"
        "To: bot@example.org\r\n"
        f"Subject: {subject}\r\n"
        f"Message-ID: <msg-{uid}@example.com>\r\n"
        f"{extra_headers}"
        "\r\n"
        f"Body of message {uid}\r\n"
    ).encode()
    return MessageChunk(uid=uid, raw=payload)


class StubMailbox:
    """In-memory mailbox honouring the UID watermark contract."""

    def __init__(
        self,
        chunks: Iterable[MessageChunk] = (),
        uid_validity: int | None = 1,
        on_connect: Callable[[], None] | None = None,
    ) -> None:
        self.chunks = list(chunks)
        self.uid_validity = uid_validity
        self.on_connect = on_connect
        self.connect_calls = 0
        self.closed = False

    def connect(self) -> None:
        self.connect_calls += 1
        if self.on_connect is not None:
            self.on_connect()

    def highest_uid(self) -> int | None:
        return max((chunk.uid for chunk in self.chunks), default=None)

    def fetch_since(self, last_uid: int | None, batch_size: int) -> list[MessageChunk]:
        floor = last_uid or 0
        return sorted(
            (chunk for chunk in self.chunks if chunk.uid > floor),
            key=lambda chunk: chunk.uid,
        )

    def close(self) -> None:
        self.closed = True


class RecordingTransporter:
    """SMTP stand-in that records or rejects deliveries."""

    def __init__(self, error: Exception | None = None) -> None:
        self.sent: list[OutgoingEmail] = []
        self.error = error

    def __enter__(self) -> RecordingTransporter:
        return self

    def __exit__(self, *args: object) -> None:
        return None

    def send(self, message: OutgoingEmail) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append(message)


class RecordingProcessor:
    """Inbound processor returning a canned reply."""

    def __init__(self, reply: str | None = "Thanks, we are on it.") -> None:
        self.reply = reply
        self.contexts: list[InboundContext] = []

    def __call__(self, ctx: InboundContext) -> str | None:
        self.contexts.append(ctx)
        return self.reply


def _account(**overrides) -> AccountSettings:
    values = {
        "imap": ImapSettings(
            host="imap.example.org", username="bot@example.org", password="pw"
        ),
        "smtp": SmtpSettings(
            host="smtp.example.org", username="bot@example.org", password="pw"
        ),
        "process_existing": True,
    }
    values.update(overrides)
    return AccountSettings(**values)


@pytest.fixture()
def store(tmp_path: Path):
    state = SqliteStateStore(StorageSettings(db_path=tmp_path / "state.db"), "default")
    yield state
    state.close()


@pytest.fixture()
def registry() -> StatusRegistry:
    return StatusRegistry()


def _poller(
    store: SqliteStateStore,
    registry: StatusRegistry,
    processor: Callable[[InboundContext], str | None],
    *,
    account: AccountSettings | None = None,
    mailbox: StubMailbox | None = None,
    transporter: RecordingTransporter | None = None,
    **kwargs,
) -> ImapPoller:
    return ImapPoller(
        "default",
        account or _account(),
        store,
        lambda: mailbox or StubMailbox(),
        MonitorDependencies(processor=processor, status_sink=registry),
        transporter=transporter or RecordingTransporter(),  # type: ignore[arg-type]
        clock=lambda: NOW_MS,
        **kwargs,
    )


def test_rate_limit_allows_one_reply_per_sender(store, registry) -> None:
    processor = RecordingProcessor()
    transporter = RecordingTransporter()
    poller = _poller(
        store,
        registry,
        processor,
        account=_account(max_replies_per_sender_per_hour=1),
        transporter=transporter,
    )

    report = poller.poll_once(StubMailbox([_raw(1), _raw(2)]))

    assert len(processor.contexts) == 1
    assert len(transporter.sent) == 1
    assert report.replied == 1
    assert report.skipped == 1
    assert report.new_last_uid == 2
    assert store.snapshot().processed_ids == [
        "<msg-1@example.com>",
        "<msg-2@example.com>",
    ]
    assert store.snapshot().rate_limits == {"alice@example.com": [NOW_MS]}


def test_reply_is_threaded_under_the_original(store, registry) -> None:
    processor = RecordingProcessor()
    transporter = RecordingTransporter()
    poller = _poller(
        store,
        registry,
        processor,
        account=_account(signature="Support Bot"),
        transporter=transporter,
    )

    poller.poll_once(StubMailbox([_raw(1, subject="Where is my order?")]))

    (ctx,) = processor.contexts
    assert ctx.from_address == "alice@example.com"
    assert ctx.from_name == "Alice"
    assert ctx.to == "bot@example.org"
    assert ctx.account_id == "default"
    assert ctx.body == "Body of message 1"
    (sent,) = transporter.sent
    assert sent.to == "alice@example.com"
    assert sent.subject == "Re: Where is my order?"
    assert sent.in_reply_to == "<msg-1@example.com>"
    assert sent.references == "<msg-1@example.com>"
    assert sent.body.endswith("\n\nSupport Bot")
    status = registry.get("default")
    assert status is not None
    assert status.last_inbound_at is not None
    assert status.last_outbound_at is not None
    assert status.last_poll_at is not None


def test_first_poll_only_sets_a_baseline(store, registry) -> None:
    processor = RecordingProcessor()
    poller = _poller(
        store, registry, processor, account=_account(process_existing=False)
    )
    mailbox = StubMailbox([_raw(4), _raw(5)])

    baseline = poller.poll_once(mailbox)

    assert baseline.new_last_uid == 5
    assert processor.contexts == []
    checkpoint = store.get_checkpoint()
    assert checkpoint is not None and checkpoint.last_uid == 5

    mailbox.chunks.append(_raw(6))
    report = poller.poll_once(mailbox)

    assert [ctx.message_id for ctx in processor.contexts] == ["<msg-6@example.com>"]
    assert report.new_last_uid == 6


def test_uid_validity_change_resets_watermark(store, registry) -> None:
    store.update_checkpoint(last_uid=10, uid_validity=1, last_poll_time=None)
    processor = RecordingProcessor()
    poller = _poller(store, registry, processor)

    report = poller.poll_once(StubMailbox([_raw(3)], uid_validity=2))

    assert report.fetched == 1
    assert len(processor.contexts) == 1
    checkpoint = store.get_checkpoint()
    assert checkpoint is not None
    assert checkpoint.uid_validity == 2
    assert checkpoint.last_uid == 3


def test_duplicates_across_reconnect_are_absorbed(store, registry) -> None:
    processor = RecordingProcessor()
    poller = _poller(store, registry, processor)
    poller.poll_once(StubMailbox([_raw(1)]))

    store.update_checkpoint(last_uid=None, uid_validity=1, last_poll_time=None)
    report = poller.poll_once(StubMailbox([_raw(1)]))

    assert len(processor.contexts) == 1
    assert report.skipped == 1


def test_delivery_failure_is_terminal(store, registry) -> None:
    processor = RecordingProcessor()
    transporter = RecordingTransporter(error=SmtpError("Connection refused"))
    poller = _poller(store, registry, processor, transporter=transporter)

    report = poller.poll_once(StubMailbox([_raw(1)]))

    assert report.failed == 1
    assert store.has_processed("<msg-1@example.com>")
    assert store.snapshot().rate_limits == {}
    status = registry.get("default")
    assert status is not None
    assert "Connection refused" in (status.last_error or "")

    store.update_checkpoint(last_uid=None, uid_validity=1, last_poll_time=None)
    poller.poll_once(StubMailbox([_raw(1)]))
    assert len(processor.contexts) == 1


def test_processor_errors_do_not_stop_the_cycle(store, registry) -> None:
    calls: list[str] = []

    def processor(ctx: InboundContext) -> str | None:
        calls.append(ctx.message_id)
        if ctx.message_id == "<msg-1@example.com>":
            raise RuntimeError("agent offline")
        return "ok"

    transporter = RecordingTransporter()
    poller = _poller(store, registry, processor, transporter=transporter)

    report = poller.poll_once(
        StubMailbox([_raw(1), _raw(2, sender="bob@example.com")])
    )

    assert calls == ["<msg-1@example.com>", "<msg-2@example.com>"]
    assert report.failed == 1
    assert report.replied == 1
    assert store.has_processed("<msg-1@example.com>")
    assert [message.to for message in transporter.sent] == ["bob@example.com"]


def test_context_reply_sends_at_most_once(store, registry) -> None:
    results = []

    def processor(ctx: InboundContext) -> str | None:
        results.append(ctx.reply("First answer"))
        results.append(ctx.reply("Second answer"))
        return "Ignored return value"

    transporter = RecordingTransporter()
    poller = _poller(store, registry, processor, transporter=transporter)

    report = poller.poll_once(StubMailbox([_raw(1)]))

    assert [message.body for message in transporter.sent] == ["First answer"]
    assert results[0].ok
    assert not results[1].ok
    assert report.replied == 1


def test_empty_reply_sends_nothing(store, registry) -> None:
    transporter = RecordingTransporter()
    poller = _poller(
        store, registry, RecordingProcessor(reply="  "), transporter=transporter
    )

    report = poller.poll_once(StubMailbox([_raw(1)]))

    assert transporter.sent == []
    assert report.admitted == 1
    assert report.replied == 0


def test_filtered_and_unparseable_messages_are_skipped(store, registry) -> None:
    processor = RecordingProcessor()
    poller = _poller(store, registry, processor)
    broken = MessageChunk(uid=3, raw=b"Subject: no sender\r\n\r\nbody\r\n")

    report = poller.poll_once(
        StubMailbox(
            [
                _raw(1, extra_headers="Auto-Submitted: auto-replied\r\n"),
                _raw(2, sender="noreply@example.com"),
                broken,
            ]
        )
    )

    assert processor.contexts == []
    assert report.skipped == 2
    assert report.failed == 1
    assert report.new_last_uid == 3
    assert store.snapshot().processed_ids == []


def test_pairing_requests_are_routed_to_handler(store, registry) -> None:
    held = []
    processor = RecordingProcessor()
    poller = ImapPoller(
        "default",
        _account(dm_policy="pairing", allow_from=["known@example.com"]),
        store,
        StubMailbox,
        MonitorDependencies(
            processor=processor,
            status_sink=registry,
            pairing_handler=lambda account_id, message, decision: held.append(
                (account_id, message.sender, decision.verdict.value)
            ),
        ),
        transporter=RecordingTransporter(),  # type: ignore[arg-type]
        clock=lambda: NOW_MS,
    )

    poller.poll_once(StubMailbox([_raw(1, sender="stranger@example.com")]))

    assert held == [("default", "stranger@example.com", "needs_pairing")]
    assert processor.contexts == []
    assert not store.has_processed("<msg-1@example.com>")


def test_run_reports_connection_errors_and_stops(store, registry) -> None:
    poller: ImapPoller

    def fail_and_stop() -> None:
        poller.stop()
        raise ImapError("authentication failed")

    mailbox = StubMailbox(on_connect=fail_and_stop)
    poller = _poller(
        store,
        registry,
        RecordingProcessor(),
        mailbox=mailbox,
        sync=SyncSettings(backoff_initial_seconds=0.01, backoff_max_seconds=0.02),
    )

    poller.run()

    status = registry.get("default")
    assert status is not None
    assert status.running is False
    assert status.connected is False
    assert "authentication failed" in (status.last_error or "")
    assert status.last_start_at is not None
    assert status.last_stop_at is not None
    assert poller.state is PollerState.STOPPED


def test_run_polls_until_stopped(store, registry) -> None:
    poller: ImapPoller
    processor_calls: list[str] = []

    def processor(ctx: InboundContext) -> str | None:
        processor_calls.append(ctx.message_id)
        poller.stop()
        return "Reply"

    mailbox = StubMailbox([_raw(1)])
    poller = _poller(store, registry, processor, mailbox=mailbox)

    poller.run()

    assert processor_calls == ["<msg-1@example.com>"]
    assert mailbox.connect_calls == 1
    assert mailbox.closed
    status = registry.get("default")
    assert status is not None
    assert status.last_error is None
    assert status.running is False


@pytest.mark.parametrize(
    ("attempt", "expected"),
    [(0, 0.0), (1, 5.0), (2, 10.0), (3, 20.0), (6, 160.0), (7, 300.0), (20, 300.0)],
)
def test_backoff_delay_doubles_up_to_ceiling(attempt: int, expected: float) -> None:
    assert backoff_delay(attempt, 5.0, 300.0) == expected


class HistorySink(StatusRegistry):
    """Registry that also keeps every patch it received."""

    def __init__(self) -> None:
        super().__init__()
        self.history: list[dict[str, object]] = []

    def set_status(self, account_id: str, **changes) -> None:
        self.history.append(changes)
        super().set_status(account_id, **changes)


class FailingMailbox(StubMailbox):
    """Mailbox whose fetch breaks mid-cycle."""

    def __init__(self, error: Exception) -> None:
        super().__init__()
        self.error = error

    def fetch_since(self, last_uid: int | None, batch_size: int) -> list[MessageChunk]:
        raise self.error


@pytest.mark.parametrize(
    "error",
    [ImapError("connection reset"), StoreError("database is locked")],
)
def test_cycle_error_reconnects_and_keeps_watermark(store, error) -> None:
    store.update_checkpoint(last_uid=5, uid_validity=1, last_poll_time=None)
    sink = HistorySink()
    poller: ImapPoller
    seen: list[str] = []

    def processor(ctx: InboundContext) -> str | None:
        seen.append(ctx.message_id)
        poller.stop()
        return None

    broken = FailingMailbox(error)
    healthy = StubMailbox([_raw(5), _raw(6)])
    mailboxes = iter([broken, healthy])
    poller = ImapPoller(
        "default",
        _account(),
        store,
        lambda: next(mailboxes),
        MonitorDependencies(processor=processor, status_sink=sink),
        sync=SyncSettings(backoff_initial_seconds=0.01, backoff_max_seconds=0.02),
        transporter=RecordingTransporter(),  # type: ignore[arg-type]
        clock=lambda: NOW_MS,
    )

    poller.run()

    assert broken.closed
    assert healthy.connect_calls == 1
    assert seen == ["<msg-6@example.com>"]
    errors = [patch["last_error"] for patch in sink.history if patch.get("last_error")]
    assert any(str(error) in message for message in errors)
    assert {"connected": False, "last_error": errors[0]} in sink.history
    checkpoint = store.get_checkpoint()
    assert checkpoint is not None and checkpoint.last_uid == 6


def test_unexpected_cycle_error_does_not_end_the_monitor(store) -> None:
    sink = HistorySink()
    poller: ImapPoller

    def processor(ctx: InboundContext) -> str | None:
        poller.stop()
        return None

    broken = FailingMailbox(KeyError("surprise"))
    mailboxes = iter([broken, StubMailbox([_raw(1)])])
    poller = ImapPoller(
        "default",
        _account(),
        store,
        lambda: next(mailboxes),
        MonitorDependencies(processor=processor, status_sink=sink),
        sync=SyncSettings(backoff_initial_seconds=0.01, backoff_max_seconds=0.02),
        transporter=RecordingTransporter(),  # type: ignore[arg-type]
        clock=lambda: NOW_MS,
    )

    poller.run()

    assert broken.closed
    assert store.has_processed("<msg-1@example.com>")
    assert any("crashed" in str(patch.get("last_error")) for patch in sink.history)


def test_stop_takes_effect_between_messages(store, registry) -> None:
    poller: ImapPoller
    transporter = RecordingTransporter()

    def processor(ctx: InboundContext) -> str | None:
        poller.stop()
        return "Only this one"

    poller = _poller(store, registry, processor, transporter=transporter)

    report = poller.poll_once(
        StubMailbox(
            [_raw(1), _raw(2, sender="bob@example.com"), _raw(3, sender="c@x.com")]
        )
    )

    assert [message.body for message in transporter.sent] == ["Only this one"]
    assert report.fetched == 1
    assert report.new_last_uid == 1
    assert not store.has_processed("<msg-2@example.com>")
    checkpoint = store.get_checkpoint()
    assert checkpoint is not None and checkpoint.last_uid == 1


def test_crafted_subject_does_not_break_the_cycle(store, registry) -> None:
    transporter = RecordingTransporter()
    poller = _poller(store, registry, RecordingProcessor(), transporter=transporter)

    report = poller.poll_once(
        StubMailbox([_raw(1, subject="=?utf-8?q?Hi=0ABcc:_x?=")])
    )

    assert report.replied == 1
    (sent,) = transporter.sent
    assert "\n" not in sent.subject
    assert sent.subject.startswith("Re: Hi")


def test_message_errors_are_contained_per_message(store, registry) -> None:
    class ExplodingTransporter(RecordingTransporter):
        def send(self, message: OutgoingEmail) -> None:
            if message.to == "alice@example.com":
                raise RuntimeError("encoder exploded")
            super().send(message)

    transporter = ExplodingTransporter()
    poller = _poller(store, registry, RecordingProcessor(), transporter=transporter)

    report = poller.poll_once(
        StubMailbox([_raw(1), _raw(2, sender="bob@example.com")])
    )

    assert report.failed == 1
    assert report.new_last_uid == 2
    assert [message.to for message in transporter.sent] == ["bob@example.com"]
    status = registry.get("default")
    assert status is not None
    assert "encoder exploded" in (status.last_error or "")


def test_empty_payload_advances_watermark(store, registry) -> None:
    processor = RecordingProcessor()
    poller = _poller(store, registry, processor)

    report = poller.poll_once(StubMailbox([MessageChunk(uid=4, raw=b"")]))

    assert processor.contexts == []
    assert report.failed == 1
    assert report.new_last_uid == 4


def test_synthetic_ids_follow_uid_validity(store, registry) -> None:
    processor = RecordingProcessor()
    poller = _poller(store, registry, processor)
    payload = b"From: bob@example.com\r\nSubject: Hi\r\n\r\nBody\r\n"

    poller.poll_once(StubMailbox([MessageChunk(uid=1, raw=payload)], uid_validity=1))
    poller.poll_once(StubMailbox([MessageChunk(uid=1, raw=payload)], uid_validity=2))

    assert [ctx.message_id for ctx in processor.contexts] == [
        "<uid.1.1@INBOX>",
        "<uid.2.1@INBOX>",
    ]
