"""Tests for the admission filter pipeline."""

from __future__ import annotations

import pytest

from mail_responder.core.config import AccountSettings, ImapSettings
from mail_responder.core.models import FilterVerdict, ParsedMessage
from mail_responder.ingestion.filters import (
    evaluate_message,
    matches_sender,
    normalize_email_address,
)


def _message(sender: str, headers: dict[str, str] | None = None) -> ParsedMessage:
    return ParsedMessage(
        uid=1,
        message_id="<m1@example.com>",
        sender=sender,
        sender_name=None,
        to=("bot@example.org",),
        cc=(),
        subject="Hello",
        text_body="Body",
        html_body=None,
        date=None,
        in_reply_to=None,
        references=(),
        headers=headers or {},
    )


def _account(**overrides) -> AccountSettings:
    return AccountSettings(imap=ImapSettings(username="bot@example.org"), **overrides)


@pytest.mark.parametrize("mode", ["open", "allowlist", "blocklist"])
def test_auto_submitted_rejected_in_every_mode(mode: str) -> None:
    account = _account(filter_mode=mode, allow_from=["a@x.com"])
    message = _message("a@x.com", {"auto-submitted": "auto-replied"})

    decision = evaluate_message(message, account)

    assert decision.verdict is FilterVerdict.REJECT
    assert "auto-submitted" in decision.reason


def test_auto_submitted_no_is_not_an_auto_reply() -> None:
    decision = evaluate_message(
        _message("person@example.com", {"Auto-Submitted": "no"}), _account()
    )

    assert decision.verdict is FilterVerdict.ADMIT


@pytest.mark.parametrize(
    "headers",
    [
        {"x-auto-reply": "yes"},
        {"X-Autoreply": "yes"},
        {"x-autorespond": "1"},
        {"precedence": "bulk"},
        {"Precedence": "List"},
        {"precedence": "junk"},
    ],
)
def test_loop_headers_are_rejected(headers: dict[str, str]) -> None:
    decision = evaluate_message(_message("person@example.com", headers), _account())

    assert decision.verdict is FilterVerdict.REJECT


@pytest.mark.parametrize(
    "sender",
    [
        "noreply@example.com",
        "No-Reply@example.com",
        "MAILER-DAEMON@example.com",
        "postmaster@example.com",
        "bounces+123@example.com",
        "notifications@example.com",
    ],
)
def test_machine_senders_are_rejected(sender: str) -> None:
    decision = evaluate_message(_message(sender), _account())

    assert decision.verdict is FilterVerdict.REJECT
    assert "machine sender" in decision.reason


def test_own_address_is_rejected() -> None:
    decision = evaluate_message(_message("Bot@Example.org"), _account())

    assert decision.verdict is FilterVerdict.REJECT


def test_allowlist_is_case_insensitive() -> None:
    account = _account(filter_mode="allowlist", allow_from=["a@x.com"])

    assert evaluate_message(_message("A@X.com"), account).admitted
    rejected = evaluate_message(_message("b@x.com"), account)
    assert rejected.verdict is FilterVerdict.REJECT
    assert "allowFrom" in rejected.reason


def test_blocklist_rejects_listed_senders_only() -> None:
    account = _account(filter_mode="blocklist", block_from=["email:spam@x.com"])

    assert evaluate_message(_message("SPAM@x.com"), account).verdict is (
        FilterVerdict.REJECT
    )
    assert evaluate_message(_message("friend@x.com"), account).admitted


def test_pairing_policy_holds_unknown_senders() -> None:
    account = _account(dm_policy="pairing", allow_from=["known@x.com"])

    held = evaluate_message(_message("stranger@x.com"), account)
    assert held.verdict is FilterVerdict.NEEDS_PAIRING
    assert evaluate_message(_message("known@x.com"), account).admitted


def test_dm_allowlist_policy_rejects_unknown_senders() -> None:
    account = _account(dm_policy="allowlist", allow_from=["known@x.com"])

    assert evaluate_message(_message("stranger@x.com"), account).verdict is (
        FilterVerdict.REJECT
    )


def test_sender_patterns_support_globs_and_domains() -> None:
    assert matches_sender("ann@corp.example", ["*@corp.example"])
    assert matches_sender("ann@corp.example", ["@corp.example"])
    assert not matches_sender("ann@other.example", ["@corp.example"])
    assert normalize_email_address(" Email:Ann@Corp.Example ") == "ann@corp.example"
