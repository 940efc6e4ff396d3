"""Tests for reply subject and threading helpers."""

from __future__ import annotations

import pytest

from mail_responder.replies import build_reply_subject, build_thread_info


def test_thread_info_appends_original_id() -> None:
    info = build_thread_info("m2", references=["m1"])

    assert info.references == ("m1", "m2")
    assert info.in_reply_to == "m2"
    assert info.message_id == "m2"


def test_thread_info_deduplicates_preserving_order() -> None:
    info = build_thread_info("m3", references=["m1", "m2", "m1", "m3"])

    assert info.references == ("m1", "m2", "m3")


def test_thread_info_falls_back_to_in_reply_to() -> None:
    info = build_thread_info("m2", in_reply_to="m1")

    assert info.references == ("m1", "m2")


@pytest.mark.parametrize(
    ("subject", "expected"),
    [
        ("Hi", "Re: Hi"),
        ("Re: Hi", "Re: Hi"),
        ("RE: Hi", "RE: Hi"),
        ("  re:Hi ", "re:Hi"),
        ("", "Re: (no subject)"),
        (None, "Re: (no subject)"),
    ],
)
def test_reply_subject_is_not_prefixed_twice(subject, expected) -> None:
    assert build_reply_subject(subject, "Re: ") == expected


def test_custom_prefix() -> None:
    assert build_reply_subject("Order", "AW: ") == "AW: Order"
    assert build_reply_subject("aw: Order", "AW: ") == "aw: Order"


def test_reply_subject_folds_line_breaks() -> None:
    subject = build_reply_subject("Hi\r\nBcc: victim@example.com", "Re: ")

    assert subject == "Re: Hi Bcc: victim@example.com"
    assert "\n" not in subject and "\r" not in subject
