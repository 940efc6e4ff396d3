"""Utilities for parsing raw RFC822 messages into structured models."""

from __future__ import annotations

import html
import re
from collections.abc import Iterable
from datetime import datetime
from email import policy
from email.errors import MessageError
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime

from ..core.models import ParsedMessage

_TAG_RE = re.compile(r"<[^>]+>")
_BLANK_RUN_RE = re.compile(r"\n{3,}")
_LINE_BREAK_RE = re.compile(r"\s*[\r\n]+\s*")


class MessageParseError(ValueError):
    """Raised when a fetched payload cannot be turned into a message."""


class EmailParser:
    """Convert raw email payloads into normalized messages."""

    def __init__(self) -> None:
        """Prepare internal parser instance."""
        self._parser = BytesParser(policy=policy.default)

    def parse(
        self,
        uid: int,
        payload: bytes,
        mailbox: str,
        uid_validity: int | None = None,
    ) -> ParsedMessage:
        """Parse raw RFC822 bytes into a :class:`ParsedMessage`.

        Messages without a Message-ID get ``<uid.VALIDITY.UID@mailbox>`` so the
        identifier stays unique across a UIDVALIDITY reset.
        """
        try:
            message = self._parser.parsebytes(payload)
            return self._build(uid, message, mailbox, uid_validity)
        except MessageParseError:
            raise
        except (MessageError, LookupError, TypeError, ValueError) as exc:
            raise MessageParseError(f"Unable to parse message UID {uid}: {exc}") from exc

    def _build(
        self,
        uid: int,
        message: EmailMessage,
        mailbox: str,
        uid_validity: int | None,
    ) -> ParsedMessage:
        sender_name, sender = _take_first_address(message.get("From"))
        if not sender:
            raise MessageParseError(f"Message UID {uid} has no sender address")

        message_id = _first_token(message.get("Message-ID")) or _synthetic_id(
            uid, mailbox, uid_validity
        )
        text_body, html_body = _extract_bodies(message)
        if text_body is None and html_body is not None:
            text_body = _html_to_text(html_body)

        return ParsedMessage(
            uid=uid,
            message_id=message_id,
            sender=sender.strip().lower(),
            sender_name=sender_name or None,
            to=tuple(_extract_addresses(message.get_all("To", []))),
            cc=tuple(_extract_addresses(message.get_all("Cc", []))),
            subject=_single_line(message.get("Subject")),
            text_body=text_body or "",
            html_body=html_body,
            date=_try_parse_datetime(message.get("Date")),
            in_reply_to=_first_token(message.get("In-Reply-To")),
            references=tuple(str(message.get("References") or "").split()),
            headers={key.lower(): str(value) for key, value in message.items()},
        )


def _extract_addresses(headers: Iterable[str]) -> Iterable[str]:
    for _, email_address in getaddresses([str(header) for header in headers]):
        if email_address:
            yield email_address


def _take_first_address(header_value: str | None) -> tuple[str, str]:
    if header_value is None:
        return "", ""
    for name, address in getaddresses([str(header_value)]):
        if address:
            return name, address
    return "", ""


def _synthetic_id(uid: int, mailbox: str, uid_validity: int | None) -> str:
    if uid_validity is None:
        return f"<uid.{uid}@{mailbox}>"
    return f"<uid.{uid_validity}.{uid}@{mailbox}>"


def _single_line(header_value: str | None) -> str:
    return _LINE_BREAK_RE.sub(" ", str(header_value or "")).strip()


def _first_token(header_value: str | None) -> str | None:
    if header_value is None:
        return None
    tokens = str(header_value).split()
    return tokens[0] if tokens else None


def _collapse_chunks(chunks: Iterable[str], separator: str) -> str | None:
    filtered_chunks = [chunk for chunk in chunks if chunk]
    if not filtered_chunks:
        return None
    return separator.join(filtered_chunks)


def _extract_bodies(message: EmailMessage) -> tuple[str | None, str | None]:
    plain_chunks: list[str] = []
    html_chunks: list[str] = []

    for part in message.walk():
        if part.is_multipart():
            continue
        if part.get_content_disposition() == "attachment":
            continue
        content_type = part.get_content_type()
        if content_type not in ("text/plain", "text/html"):
            continue
        try:
            content_obj = part.get_content()
        except LookupError:
            continue
        if not isinstance(content_obj, str):
            continue
        content = content_obj.strip()
        if content_type == "text/plain":
            plain_chunks.append(content)
        else:
            html_chunks.append(content)

    text = _collapse_chunks(plain_chunks, "\n\n")
    html_text = _collapse_chunks(html_chunks, "\n")
    return text, html_text


def _html_to_text(markup: str) -> str:
    text = re.sub(r"(?i)<br\s*/?>|</p>", "\n", markup)
    text = html.unescape(_TAG_RE.sub("", text))
    return _BLANK_RUN_RE.sub("\n\n", text).strip()


def _try_parse_datetime(header_value: str | None) -> datetime | None:
    if header_value is None:
        return None
    try:
        return parsedate_to_datetime(str(header_value))
    except (TypeError, ValueError):
        return None


__all__ = ["EmailParser", "MessageParseError"]
