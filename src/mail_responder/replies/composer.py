"""Subject and threading header helpers for replies."""

from __future__ import annotations

import re
from collections.abc import Iterable

from ..core.models import ThreadInfo

DEFAULT_REPLY_PREFIX = "Re: "

_LINE_BREAK_RE = re.compile(r"\s*[\r\n]+\s*")


def build_thread_info(
    message_id: str,
    in_reply_to: str | None = None,
    references: Iterable[str] = (),
) -> ThreadInfo:
    """Return headers that thread a reply under ``message_id``.

    ``in_reply_to`` and ``references`` describe the original message's own
    position in its thread; the original id is appended to the chain. When
    the original carries no ``References`` its ``In-Reply-To`` seeds the chain.
    """
    ancestors = tuple(references) or ((in_reply_to,) if in_reply_to else ())
    chain: list[str] = []
    for reference in (*ancestors, message_id):
        if reference and reference not in chain:
            chain.append(reference)
    return ThreadInfo(
        message_id=message_id,
        in_reply_to=message_id,
        references=tuple(chain),
    )


def build_reply_subject(subject: str | None, prefix: str = DEFAULT_REPLY_PREFIX) -> str:
    """Prefix ``subject`` unless it already carries the prefix.

    CR and LF runs are folded into single spaces.
    """
    original = _LINE_BREAK_RE.sub(" ", subject or "").strip()
    if not original:
        return f"{prefix}(no subject)"
    marker = prefix.strip().lower()
    if marker and original.lower().startswith(marker):
        return original
    return f"{prefix}{original}"


__all__ = ["DEFAULT_REPLY_PREFIX", "build_reply_subject", "build_thread_info"]
