"""IMAP transport adapter providing mailbox access."""

from __future__ import annotations

import imaplib
import logging
from collections.abc import Iterable, Iterator
from types import TracebackType

from ..core.config import ImapSettings
from ..core.interfaces import MailboxProvider
from ..core.models import MessageChunk

LOGGER = logging.getLogger(__name__)


class ImapError(RuntimeError):
    """Wrap low level IMAP errors with additional context."""


class ImapClient(MailboxProvider):
    """Thin wrapper around ``imaplib`` offering typed fetch helpers."""

    def __init__(self, settings: ImapSettings, mailbox: str = "INBOX") -> None:
        """Initialise the client with configuration settings and mailbox."""
        self._settings = settings
        self._connection: imaplib.IMAP4 | imaplib.IMAP4_SSL | None = None
        self._uid_validity: int | None = None
        self.mailbox = mailbox

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> ImapClient:
        """Connect on entering a context manager scope."""
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure resources are released on context exit."""
        self.close()

    # Public API ---------------------------------------------------------------
    @property
    def connected(self) -> bool:
        return self._connection is not None

    @property
    def uid_validity(self) -> int | None:
        """UIDVALIDITY reported when the mailbox was selected."""
        return self._uid_validity

    def connect(self) -> None:
        """Establish IMAP connection and select the configured mailbox."""
        if self._connection is not None:
            return

        username = self._settings.username
        password = self._settings.password
        if not self._settings.host:
            raise ImapError("IMAP host is not configured")
        if username is None or password is None:
            raise ImapError("IMAP credentials are not configured")

        connection: imaplib.IMAP4 | imaplib.IMAP4_SSL | None = None
        try:
            if self._settings.use_ssl:
                LOGGER.debug(
                    "Connecting to IMAP host %s:%s via SSL",
                    self._settings.host,
                    self._settings.port,
                )
                connection = imaplib.IMAP4_SSL(
                    self._settings.host,
                    self._settings.port,
                    timeout=self._settings.timeout_seconds,
                )
            else:
                LOGGER.debug(
                    "Connecting to IMAP host %s:%s without SSL",
                    self._settings.host,
                    self._settings.port,
                )
                connection = imaplib.IMAP4(
                    self._settings.host,
                    self._settings.port,
                    timeout=self._settings.timeout_seconds,
                )

            LOGGER.debug("Authenticating as %s", username)
            connection.login(username, password)
            self._connection = connection
            self._select()
        except imaplib.IMAP4.error as exc:
            self._discard(connection)
            raise ImapError(f"Failed to connect to IMAP server: {exc}") from exc
        except OSError as exc:
            self._discard(connection)
            raise ImapError(f"Network error talking to IMAP server: {exc}") from exc
        except ImapError:
            self._discard(connection)
            raise

    def highest_uid(self) -> int | None:
        """Return the largest UID in the selected mailbox."""
        connection = self._require_connection()
        try:
            status, data = connection.uid("SEARCH", None, "ALL")  # type: ignore[arg-type]
        except (imaplib.IMAP4.error, OSError) as exc:
            raise ImapError("IMAP error while searching for message UIDs") from exc
        if status != "OK":
            raise ImapError("Failed to search for message UIDs")
        uids = _parse_uids(data)
        return max(uids) if uids else None

    def fetch_since(
        self, last_uid: int | None, batch_size: int
    ) -> Iterable[MessageChunk]:
        """Yield messages whose UID exceeds ``last_uid`` in ascending order."""
        connection = self._require_connection()
        start_uid = 1 if last_uid is None else last_uid + 1
        LOGGER.debug("Searching for messages from UID %s", start_uid)
        try:
            status, data = connection.uid("SEARCH", None, f"{start_uid}:*")  # type: ignore[arg-type]
        except (imaplib.IMAP4.error, OSError) as exc:
            raise ImapError("IMAP error while searching for message UIDs") from exc
        if status != "OK":
            raise ImapError("Failed to search for message UIDs")

        # "N:*" always matches the highest UID, even when it is below N.
        uids = [uid for uid in _parse_uids(data) if uid >= start_uid]
        if not uids:
            LOGGER.debug("No new messages found")
            return []

        def generator() -> Iterator[MessageChunk]:
            for chunk in _chunked(sorted(uids), batch_size):
                for uid in chunk:
                    uid_str = str(uid)
                    LOGGER.debug("Fetching RFC822 payload for UID %s", uid_str)
                    try:
                        status_fetch, fetch_data = connection.uid(
                            "FETCH", uid_str, "(RFC822)"
                        )
                    except (imaplib.IMAP4.error, OSError) as exc:
                        raise ImapError(
                            f"IMAP error while fetching UID {uid_str}"
                        ) from exc
                    if status_fetch != "OK":
                        raise ImapError(f"Failed to fetch message UID {uid_str}")
                    payload = _extract_rfc822(fetch_data)
                    if payload is None:
                        LOGGER.warning("No RFC822 payload returned for UID %s", uid_str)
                        payload = b""
                    yield MessageChunk(uid=uid, raw=payload)

        return generator()

    def close(self) -> None:
        """Terminate the IMAP session cleanly."""
        if self._connection is None:
            return
        connection = self._connection
        self._connection = None
        try:
            LOGGER.debug("Closing IMAP connection")
            connection.close()
        except (imaplib.IMAP4.error, OSError):
            LOGGER.debug("IMAP close raised; continuing with logout")
        finally:
            try:
                connection.logout()
            except (imaplib.IMAP4.error, OSError):
                LOGGER.debug("IMAP logout raised; suppressing during shutdown")

    # Internal helpers ---------------------------------------------------------
    def _select(self) -> None:
        connection = self._require_connection()
        status, _ = connection.select(self.mailbox)
        if status != "OK":
            raise ImapError(f"Unable to select mailbox '{self.mailbox}'")
        _, validity = connection.response("UIDVALIDITY")
        self._uid_validity = _parse_uid_validity(validity)

    def _discard(self, connection: imaplib.IMAP4 | None) -> None:
        self._connection = None
        if connection is None:
            return
        try:
            connection.logout()
        except (imaplib.IMAP4.error, OSError):
            LOGGER.debug("IMAP logout failed while discarding connection")

    def _require_connection(self) -> imaplib.IMAP4 | imaplib.IMAP4_SSL:
        if self._connection is None:
            raise ImapError("IMAP connection has not been established")
        return self._connection


def _parse_uids(data: list[bytes | None] | None) -> list[int]:
    raw_ids = data[0].split() if data and data[0] else []
    return [int(raw) for raw in raw_ids]


def _parse_uid_validity(values: list[bytes | None] | None) -> int | None:
    for value in values or []:
        if value is None:
            continue
        try:
            return int(value)
        except ValueError:
            LOGGER.debug("Ignoring malformed UIDVALIDITY %r", value)
    return None


def _chunked(items: Iterable[int], size: int) -> Iterator[list[int]]:
    """Yield successive lists of ``size`` elements."""
    bucket: list[int] = []
    for item in items:
        bucket.append(item)
        if len(bucket) >= size:
            yield bucket
            bucket = []
    if bucket:
        yield bucket


def _extract_rfc822(fetch_data: list[tuple[bytes, bytes] | bytes]) -> bytes | None:
    """Extract RFC822 payload from ``imaplib`` response chunks."""
    for entry in fetch_data:
        if isinstance(entry, tuple) and len(entry) == 2:
            return entry[1]
    return None


__all__ = [
    "ImapClient",
    "ImapError",
]
