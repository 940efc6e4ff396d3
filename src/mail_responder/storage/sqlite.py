"""SQLite-backed dedup, rate-limit, and watermark store."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from threading import Lock
from types import TracebackType

from ..core.config import StorageSettings
from ..core.datetime_utils import epoch_millis
from ..core.interfaces import MessageStateStore
from ..core.models import PollCheckpoint, ProcessedMessageStore

LOGGER = logging.getLogger(__name__)

RATE_LIMIT_WINDOW_MS = 60 * 60 * 1000


class StoreError(RuntimeError):
    """Raised when persisted state cannot be read or written."""


class SqliteStateStore(MessageStateStore):
    """Persist processed Message-IDs and reply timestamps for one account.

    Every mutating call commits before it returns, so a crash can lose at
    most the message currently being handled.
    """

    def __init__(
        self,
        settings: StorageSettings,
        account_id: str,
        folder: str = "INBOX",
    ) -> None:
        """Open the database and apply migrations."""
        self._settings = settings
        self.account_id = account_id
        self.folder = folder
        self._lock = Lock()
        db_path = Path(settings.db_path)
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(
                db_path,
                timeout=30.0,
                check_same_thread=False,
            )
            self._connection.row_factory = sqlite3.Row
            self._apply_migrations()
        except (OSError, sqlite3.Error) as exc:
            raise StoreError(f"Unable to open state database {db_path}") from exc

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> SqliteStateStore:
        """Enter context manager scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure the connection is closed when exiting context manager."""
        self.close()

    # Dedup -------------------------------------------------------------------
    def has_processed(self, message_id: str) -> bool:
        """Return ``True`` if ``message_id`` was already admitted."""
        with self._transaction("read processed messages") as connection:
            row = connection.execute(
                """
                SELECT 1 FROM processed_messages
                WHERE account_id = ? AND message_id = ?
                """,
                (self.account_id, message_id),
            ).fetchone()
        return row is not None

    def mark_processed(self, message_id: str) -> None:
        """Record ``message_id``, evicting the oldest beyond the cap."""
        self.claim(message_id)

    def claim(self, message_id: str) -> bool:
        """Check and record ``message_id`` in a single transaction."""
        with self._transaction("record processed message") as connection:
            cursor = connection.execute(
                """
                INSERT OR IGNORE INTO processed_messages
                    (account_id, message_id, processed_at)
                VALUES (?, ?, ?)
                """,
                (self.account_id, message_id, epoch_millis()),
            )
            claimed = cursor.rowcount == 1
            if claimed:
                connection.execute(
                    """
                    DELETE FROM processed_messages
                    WHERE account_id = ? AND id NOT IN (
                        SELECT id FROM processed_messages
                        WHERE account_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                    )
                    """,
                    (
                        self.account_id,
                        self.account_id,
                        self._settings.max_processed_ids,
                    ),
                )
        if claimed:
            LOGGER.debug("Recorded message %s for %s", message_id, self.account_id)
        return claimed

    # Rate limiting -----------------------------------------------------------
    def allow_reply(self, sender: str, now_ms: int, max_per_hour: int) -> bool:
        """Prune stale timestamps for ``sender`` and compare against the budget."""
        cutoff = now_ms - RATE_LIMIT_WINDOW_MS
        with self._transaction("check rate limit") as connection:
            connection.execute(
                """
                DELETE FROM sender_replies
                WHERE account_id = ? AND sender = ? AND sent_at < ?
                """,
                (self.account_id, sender, cutoff),
            )
            count = connection.execute(
                """
                SELECT COUNT(*) FROM sender_replies
                WHERE account_id = ? AND sender = ?
                """,
                (self.account_id, sender),
            ).fetchone()[0]
        allowed = count < max_per_hour
        if not allowed:
            LOGGER.debug(
                "Rate limit reached for %s (%s/%s in the last hour)",
                sender,
                count,
                max_per_hour,
            )
        return allowed

    def record_reply(self, sender: str, now_ms: int) -> None:
        """Append a reply timestamp and evict the least recently seen senders."""
        with self._transaction("record reply") as connection:
            latest = connection.execute(
                """
                SELECT MAX(sent_at) FROM sender_replies
                WHERE account_id = ? AND sender = ?
                """,
                (self.account_id, sender),
            ).fetchone()[0]
            timestamp = max(now_ms, latest) if latest is not None else now_ms
            connection.execute(
                """
                INSERT INTO sender_replies (account_id, sender, sent_at)
                VALUES (?, ?, ?)
                """,
                (self.account_id, sender, timestamp),
            )
            connection.execute(
                """
                DELETE FROM sender_replies
                WHERE account_id = ? AND sender NOT IN (
                    SELECT sender FROM sender_replies
                    WHERE account_id = ?
                    GROUP BY sender
                    ORDER BY MAX(sent_at) DESC
                    LIMIT ?
                )
                """,
                (
                    self.account_id,
                    self.account_id,
                    self._settings.max_tracked_senders,
                ),
            )

    def prune_rate_limits(self, now_ms: int) -> int:
        """Drop every timestamp that fell out of the rate-limit window."""
        with self._transaction("prune rate limits") as connection:
            cursor = connection.execute(
                "DELETE FROM sender_replies WHERE account_id = ? AND sent_at < ?",
                (self.account_id, now_ms - RATE_LIMIT_WINDOW_MS),
            )
        return cursor.rowcount

    # Watermark ---------------------------------------------------------------
    def get_checkpoint(self) -> PollCheckpoint | None:
        """Return the stored watermark for this account and folder."""
        with self._transaction("read checkpoint") as connection:
            row = connection.execute(
                """
                SELECT last_uid, uid_validity, last_poll_time FROM poll_state
                WHERE account_id = ? AND folder = ?
                """,
                (self.account_id, self.folder),
            ).fetchone()
        if row is None:
            return None
        return PollCheckpoint(
            account_id=self.account_id,
            folder=self.folder,
            last_uid=row["last_uid"],
            uid_validity=row["uid_validity"],
            last_poll_time=row["last_poll_time"],
        )

    def update_checkpoint(
        self,
        *,
        last_uid: int | None,
        uid_validity: int | None,
        last_poll_time: int | None,
    ) -> None:
        """Persist the supplied watermark."""
        LOGGER.debug(
            "Updating checkpoint account=%s folder=%s last_uid=%s",
            self.account_id,
            self.folder,
            last_uid,
        )
        with self._transaction("write checkpoint") as connection:
            connection.execute(
                """
                INSERT INTO poll_state
                    (account_id, folder, last_uid, uid_validity, last_poll_time)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(account_id, folder) DO UPDATE SET
                    last_uid = excluded.last_uid,
                    uid_validity = excluded.uid_validity,
                    last_poll_time = COALESCE(
                        excluded.last_poll_time, poll_state.last_poll_time
                    )
                """,
                (self.account_id, self.folder, last_uid, uid_validity, last_poll_time),
            )

    def snapshot(self) -> ProcessedMessageStore:
        """Return the stored state in its exchange layout."""
        with self._transaction("read snapshot") as connection:
            processed = [
                row["message_id"]
                for row in connection.execute(
                    """
                    SELECT message_id FROM processed_messages
                    WHERE account_id = ? ORDER BY id
                    """,
                    (self.account_id,),
                )
            ]
            rate_limits: dict[str, list[int]] = {}
            for row in connection.execute(
                """
                SELECT sender, sent_at FROM sender_replies
                WHERE account_id = ? ORDER BY sender, sent_at, id
                """,
                (self.account_id,),
            ):
                rate_limits.setdefault(row["sender"], []).append(row["sent_at"])
            poll_row = connection.execute(
                """
                SELECT last_poll_time FROM poll_state
                WHERE account_id = ? AND folder = ?
                """,
                (self.account_id, self.folder),
            ).fetchone()
        return ProcessedMessageStore(
            processed_ids=processed,
            rate_limits=rate_limits,
            last_poll_time=poll_row["last_poll_time"] if poll_row else None,
        )

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        self._connection.close()

    # Internal helpers --------------------------------------------------------
    @contextmanager
    def _transaction(self, action: str) -> Iterator[sqlite3.Connection]:
        try:
            with self._lock, self._connection:
                yield self._connection
        except sqlite3.Error as exc:
            LOGGER.error("State store failed to %s: %s", action, exc)
            raise StoreError(f"Failed to {action}") from exc

    def _apply_migrations(self) -> None:
        schema_dir = Path(__file__).resolve().parent / "schema"
        for migration in sorted(schema_dir.glob("*.sql")):
            LOGGER.debug("Applying migration %s", migration.name)
            script = migration.read_text(encoding="utf-8")
            with self._connection:
                self._connection.executescript(script)
        with self._connection:
            self._connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_sender_replies_lookup
                ON sender_replies(account_id, sender, sent_at)
                """
            )


__all__ = ["RATE_LIMIT_WINDOW_MS", "SqliteStateStore", "StoreError"]
