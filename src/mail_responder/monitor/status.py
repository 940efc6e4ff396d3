"""Thread-safe registry of per-account runtime status."""

from __future__ import annotations

import logging
from dataclasses import fields, replace
from threading import Lock
from typing import Any

from ..core.datetime_utils import serialize_datetime
from ..core.interfaces import StatusSink
from ..core.models import AccountStatus

LOGGER = logging.getLogger(__name__)

_STATUS_FIELDS = frozenset(field.name for field in fields(AccountStatus)) - {
    "account_id"
}


class StatusRegistry(StatusSink):
    """Collect status patches from every poller thread."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._statuses: dict[str, AccountStatus] = {}

    def set_status(self, account_id: str, **changes: Any) -> None:
        """Merge ``changes`` into the stored status for ``account_id``."""
        unknown = set(changes) - _STATUS_FIELDS
        if unknown:
            raise ValueError(f"Unknown status fields: {', '.join(sorted(unknown))}")
        with self._lock:
            current = self._statuses.get(account_id) or AccountStatus(account_id)
            self._statuses[account_id] = replace(current, **changes)
        LOGGER.debug("Status update for %s: %s", account_id, changes)

    def get(self, account_id: str) -> AccountStatus | None:
        with self._lock:
            return self._statuses.get(account_id)

    def snapshot(self) -> list[AccountStatus]:
        """Return a copy of every known status ordered by account id."""
        with self._lock:
            return [self._statuses[key] for key in sorted(self._statuses)]


def status_to_dict(status: AccountStatus) -> dict[str, Any]:
    """Serialise a status into the camelCase layout used by the HTTP API."""
    return {
        "accountId": status.account_id,
        "running": status.running,
        "connected": status.connected,
        "lastStartAt": serialize_datetime(status.last_start_at),
        "lastStopAt": serialize_datetime(status.last_stop_at),
        "lastError": status.last_error,
        "lastPollAt": serialize_datetime(status.last_poll_at),
        "lastInboundAt": serialize_datetime(status.last_inbound_at),
        "lastOutboundAt": serialize_datetime(status.last_outbound_at),
    }


__all__ = ["StatusRegistry", "status_to_dict"]
