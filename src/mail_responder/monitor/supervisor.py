"""Run one poller thread per configured account."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from ..core.config import AccountSettings, AppSettings
from ..core.interfaces import MailboxProvider, MessageStateStore
from ..storage.sqlite import SqliteStateStore, StoreError
from ..transport.imap_client import ImapClient
from ..transport.smtp_client import SmtpClient
from .poller import ImapPoller, MonitorDependencies

LOGGER = logging.getLogger(__name__)

StoreFactory = Callable[[str, AccountSettings], MessageStateStore]
MailboxFactory = Callable[[AccountSettings], MailboxProvider]
TransporterFactory = Callable[[AccountSettings], SmtpClient]


@dataclass(slots=True)
class _RunningPoller:
    poller: ImapPoller
    thread: threading.Thread


class MonitorSupervisor:
    """Start, stop, and restart isolated pollers for each account."""

    def __init__(
        self,
        settings: AppSettings,
        dependencies: MonitorDependencies,
        *,
        store_factory: StoreFactory | None = None,
        mailbox_factory: MailboxFactory | None = None,
        transporter_factory: TransporterFactory | None = None,
    ) -> None:
        self._settings = settings
        self._deps = dependencies
        self._store_factory = store_factory or self._default_store
        self._mailbox_factory = mailbox_factory or (
            lambda account: ImapClient(account.imap, account.folder)
        )
        self._transporter_factory = transporter_factory or (
            lambda account: SmtpClient(account.smtp)
        )
        self._pollers: dict[str, _RunningPoller] = {}
        self._lock = threading.Lock()

    def start_all(self) -> list[str]:
        """Start a poller for every enabled and configured account."""
        started: list[str] = []
        for account_id, account in self._settings.enabled_accounts().items():
            if self.start_account(account_id, account):
                started.append(account_id)
        if not started:
            LOGGER.warning("No enabled email accounts are configured")
        return started

    def start_account(self, account_id: str, account: AccountSettings) -> bool:
        """Start monitoring ``account``; return ``False`` if it could not start."""
        with self._lock:
            if account_id in self._pollers:
                LOGGER.debug("Poller for %s already running", account_id)
                return False
            try:
                store = self._store_factory(account_id, account)
            except StoreError as exc:
                LOGGER.error("Cannot open state store for %s: %s", account_id, exc)
                self._deps.status_sink.set_status(
                    account_id, running=False, last_error=str(exc)
                )
                return False

            poller = ImapPoller(
                account_id,
                account,
                store,
                lambda: self._mailbox_factory(account),
                self._deps,
                sync=self._settings.sync,
                transporter=self._transporter_factory(account),
            )
            thread = threading.Thread(
                target=self._run,
                args=(poller, store),
                name=f"mail-poller-{account_id}",
                daemon=True,
            )
            self._pollers[account_id] = _RunningPoller(poller=poller, thread=thread)
            thread.start()
        LOGGER.info("Started poller for account %s", account_id)
        return True

    def stop_account(self, account_id: str, timeout: float | None = None) -> bool:
        """Signal ``account_id``'s poller and wait for it to finish."""
        with self._lock:
            running = self._pollers.pop(account_id, None)
        if running is None:
            return False
        running.poller.stop()
        running.thread.join(timeout)
        if running.thread.is_alive():
            LOGGER.warning("Poller for %s did not stop within %ss", account_id, timeout)
        return True

    def restart_account(
        self, account_id: str, account: AccountSettings, timeout: float | None = None
    ) -> bool:
        """Replace a running poller after its configuration changed."""
        self.stop_account(account_id, timeout)
        return self.start_account(account_id, account)

    def stop_all(self, timeout: float | None = None) -> None:
        for account_id in self.running_accounts():
            self.stop_account(account_id, timeout)

    def running_accounts(self) -> list[str]:
        with self._lock:
            return sorted(self._pollers)

    def _run(self, poller: ImapPoller, store: MessageStateStore) -> None:
        try:
            poller.run()
        except Exception:  # pylint: disable=broad-except
            LOGGER.exception("Poller for %s crashed", poller.account_id)
            self._deps.status_sink.set_status(
                poller.account_id,
                running=False,
                connected=False,
                last_error="Poller crashed unexpectedly",
            )
        finally:
            store.close()
            with self._lock:
                running = self._pollers.get(poller.account_id)
                if running is not None and running.poller is poller:
                    del self._pollers[poller.account_id]

    def _default_store(
        self, account_id: str, account: AccountSettings
    ) -> MessageStateStore:
        return SqliteStateStore(self._settings.storage, account_id, account.folder)


__all__ = ["MonitorSupervisor"]
