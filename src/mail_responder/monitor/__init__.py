"""Mailbox monitoring: pollers, supervision, and status reporting."""

from .poller import ImapPoller, MonitorDependencies, PollerState
from .status import StatusRegistry
from .supervisor import MonitorSupervisor

__all__ = [
    "ImapPoller",
    "MonitorDependencies",
    "MonitorSupervisor",
    "PollerState",
    "StatusRegistry",
]
