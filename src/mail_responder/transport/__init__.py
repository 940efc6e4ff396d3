"""Transport adapters for IMAP and SMTP servers."""

from .imap_client import ImapClient, ImapError
from .smtp_client import OutgoingEmail, SmtpClient, SmtpError, send_email

__all__ = [
    "ImapClient",
    "ImapError",
    "OutgoingEmail",
    "SmtpClient",
    "SmtpError",
    "send_email",
]
