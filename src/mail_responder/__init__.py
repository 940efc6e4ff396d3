"""Watch IMAP inboxes and send threaded automatic replies over SMTP."""

__version__ = "0.1.0"
