"""SMTP client for sending replies with proper error handling and threading."""

from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.errors import MessageError
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid
from typing import TYPE_CHECKING

from ..core.models import DeliveryResult, ThreadInfo

if TYPE_CHECKING:
    from mail_responder.core import SmtpSettings

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class OutgoingEmail:
    """Outgoing email message representation.

    Attributes:
        from_address: Envelope and header sender
        to: Recipient email address
        subject: Email subject line
        body: Plain text body, signature already applied
        message_id: Message-ID header for the outgoing message
        in_reply_to: Message-ID of the original email (for threading)
        references: Space-separated Message-IDs for thread context
        auto_reply: Mark the message as automatically generated
    """

    from_address: str
    to: str
    subject: str
    body: str
    message_id: str
    in_reply_to: str | None = None
    references: str | None = None
    auto_reply: bool = False


class SmtpError(Exception):
    """Base exception for SMTP operations.

    Raised when SMTP connection, authentication, or sending fails.
    """


class SmtpClient:
    """SMTP client for sending emails.

    Provides context manager interface for automatic connection management.
    Supports both STARTTLS and implicit SSL connections.

    Example:
        >>> settings = SmtpSettings(host="smtp.gmail.com", ...)
        >>> with SmtpClient(settings) as client:
        ...     client.send(message)
    """

    def __init__(self, settings: SmtpSettings) -> None:
        """Initialize SMTP client with configuration.

        Args:
            settings: SMTP configuration settings
        """
        self._settings = settings
        self._connection: smtplib.SMTP | None = None

    @property
    def from_name(self) -> str | None:
        return self._settings.from_name

    def __enter__(self) -> SmtpClient:
        """Enter context manager, establishing connection."""
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        """Exit context manager, closing connection."""
        self.disconnect()

    def connect(self) -> None:
        """Establish SMTP connection and authenticate.

        Raises:
            SmtpError: If connection or authentication fails
        """
        if not self._settings.host:
            raise SmtpError("SMTP host not configured")

        LOGGER.info(
            "Attempting SMTP connection to %s:%d",
            self._settings.host,
            self._settings.port,
        )

        try:
            if self._settings.use_ssl:
                LOGGER.debug("Using SSL for SMTP connection")
                self._connection = smtplib.SMTP_SSL(
                    self._settings.host,
                    self._settings.port,
                    timeout=self._settings.timeout_seconds,
                )
            else:
                self._connection = smtplib.SMTP(
                    self._settings.host,
                    self._settings.port,
                    timeout=self._settings.timeout_seconds,
                )
                if self._settings.starttls:
                    LOGGER.debug("Using STARTTLS for SMTP connection")
                    self._connection.starttls()

            if self._settings.username and self._settings.password:
                LOGGER.debug("Authenticating as %s", self._settings.username)
                self._connection.login(
                    self._settings.username,
                    self._settings.password,
                )
                LOGGER.info("SMTP authentication successful")

            LOGGER.info("Connected to SMTP server: %s", self._settings.host)

        except smtplib.SMTPAuthenticationError as exc:
            LOGGER.error("SMTP authentication failed: %s", exc)
            self._drop_connection()
            raise SmtpError(f"SMTP authentication failed: {exc}") from exc
        except smtplib.SMTPConnectError as exc:
            LOGGER.error("SMTP connection failed: %s", exc)
            self._drop_connection()
            raise SmtpError(f"Failed to connect to SMTP server: {exc}") from exc
        except smtplib.SMTPException as exc:
            LOGGER.error("SMTP error: %s", exc)
            self._drop_connection()
            raise SmtpError(f"SMTP error: {exc}") from exc
        except OSError as exc:
            LOGGER.error("Network error connecting to SMTP server: %s", exc)
            self._drop_connection()
            raise SmtpError(f"Network error: {exc}") from exc

    def disconnect(self) -> None:
        """Close SMTP connection gracefully."""
        if self._connection:
            try:
                self._connection.quit()
                LOGGER.debug("SMTP connection closed")
            except (smtplib.SMTPException, OSError) as exc:
                LOGGER.warning("Error closing SMTP connection: %s", exc)
            finally:
                self._connection = None

    def send(self, message: OutgoingEmail) -> None:
        """Send an email message.

        Args:
            message: The email message to send

        Raises:
            SmtpError: If sending fails or not connected
        """
        if not self._connection:
            raise SmtpError("Not connected to SMTP server")

        LOGGER.info("Preparing to send email to %s: %s", message.to, message.subject)

        try:
            mime_message = self._build_mime_message(message)
            LOGGER.debug("Email headers: %s", dict(mime_message.items()))

            refused = self._connection.send_message(mime_message)

            if refused:
                LOGGER.warning("Some recipients were refused: %s", refused)
                raise SmtpError(f"Some recipients were refused: {refused}")

            LOGGER.info(
                "Email sent successfully to %s: %s", message.to, message.subject
            )

        except smtplib.SMTPRecipientsRefused as exc:
            LOGGER.error("All recipients refused: %s", exc)
            raise SmtpError(f"All recipients refused: {exc}") from exc
        except smtplib.SMTPSenderRefused as exc:
            LOGGER.error("Sender refused: %s", exc)
            raise SmtpError(f"Sender refused: {exc}") from exc
        except smtplib.SMTPDataError as exc:
            LOGGER.error("SMTP data error: %s", exc)
            raise SmtpError(f"SMTP data error: {exc}") from exc
        except smtplib.SMTPException as exc:
            LOGGER.error("Failed to send email: %s", exc)
            raise SmtpError(f"Failed to send email: {exc}") from exc
        except (MessageError, ValueError) as exc:
            LOGGER.error("Unable to serialise email to %s: %s", message.to, exc)
            raise SmtpError(f"Invalid email message: {exc}") from exc
        except OSError as exc:
            LOGGER.error("Network error while sending email: %s", exc)
            raise SmtpError(f"Network error: {exc}") from exc

    def _build_mime_message(self, message: OutgoingEmail) -> MIMEMultipart:
        """Build MIME message from OutgoingEmail."""
        mime_msg = MIMEMultipart("alternative")

        from_header = message.from_address
        if self._settings.from_name:
            from_header = formataddr((self._settings.from_name, message.from_address))

        mime_msg["From"] = from_header
        mime_msg["To"] = message.to
        mime_msg["Subject"] = message.subject
        mime_msg["Date"] = formatdate(localtime=True)
        mime_msg["Message-ID"] = message.message_id

        if message.in_reply_to:
            mime_msg["In-Reply-To"] = message.in_reply_to
            LOGGER.debug("Added In-Reply-To: %s", message.in_reply_to)
        if message.references:
            mime_msg["References"] = message.references
            LOGGER.debug("Added References: %s", message.references)

        # Anti-loop markers honoured by other autoresponders.
        if message.auto_reply:
            mime_msg["Auto-Submitted"] = "auto-replied"
            mime_msg["X-Auto-Response-Suppress"] = "All"

        mime_msg.attach(MIMEText(message.body, "plain", "utf-8"))
        LOGGER.debug("Added plain text body (%d chars)", len(message.body))
        return mime_msg

    def _drop_connection(self) -> None:
        if self._connection is None:
            return
        try:
            self._connection.close()
        except OSError:
            LOGGER.debug("SMTP socket close failed after connect error")
        self._connection = None


def apply_signature(text: str, signature: str | None) -> str:
    """Append ``signature`` as a trailing block separated by a blank line."""
    if not signature or not signature.strip():
        return text
    return f"{text.rstrip()}\n\n{signature.strip()}"


def send_email(
    transporter: SmtpClient,
    *,
    from_address: str,
    to: str,
    subject: str,
    text: str,
    thread_info: ThreadInfo | None = None,
    signature: str | None = None,
    auto_reply: bool = True,
) -> DeliveryResult:
    """Deliver one message through ``transporter`` and report the outcome.

    Opens and closes an SMTP session for the delivery. Authentication,
    connection, and recipient failures are returned as ``ok=False`` rather
    than raised.
    """
    domain = from_address.rpartition("@")[2] or None
    message = OutgoingEmail(
        from_address=from_address,
        to=to,
        subject=subject,
        body=apply_signature(text, signature),
        message_id=make_msgid(domain=domain),
        in_reply_to=thread_info.in_reply_to if thread_info else None,
        references=" ".join(thread_info.references) if thread_info else None,
        auto_reply=auto_reply,
    )
    try:
        with transporter:
            transporter.send(message)
    except SmtpError as exc:
        return DeliveryResult(ok=False, error=str(exc))
    except OSError as exc:
        LOGGER.error("Unexpected network error delivering to %s: %s", to, exc)
        return DeliveryResult(ok=False, error=f"Network error: {exc}")
    return DeliveryResult(ok=True, message_id=message.message_id)


__all__ = [
    "OutgoingEmail",
    "SmtpClient",
    "SmtpError",
    "apply_signature",
    "send_email",
]
