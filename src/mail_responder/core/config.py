"""Application configuration models and loader utilities."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, cast

from dotenv import dotenv_values
from pydantic import BaseModel, Field

FilterMode = Literal["open", "allowlist", "blocklist"]
DmPolicy = Literal["open", "pairing", "allowlist"]

DEFAULT_ACCOUNT_ID = "default"


class ImapSettings(BaseModel):
    """Settings controlling IMAP connectivity."""

    host: str | None = Field(default=None, description="IMAP hostname")
    port: int = Field(default=993, description="IMAP port, typically 993 for SSL")
    username: str | None = Field(default=None, description="Account username")
    password: str | None = Field(default=None, description="Password or app password")
    use_ssl: bool = Field(default=True, description="Whether to enforce SSL")
    timeout_seconds: float = Field(
        default=30.0, gt=0, description="Socket timeout for the IMAP connection"
    )


class SmtpSettings(BaseModel):
    """Settings controlling SMTP delivery."""

    host: str | None = Field(default=None, description="SMTP hostname")
    port: int = Field(default=587, description="SMTP port")
    username: str | None = Field(
        default=None, description="SMTP username, defaults to the IMAP username"
    )
    password: str | None = Field(
        default=None, description="SMTP password, defaults to the IMAP password"
    )
    use_ssl: bool = Field(default=False, description="Connect with implicit SSL")
    starttls: bool = Field(default=True, description="Upgrade with STARTTLS")
    from_name: str | None = Field(default=None, description="Display name for From")
    timeout_seconds: float = Field(
        default=30.0, gt=0, description="Socket timeout for the SMTP connection"
    )


class AccountSettings(BaseModel):
    """Identity, credentials, and reply policy for one monitored mailbox."""

    name: str | None = Field(default=None, description="Human readable label")
    enabled: bool = Field(default=True, description="Start a monitor for this account")
    provider: str | None = Field(
        default=None, description="Provider preset used to fill in hosts and ports"
    )
    imap: ImapSettings = Field(default_factory=ImapSettings)
    smtp: SmtpSettings = Field(default_factory=SmtpSettings)
    poll_interval_seconds: float = Field(
        default=60.0, gt=0, description="Delay between poll cycles"
    )
    folder: str = Field(default="INBOX", description="Mailbox to monitor")
    max_replies_per_sender_per_hour: int = Field(
        default=5, ge=0, description="Reply budget per sender in a rolling hour"
    )
    filter_mode: FilterMode = Field(default="open", description="Sender filter mode")
    dm_policy: DmPolicy = Field(default="open", description="Unknown sender policy")
    allow_from: list[str] = Field(default_factory=list)
    block_from: list[str] = Field(default_factory=list)
    reply_prefix: str = Field(default="Re: ", description="Reply subject prefix")
    signature: str | None = Field(default=None, description="Appended to replies")
    process_existing: bool = Field(
        default=False,
        description="Answer mail already in the folder on the very first poll",
    )

    @property
    def email(self) -> str:
        """Address the account sends from."""
        return self.imap.username or ""

    @property
    def configured(self) -> bool:
        """Return ``True`` when enough settings exist to monitor and reply."""
        return bool(
            self.imap.host
            and self.imap.username
            and self.imap.password
            and self.smtp.host
        )

    def status_issues(self) -> list[str]:
        """Describe what prevents this account from running."""
        if self.configured:
            return []
        issues: list[str] = []
        if not self.imap.host:
            issues.append("IMAP host not configured")
        if not self.smtp.host:
            issues.append("SMTP host not configured")
        if not self.imap.username or not self.imap.password:
            issues.append("IMAP credentials not configured")
        return issues or ["Email account not configured"]

    def resolved(self) -> AccountSettings:
        """Return a copy with provider presets and SMTP fallbacks applied."""
        imap = self.imap.model_copy()
        smtp = self.smtp.model_copy()
        preset = PROVIDER_PRESETS.get((self.provider or "").lower())
        if preset is not None:
            imap_host, imap_port, smtp_host, smtp_port, smtp_ssl = preset
            imap.host = imap.host or imap_host
            if "port" not in self.imap.model_fields_set:
                imap.port = imap_port
            smtp.host = smtp.host or smtp_host
            if "port" not in self.smtp.model_fields_set:
                smtp.port = smtp_port
            if "use_ssl" not in self.smtp.model_fields_set:
                smtp.use_ssl = smtp_ssl
                smtp.starttls = not smtp_ssl
        smtp.username = smtp.username or imap.username
        smtp.password = smtp.password or imap.password
        return self.model_copy(update={"imap": imap, "smtp": smtp})


# provider -> (imap host, imap port, smtp host, smtp port, smtp implicit SSL)
PROVIDER_PRESETS: dict[str, tuple[str, int, str, int, bool]] = {
    "gmail": ("imap.gmail.com", 993, "smtp.gmail.com", 587, False),
    "outlook": ("outlook.office365.com", 993, "smtp.office365.com", 587, False),
    "yahoo": ("imap.mail.yahoo.com", 993, "smtp.mail.yahoo.com", 465, True),
    "fastmail": ("imap.fastmail.com", 993, "smtp.fastmail.com", 465, True),
    "icloud": ("imap.mail.me.com", 993, "smtp.mail.me.com", 587, False),
    "zoho": ("imap.zoho.com", 993, "smtp.zoho.com", 465, True),
}


class StorageSettings(BaseModel):
    """Settings for local persistence."""

    db_path: Path = Field(
        default=Path("./mail_responder.db"), description="SQLite database path"
    )
    max_processed_ids: int = Field(
        default=1000, ge=1, description="Processed Message-IDs kept per account"
    )
    max_tracked_senders: int = Field(
        default=1000, ge=1, description="Senders tracked for rate limiting"
    )


class LoggingSettings(BaseModel):
    """Logging preferences."""

    level: str = Field(default="INFO", description="Root logging level")
    structured: bool = Field(
        default=False, description="Toggle JSON structured logging"
    )


class SyncSettings(BaseModel):
    """Settings controlling fetch batching and reconnect backoff."""

    batch_size: int = Field(
        default=50, ge=1, description="Messages fetched per IMAP batch"
    )
    backoff_initial_seconds: float = Field(
        default=5.0, gt=0, description="First reconnect delay"
    )
    backoff_max_seconds: float = Field(
        default=300.0, gt=0, description="Ceiling for the reconnect delay"
    )


class ResponderSettings(BaseModel):
    """Settings for the HTTP agent that writes reply text."""

    webhook_url: str | None = Field(default=None, description="Agent endpoint")
    token: str | None = Field(default=None, description="Optional bearer token")
    timeout_seconds: int = Field(default=60, description="Request timeout")


class AppSettings(BaseModel):
    """Aggregated application configuration."""

    accounts: dict[str, AccountSettings] = Field(default_factory=dict)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    responder: ResponderSettings = Field(default_factory=ResponderSettings)

    def resolve_account(self, account_id: str | None = None) -> AccountSettings:
        """Return the resolved account, falling back to the default id."""
        key = account_id or self.default_account_id()
        account = self.accounts.get(key)
        if account is None:
            raise KeyError(f"Unknown email account '{key}'")
        return account.resolved()

    def default_account_id(self) -> str:
        """Prefer the ``default`` account, otherwise the first one declared."""
        if DEFAULT_ACCOUNT_ID in self.accounts:
            return DEFAULT_ACCOUNT_ID
        return next(iter(self.accounts), DEFAULT_ACCOUNT_ID)

    def enabled_accounts(self) -> dict[str, AccountSettings]:
        """Return resolved accounts that are enabled and fully configured."""
        enabled: dict[str, AccountSettings] = {}
        for account_id, account in self.accounts.items():
            resolved = account.resolved()
            if account.enabled and resolved.configured:
                enabled[account_id] = resolved
        return enabled


ENV_PREFIX = "MAIL_RESPONDER_"
_LIST_FIELDS = {"allow_from", "block_from"}


def _normalize_key(raw_key: str) -> list[str]:
    """Convert an environment variable key into a nested attribute path."""
    trimmed = raw_key.removeprefix(ENV_PREFIX)
    return [segment.lower() for segment in trimmed.split("__") if segment]


def _merge_into_tree(tree: dict[str, Any], path: list[str], value: Any) -> None:
    """Assign a value to a nested dictionary given a path."""
    cursor = tree
    for segment in path[:-1]:
        next_node = cursor.setdefault(segment, {})
        cursor = cast(dict[str, Any], next_node)
    cursor[path[-1]] = value


def _collect_env_values(
    env_file: Path | str | None, include_environment: bool
) -> dict[str, Any]:
    """Load configuration values from environment variables and optional file."""
    collected: dict[str, Any] = {}

    file_values = {}
    if env_file:
        env_path = Path(env_file)
        if env_path.is_file():
            file_values = {
                key: value
                for key, value in dotenv_values(env_path).items()
                if key and key.startswith(ENV_PREFIX)
            }

    env_values = {}
    if include_environment:
        env_values = {
            key: value
            for key, value in os.environ.items()
            if key.startswith(ENV_PREFIX)
        }

    combined: dict[str, Any] = {**file_values, **env_values}

    for key, value in combined.items():
        path = _normalize_key(key)
        if not path:
            continue
        normalized_value: Any = value
        if isinstance(value, str) and value == "":
            normalized_value = None
        elif isinstance(value, str) and path[-1] in _LIST_FIELDS:
            normalized_value = [item.strip() for item in value.split(",") if item.strip()]
        elif isinstance(value, str):
            lowercase_value = value.lower()
            if lowercase_value == "true":
                normalized_value = True
            elif lowercase_value == "false":
                normalized_value = False
        _merge_into_tree(collected, path, normalized_value)

    return collected


@lru_cache(maxsize=1)
def load_app_settings(
    env_file: Path | str | None = None,
    include_environment: bool = True,
    **overrides: Any,
) -> AppSettings:
    """Load application settings, applying env files and overrides."""
    collected = _collect_env_values(env_file, include_environment)
    if overrides:
        collected.update(overrides)
    return AppSettings.model_validate(collected)


__all__ = [
    "AccountSettings",
    "AppSettings",
    "DEFAULT_ACCOUNT_ID",
    "DmPolicy",
    "FilterMode",
    "ImapSettings",
    "LoggingSettings",
    "PROVIDER_PRESETS",
    "ResponderSettings",
    "SmtpSettings",
    "StorageSettings",
    "SyncSettings",
    "load_app_settings",
]
