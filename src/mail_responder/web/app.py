"""FastAPI application exposing monitor status and an explicit send action."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from fastapi import FastAPI, HTTPException, status as http_status
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from mail_responder.core import AppSettings, load_app_settings
from mail_responder.core.config import AccountSettings
from mail_responder.core.datetime_utils import utc_now
from mail_responder.monitor.status import StatusRegistry, status_to_dict
from mail_responder.replies.outbound import is_valid_address, send_message
from mail_responder.transport.smtp_client import SmtpClient

LOGGER = logging.getLogger(__name__)


class SendRequest(BaseModel):
    """Body accepted by ``POST /api/send``."""

    target: str = Field(description="Recipient address")
    message: str = Field(description="Plain text body")
    subject: str | None = None
    account_id: str | None = Field(default=None, alias="accountId")
    reply_to_id: str | None = Field(default=None, alias="replyToId")

    model_config = {"populate_by_name": True}


def _account_summary(account_id: str, account: AccountSettings) -> dict[str, Any]:
    resolved = account.resolved()
    return {
        "accountId": account_id,
        "name": account.name,
        "email": resolved.email,
        "enabled": account.enabled and resolved.configured,
        "configured": resolved.configured,
        "issues": resolved.status_issues(),
    }


def create_app(
    settings: AppSettings | None = None,
    registry: StatusRegistry | None = None,
    *,
    transporter_factory: Callable[[AccountSettings], SmtpClient] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    app_settings = settings or load_app_settings()
    status_registry = registry or StatusRegistry()
    make_transporter = transporter_factory or (
        lambda account: SmtpClient(account.smtp)
    )
    app = FastAPI(title="Mail Responder")

    @app.get("/api/status")
    async def list_status() -> dict[str, Any]:
        return {
            "accounts": [status_to_dict(item) for item in status_registry.snapshot()]
        }

    @app.get("/api/status/{account_id}")
    async def account_status(account_id: str) -> dict[str, Any]:
        current = status_registry.get(account_id)
        if current is None:
            raise HTTPException(
                status_code=http_status.HTTP_404_NOT_FOUND,
                detail=f"No status recorded for account '{account_id}'",
            )
        return status_to_dict(current)

    @app.get("/api/accounts")
    async def list_accounts() -> dict[str, Any]:
        return {
            "accounts": [
                _account_summary(account_id, account)
                for account_id, account in sorted(app_settings.accounts.items())
            ]
        }

    @app.post("/api/send")
    async def send(request: SendRequest) -> dict[str, Any]:
        if not is_valid_address(request.target):
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid email address: {request.target}",
            )
        try:
            account = app_settings.resolve_account(request.account_id)
        except KeyError as exc:
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST, detail=str(exc.args[0])
            ) from exc
        if not account.configured:
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail="Email account not configured",
            )

        result = await run_in_threadpool(
            send_message,
            account,
            request.target,
            request.message,
            subject=request.subject,
            reply_to_id=request.reply_to_id,
            transporter=make_transporter(account),
        )
        if result.ok:
            account_id = request.account_id or app_settings.default_account_id()
            status_registry.set_status(account_id, last_outbound_at=utc_now())
            return {
                "ok": True,
                "messageId": result.message_id,
                "message": f"Email sent to {request.target}",
            }
        LOGGER.warning("Explicit send to %s failed: %s", request.target, result.error)
        return {"ok": False, "error": result.error}

    return app


__all__ = ["SendRequest", "create_app"]
