"""Inbound processor that asks an HTTP agent for reply text."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

import httpx

from mail_responder.core.config import ResponderSettings
from mail_responder.core.models import InboundContext

LOGGER = logging.getLogger(__name__)

MAX_ATTEMPTS = 3


class ResponderError(RuntimeError):
    """Raised when the agent endpoint fails to respond as expected."""


def build_payload(ctx: InboundContext) -> dict[str, object]:
    """Return the JSON body describing ``ctx`` for the agent."""
    return {
        "accountId": ctx.account_id,
        "from": ctx.from_address,
        "fromName": ctx.from_name or ctx.from_address,
        "to": ctx.to,
        "subject": ctx.subject,
        "body": f"Subject: {ctx.subject}\n\n{ctx.body}",
        "messageId": ctx.message_id,
        "channel": "email",
        "chatType": "direct",
    }


@dataclass(slots=True)
class WebhookResponder:
    """Thin synchronous client posting inbound mail to an agent webhook."""

    settings: ResponderSettings
    client: httpx.Client | None = None
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def __call__(self, ctx: InboundContext) -> str | None:
        """Return the agent's reply text, or ``None`` for no reply."""
        if not self.settings.webhook_url:
            raise ResponderError("Responder webhook URL is not configured")

        headers = {}
        if self.settings.token:
            headers["Authorization"] = f"Bearer {self.settings.token}"

        data: dict[str, object] | None = None
        last_error: Exception | None = None
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                response = self._post(build_payload(ctx), headers)
                response.raise_for_status()
                data = response.json()
                break
            except httpx.HTTPStatusError as exc:
                if exc.response.status_code < 500:
                    raise ResponderError(
                        f"Agent rejected message {ctx.message_id}: "
                        f"HTTP {exc.response.status_code}"
                    ) from exc
                last_error = exc
            except httpx.HTTPError as exc:
                last_error = exc
            except json.JSONDecodeError as exc:
                raise ResponderError("Agent returned invalid JSON") from exc

            LOGGER.warning(
                "Agent request for %s failed (attempt %s/%s): %s",
                ctx.message_id,
                attempt,
                MAX_ATTEMPTS,
                last_error,
            )
            if attempt < MAX_ATTEMPTS:
                self.sleep(min(2**attempt, 8))

        if data is None:
            raise ResponderError("Agent request failed after retries") from last_error
        if not isinstance(data, dict):
            raise ResponderError("Agent response must be a JSON object")

        reply = data.get("reply")
        if reply is None:
            return None
        if not isinstance(reply, str):
            raise ResponderError("Agent response field 'reply' must be a string")
        return reply or None

    def _post(self, payload: dict[str, object], headers: dict[str, str]) -> httpx.Response:
        url = self.settings.webhook_url or ""
        if self.client is not None:
            return self.client.post(
                url, json=payload, headers=headers, timeout=self.settings.timeout_seconds
            )
        return httpx.post(
            url, json=payload, headers=headers, timeout=self.settings.timeout_seconds
        )


__all__ = ["ResponderError", "WebhookResponder", "build_payload"]
