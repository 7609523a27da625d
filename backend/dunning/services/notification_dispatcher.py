"""Thin multi-channel dispatcher for dunning notifications.

Rendering is plain ``{{ variable }}`` substitution; delivery goes to SMTP,
an HTTP SMS API or a signed webhook POST.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import re
from datetime import UTC, datetime
from typing import Any

import httpx

from dunning.core.config import settings
from dunning.core.exceptions import TransientInfraError
from dunning.services.email_service import EmailService

logger = logging.getLogger(__name__)

CHANNEL_EMAIL = "email"
CHANNEL_SMS = "sms"
CHANNEL_WEBHOOK = "webhook"

STEP_EXECUTED_EVENT = "dunning.step_executed"

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")

# Built-in templates for operator-triggered notifications
DEFAULT_TEMPLATES: dict[str, dict[str, str]] = {
    "payment_recovered": {
        "subject": "Your payment of {{ amount }} {{ currency }} was successful",
        "html_body": (
            "<p>Hi {{ customer_name }},</p>"
            "<p>We successfully collected your payment of {{ amount }} {{ currency }}. "
            "Your subscription is fully active again.</p>"
        ),
        "message": "Payment of {{ amount }} {{ currency }} received. Thank you!",
    },
    "payment_retry_failed": {
        "subject": "We could not process your payment of {{ amount }} {{ currency }}",
        "html_body": (
            "<p>Hi {{ customer_name }},</p>"
            "<p>We tried to charge {{ amount }} {{ currency }} but the payment failed "
            "({{ failure_reason }}). Please update your payment method.</p>"
        ),
        "message": "Payment of {{ amount }} {{ currency }} failed. Please update your card.",
    },
    "payment_abandoned": {
        "subject": "Your outstanding payment has been closed",
        "html_body": (
            "<p>Hi {{ customer_name }},</p>"
            "<p>We have stopped trying to collect {{ amount }} {{ currency }}. "
            "{{ reason }}</p>"
        ),
        "message": "We have stopped collecting {{ amount }} {{ currency }}.",
    },
}


def render(text: str, variables: dict[str, Any]) -> str:
    """Replace ``{{ name }}`` placeholders; unknown names render empty."""
    return _PLACEHOLDER.sub(lambda m: str(variables.get(m.group(1), "")), text)


def generate_hmac_signature(payload_bytes: bytes, secret: str) -> str:
    """Hex-encoded HMAC-SHA256 of a webhook body."""
    return hmac.new(secret.encode("utf-8"), payload_bytes, hashlib.sha256).hexdigest()


class NotificationDispatcher:
    """Sends one rendered notification over one channel and returns an ack."""

    def __init__(self, email_service: EmailService | None = None):
        self.email_service = email_service or EmailService()

    async def send(
        self,
        channel: str,
        template: dict[str, Any],
        recipient: str,
        variables: dict[str, Any],
    ) -> bool:
        if channel == CHANNEL_EMAIL:
            return await self._send_email(template, recipient, variables)
        if channel == CHANNEL_SMS:
            return await self._send_sms(template, recipient, variables)
        if channel == CHANNEL_WEBHOOK:
            return await self._send_webhook(template, recipient, variables)
        raise ValueError(f"Unsupported notification channel: {channel}")

    async def _send_email(
        self, template: dict[str, Any], recipient: str, variables: dict[str, Any]
    ) -> bool:
        text_body = template.get("text_body")
        return await self.email_service.send_email(
            to=recipient,
            subject=render(template["subject"], variables),
            html_body=render(template["html_body"], variables),
            text_body=render(text_body, variables) if text_body else None,
        )

    async def _send_sms(
        self, template: dict[str, Any], recipient: str, variables: dict[str, Any]
    ) -> bool:
        body = render(template["message"], variables)[: int(template.get("max_length", 160))]
        if not settings.SMS_API_URL:
            logger.info("SMS API not configured, skipping SMS to %s", recipient)
            return True

        try:
            async with httpx.AsyncClient(timeout=settings.WEBHOOK_TIMEOUT_SECONDS) as client:
                resp = await client.post(
                    settings.SMS_API_URL,
                    data={"To": recipient, "From": settings.SMS_FROM_NUMBER, "Body": body},
                    auth=(settings.SMS_ACCOUNT_SID, settings.SMS_AUTH_TOKEN),
                )
        except httpx.HTTPError as exc:
            raise TransientInfraError(f"SMS delivery to {recipient} failed: {exc}") from exc

        if 200 <= resp.status_code < 300:
            logger.info("SMS sent to %s", recipient)
            return True
        logger.warning("SMS API rejected message to %s: HTTP %s", recipient, resp.status_code)
        return False

    async def _send_webhook(
        self, template: dict[str, Any], recipient: str, variables: dict[str, Any]
    ) -> bool:
        event = template.get("event", STEP_EXECUTED_EVENT)
        payload = {
            "event": event,
            "timestamp": datetime.now(UTC).isoformat(),
            "data": variables,
        }
        payload_bytes = json.dumps(payload, default=str).encode("utf-8")
        secret = template.get("secret") or settings.webhook_secret

        headers = {str(k): str(v) for k, v in (template.get("headers") or {}).items()}
        headers.update(
            {
                "Content-Type": "application/json",
                "X-Dunning-Event": event,
                "X-Dunning-Signature": generate_hmac_signature(payload_bytes, secret),
                "X-Dunning-Signature-Algorithm": "hmac-sha256",
            }
        )

        try:
            async with httpx.AsyncClient(timeout=settings.WEBHOOK_TIMEOUT_SECONDS) as client:
                resp = await client.post(recipient, content=payload_bytes, headers=headers)
        except httpx.HTTPError as exc:
            raise TransientInfraError(f"Webhook delivery to {recipient} failed: {exc}") from exc

        if 200 <= resp.status_code < 300:
            return True
        logger.warning("Webhook %s returned HTTP %s", recipient, resp.status_code)
        return False


def get_dispatcher() -> NotificationDispatcher:
    """FastAPI dependency returning the notification dispatcher."""
    return NotificationDispatcher()
