"""Email service for sending dunning emails via SMTP."""

from __future__ import annotations

import logging
from email.message import EmailMessage

from dunning.core.config import settings
from dunning.core.exceptions import TransientInfraError

logger = logging.getLogger(__name__)


class EmailService:
    """Service for sending transactional emails via SMTP."""

    async def send_email(
        self,
        to: str,
        subject: str,
        html_body: str,
        text_body: str | None = None,
    ) -> bool:
        """Send an email via SMTP.

        Args:
            to: Recipient email address.
            subject: Email subject line.
            html_body: HTML content of the email.
            text_body: Optional plain-text alternative.

        Returns:
            True if sent successfully (or no-op when SMTP unconfigured).

        Raises:
            TransientInfraError: The SMTP server could not be reached or refused the message.
        """
        if not settings.SMTP_HOST:
            logger.info("SMTP not configured, skipping email to %s: %s", to, subject)
            return True

        import aiosmtplib

        msg = EmailMessage()
        msg["From"] = f"{settings.SMTP_FROM_NAME} <{settings.SMTP_FROM_EMAIL}>"
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(text_body or "Please view this email in an HTML-capable client.")
        msg.add_alternative(html_body, subtype="html")

        try:
            await aiosmtplib.send(
                msg,
                hostname=settings.SMTP_HOST,
                port=settings.SMTP_PORT,
                username=settings.SMTP_USERNAME or None,
                password=settings.SMTP_PASSWORD or None,
                start_tls=settings.SMTP_USE_TLS,
            )
        except (aiosmtplib.SMTPException, OSError) as exc:
            raise TransientInfraError(f"SMTP delivery to {to} failed: {exc}") from exc
        logger.info("Email sent to %s: %s", to, subject)
        return True
