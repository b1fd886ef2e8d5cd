"""Email delivery over SMTP."""

import asyncio
import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape

import aiosmtplib

from channel_dispatch.base import ChannelDispatcher, ChannelSettings
from notification_service.models import (
    DeliveryErrorCode,
    DeliveryResult,
    NotificationChannel,
    ProactiveMessage,
    Recipient,
)

logger = logging.getLogger(__name__)

DEFAULT_SUBJECT_TEMPLATE = "{entity_name} has something to tell you"

DEFAULT_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <style>
        body {{ font-family: Arial, sans-serif; margin: 0; padding: 20px; }}
        .message-box {{ border: 1px solid #ddd; border-radius: 8px; padding: 20px; max-width: 600px; }}
        .message-body {{ font-size: 16px; line-height: 1.5; }}
        .footer {{ margin-top: 20px; font-size: 12px; color: #999; }}
    </style>
</head>
<body>
    <div class="message-box">
        <h2>{entity_name}</h2>
        <div class="message-body">{message}</div>
        <div class="footer">
            Sent {timestamp}. Change how you hear from {entity_name} in your notification settings.
        </div>
    </div>
</body>
</html>
"""

DEFAULT_TEXT_TEMPLATE = """
{entity_name}
====================

{message}

--
Sent {timestamp}. Change how you hear from {entity_name} in your notification settings.
"""


def render_template(template: str, **kwargs) -> str:
    try:
        return template.format(**kwargs)
    except (KeyError, IndexError) as e:
        logger.warning(f"Template variable not found: {e}")
        return template


def build_email(
    message: ProactiveMessage,
    recipient: Recipient,
    from_address: str,
) -> MIMEMultipart:
    entity_name = recipient.metadata.get("entity_name") or "Your aura"
    template_vars = {
        "entity_name": entity_name,
        "message": message.message,
        "timestamp": message.created_at.isoformat() if message.created_at else "",
    }
    msg = MIMEMultipart("alternative")
    msg.attach(MIMEText(render_template(DEFAULT_TEXT_TEMPLATE, **template_vars), "plain"))
    html_vars = {k: escape(str(v)) for k, v in template_vars.items()}
    msg.attach(MIMEText(render_template(DEFAULT_HTML_TEMPLATE, **html_vars), "html"))
    msg["Subject"] = render_template(DEFAULT_SUBJECT_TEMPLATE, **template_vars)
    msg["From"] = from_address
    msg["To"] = recipient.email
    msg["Message-ID"] = f"<{message.id}@proactive-notifications>"
    return msg


def classify_smtp_error(exc: Exception) -> tuple[DeliveryErrorCode, bool]:
    if isinstance(exc, aiosmtplib.SMTPRecipientsRefused):
        return DeliveryErrorCode.INVALID_CHANNEL, False
    if isinstance(exc, aiosmtplib.SMTPAuthenticationError):
        return DeliveryErrorCode.DELIVERY_FAILED, False
    if isinstance(exc, aiosmtplib.SMTPResponseException):
        if 400 <= exc.code < 500:
            return DeliveryErrorCode.EXTERNAL_SERVICE_ERROR, True
        return DeliveryErrorCode.DELIVERY_FAILED, False
    if isinstance(exc, (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError)):
        return DeliveryErrorCode.EXTERNAL_SERVICE_ERROR, True
    return DeliveryErrorCode.DELIVERY_FAILED, False


class EmailDispatcher(ChannelDispatcher):
    channel = NotificationChannel.EMAIL

    def __init__(self, settings: ChannelSettings):
        self._settings = settings

    def is_available(self) -> bool:
        return bool(self._settings.smtp_host and self._settings.smtp_from)

    async def send(self, message: ProactiveMessage, recipient: Recipient) -> DeliveryResult:
        if not self.is_available():
            return self.failure(DeliveryErrorCode.INVALID_CHANNEL, "smtp not configured")
        if not recipient.enabled:
            return self.failure(DeliveryErrorCode.USER_DISABLED, "email disabled")
        if not recipient.email:
            return self.failure(DeliveryErrorCode.INVALID_CHANNEL, "missing_email_address")

        s = self._settings
        start_time = asyncio.get_event_loop().time()
        try:
            msg = build_email(message, recipient, s.smtp_from)
            smtp = aiosmtplib.SMTP(
                hostname=s.smtp_host,
                port=s.smtp_port,
                start_tls=s.smtp_tls,
                timeout=s.timeout_seconds,
            )
            async with smtp:
                if s.smtp_user and s.smtp_password:
                    await smtp.login(s.smtp_user, s.smtp_password)
                await smtp.send_message(msg, recipients=[recipient.email])
        except Exception as e:
            duration_ms = (asyncio.get_event_loop().time() - start_time) * 1000
            code, retryable = classify_smtp_error(e)
            logger.warning(
                "Email send failed",
                extra={
                    "notification_id": message.id,
                    "error_code": code.value,
                    "duration_ms": round(duration_ms, 1),
                },
            )
            return self.failure(code, f"smtp_error:{type(e).__name__}", retryable=retryable)

        return self.ok(msg["Message-ID"])
