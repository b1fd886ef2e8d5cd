"""SMS and WhatsApp delivery through the Twilio Messages REST API."""
import logging
from typing import Optional

from channel_dispatch.base import (
    ChannelDispatcher,
    ChannelSettings,
    result_from_exception,
    result_from_response,
)
from notification_service.models import (
    DeliveryErrorCode,
    DeliveryResult,
    NotificationChannel,
    ProactiveMessage,
    Recipient,
)
from shared.http_client import traced_client
from shared.utils import truncate

logger = logging.getLogger(__name__)

SMS_MAX_LENGTH = 1600


class TwilioDispatcher(ChannelDispatcher):
    channel = NotificationChannel.SMS

    def __init__(self, settings: ChannelSettings):
        self._settings = settings

    @property
    def from_number(self) -> str:
        return self._settings.twilio_sms_from

    def format_address(self, number: str) -> str:
        return number

    def is_available(self) -> bool:
        s = self._settings
        return bool(s.twilio_account_sid and s.twilio_auth_token and self.from_number)

    def messages_url(self) -> str:
        base = self._settings.twilio_api_base.rstrip("/")
        return f"{base}/2010-04-01/Accounts/{self._settings.twilio_account_sid}/Messages.json"

    async def send(self, message: ProactiveMessage, recipient: Recipient) -> DeliveryResult:
        if not self.is_available():
            return self.failure(DeliveryErrorCode.INVALID_CHANNEL, "twilio not configured")
        if not recipient.enabled:
            return self.failure(
                DeliveryErrorCode.USER_DISABLED, f"{self.channel.value.lower()} disabled"
            )
        if not recipient.phone:
            return self.failure(DeliveryErrorCode.INVALID_CHANNEL, "missing_phone_number")

        form = {
            "To": self.format_address(recipient.phone),
            "From": self.format_address(self.from_number),
            "Body": truncate(message.message, SMS_MAX_LENGTH),
        }
        try:
            async with traced_client(
                timeout=self._settings.timeout_seconds,
                auth=(self._settings.twilio_account_sid, self._settings.twilio_auth_token),
            ) as client:
                resp = await client.post(self.messages_url(), data=form)
        except Exception as exc:
            return result_from_exception(self.channel, exc)

        sid: Optional[str] = None
        if 200 <= resp.status_code < 300:
            try:
                body = resp.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                sid = body.get("sid")
        else:
            logger.info(
                "twilio rejected message",
                extra={
                    "notification_id": message.id,
                    "channel": self.channel.value,
                    "http_status": resp.status_code,
                },
            )
        return result_from_response(self.channel, resp, sid)


class WhatsAppDispatcher(TwilioDispatcher):
    channel = NotificationChannel.WHATSAPP

    @property
    def from_number(self) -> str:
        return self._settings.twilio_whatsapp_from

    def format_address(self, number: str) -> str:
        if number.startswith("whatsapp:"):
            return number
        return f"whatsapp:{number}"
