import logging

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

logger = logging.getLogger(__name__)


class WebPushDispatcher(ChannelDispatcher):
    """Hands the notification to the push gateway, which owns VAPID and fan-out."""

    channel = NotificationChannel.WEB_PUSH

    def __init__(self, settings: ChannelSettings):
        self._settings = settings

    def is_available(self) -> bool:
        return bool(self._settings.web_push_gateway_url)

    def build_body(self, message: ProactiveMessage, recipient: Recipient) -> dict:
        return {
            "subscription": recipient.push_endpoint,
            "notification": {
                "title": recipient.metadata.get("title") or "New message",
                "body": message.message,
                "tag": message.id,
                "data": {
                    "notification_id": message.id,
                    "entity_id": message.entity_id,
                    "conversation_id": message.conversation_id,
                },
            },
            "ttl": 86400,
        }

    async def send(self, message: ProactiveMessage, recipient: Recipient) -> DeliveryResult:
        if not self.is_available():
            return self.failure(DeliveryErrorCode.INVALID_CHANNEL, "push gateway not configured")
        if not recipient.enabled:
            return self.failure(DeliveryErrorCode.USER_DISABLED, "push notifications disabled")
        if not recipient.push_endpoint:
            return self.failure(DeliveryErrorCode.INVALID_CHANNEL, "missing_push_subscription")

        headers = {"Idempotency-Key": message.id}
        if self._settings.web_push_api_key:
            headers["Authorization"] = f"Bearer {self._settings.web_push_api_key}"

        try:
            async with traced_client(timeout=self._settings.timeout_seconds) as client:
                resp = await client.post(
                    self._settings.web_push_gateway_url,
                    json=self.build_body(message, recipient),
                    headers=headers,
                )
        except Exception as exc:
            return result_from_exception(self.channel, exc)

        external_id = None
        if 200 <= resp.status_code < 300:
            try:
                body = resp.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                external_id = body.get("id")
        result = result_from_response(self.channel, resp, external_id)
        if not result.success:
            logger.info(
                "push gateway rejected notification",
                extra={"notification_id": message.id, "http_status": resp.status_code},
            )
        return result
