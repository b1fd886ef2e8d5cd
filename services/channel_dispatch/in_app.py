import logging
from typing import Optional, Protocol

from channel_dispatch.base import ChannelDispatcher
from notification_service.models import (
    DeliveryErrorCode,
    DeliveryResult,
    NotificationChannel,
    ProactiveMessage,
    Recipient,
)

logger = logging.getLogger(__name__)


class ConversationStore(Protocol):
    async def append_conversation_message(
        self,
        entity_id: str,
        user_id: str,
        conversation_id: Optional[str],
        content: str,
        metadata: dict,
    ) -> tuple[str, str]: ...


class InAppDispatcher(ChannelDispatcher):
    """Writes the message into the entity's active conversation.

    No external transport; the only refusal is a disabled preference.
    """

    channel = NotificationChannel.IN_APP

    def __init__(self, store: ConversationStore):
        self._store = store

    async def send(self, message: ProactiveMessage, recipient: Recipient) -> DeliveryResult:
        if not recipient.enabled:
            return self.failure(DeliveryErrorCode.USER_DISABLED, "in-app notifications disabled")
        try:
            conversation_id, message_id = await self._store.append_conversation_message(
                entity_id=message.entity_id,
                user_id=message.user_id,
                conversation_id=message.conversation_id or recipient.conversation_id,
                content=message.message,
                metadata={
                    "proactive": True,
                    "notification_id": message.id,
                    "rule_id": message.rule_id,
                    "priority": message.priority,
                },
            )
        except Exception as exc:
            logger.warning(
                "in-app write failed",
                extra={"notification_id": message.id, "error": str(exc)},
            )
            return self.failure(
                DeliveryErrorCode.DELIVERY_FAILED,
                f"conversation_write_failed:{type(exc).__name__}",
                retryable=True,
            )
        logger.debug(
            "in-app message written",
            extra={"notification_id": message.id, "conversation_id": conversation_id},
        )
        return self.ok(message_id)
