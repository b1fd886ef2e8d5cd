import logging
from typing import Optional

from channel_dispatch.base import ChannelSettings, DispatcherRegistry
from channel_dispatch.email_sender import EmailDispatcher
from channel_dispatch.in_app import ConversationStore, InAppDispatcher
from channel_dispatch.twilio import TwilioDispatcher, WhatsAppDispatcher
from channel_dispatch.web_push import WebPushDispatcher

logger = logging.getLogger(__name__)


def build_default_registry(
    store: ConversationStore,
    settings: Optional[ChannelSettings] = None,
) -> DispatcherRegistry:
    settings = settings or ChannelSettings.from_env()
    registry = DispatcherRegistry(
        [
            InAppDispatcher(store),
            WebPushDispatcher(settings),
            TwilioDispatcher(settings),
            WhatsAppDispatcher(settings),
            EmailDispatcher(settings),
        ]
    )
    logger.info(
        "channel dispatchers registered",
        extra={
            "available": [c.value for c in registry.channels() if registry.is_available(c)],
        },
    )
    return registry
