"""
Channel dispatcher contract.

A dispatcher wraps one transport and reports every outcome as a
DeliveryResult. send() must never raise: transport errors are classified
into DeliveryErrorCode here so the notification service's retry logic
never sees transport-specific shapes.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from notification_service.models import (
    DeliveryErrorCode,
    DeliveryResult,
    NotificationChannel,
    ProactiveMessage,
    Recipient,
)
from shared.config import env_bool, env_float, env_int, optional_env

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChannelSettings:
    web_push_gateway_url: str = ""
    web_push_api_key: str = ""
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_sms_from: str = ""
    twilio_whatsapp_from: str = ""
    twilio_api_base: str = "https://api.twilio.com"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = ""
    smtp_tls: bool = True
    timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> "ChannelSettings":
        return cls(
            web_push_gateway_url=optional_env("WEB_PUSH_GATEWAY_URL"),
            web_push_api_key=optional_env("WEB_PUSH_API_KEY"),
            twilio_account_sid=optional_env("TWILIO_ACCOUNT_SID"),
            twilio_auth_token=optional_env("TWILIO_AUTH_TOKEN"),
            twilio_sms_from=optional_env("TWILIO_SMS_FROM"),
            twilio_whatsapp_from=optional_env("TWILIO_WHATSAPP_FROM"),
            twilio_api_base=optional_env("TWILIO_API_BASE", "https://api.twilio.com"),
            smtp_host=optional_env("SMTP_HOST"),
            smtp_port=env_int("SMTP_PORT", 587),
            smtp_user=optional_env("SMTP_USER"),
            smtp_password=optional_env("SMTP_PASSWORD"),
            smtp_from=optional_env("SMTP_FROM"),
            smtp_tls=env_bool("SMTP_TLS", True),
            timeout_seconds=env_float("DELIVERY_TIMEOUT_SECONDS", 10.0),
        )


class ChannelDispatcher(ABC):
    channel: NotificationChannel

    def is_available(self) -> bool:
        return True

    @abstractmethod
    async def send(self, message: ProactiveMessage, recipient: Recipient) -> DeliveryResult:
        """Deliver one message. Never raises."""

    def failure(
        self, code: DeliveryErrorCode, error: str, retryable: bool = False
    ) -> DeliveryResult:
        return DeliveryResult.failure(self.channel, code, error, retryable=retryable)

    def ok(self, message_id: Optional[str] = None) -> DeliveryResult:
        return DeliveryResult.ok(self.channel, message_id)


def classify_http_status(status_code: int) -> tuple[DeliveryErrorCode, bool]:
    """Map a non-2xx transport status to (error_code, retryable)."""
    if status_code == 429:
        return DeliveryErrorCode.RATE_LIMITED, True
    if status_code >= 500:
        return DeliveryErrorCode.EXTERNAL_SERVICE_ERROR, True
    if status_code in (404, 410):
        return DeliveryErrorCode.INVALID_CHANNEL, False
    return DeliveryErrorCode.DELIVERY_FAILED, False


def result_from_response(
    channel: NotificationChannel,
    response: httpx.Response,
    message_id: Optional[str] = None,
) -> DeliveryResult:
    if 200 <= response.status_code < 300:
        return DeliveryResult.ok(channel, message_id)
    code, retryable = classify_http_status(response.status_code)
    return DeliveryResult.failure(
        channel, code, f"http_{response.status_code}", retryable=retryable
    )


def result_from_exception(channel: NotificationChannel, exc: Exception) -> DeliveryResult:
    """Timeouts and transport errors are retryable upstream failures."""
    if isinstance(exc, httpx.TimeoutException):
        return DeliveryResult.failure(
            channel, DeliveryErrorCode.EXTERNAL_SERVICE_ERROR, "timeout", retryable=True
        )
    if isinstance(exc, httpx.TransportError):
        return DeliveryResult.failure(
            channel,
            DeliveryErrorCode.EXTERNAL_SERVICE_ERROR,
            f"request_error:{type(exc).__name__}",
            retryable=True,
        )
    logger.exception("unexpected dispatcher error", extra={"channel": channel.value})
    return DeliveryResult.failure(
        channel,
        DeliveryErrorCode.DELIVERY_FAILED,
        f"unexpected_error:{type(exc).__name__}",
        retryable=False,
    )


class DispatcherRegistry:
    """Dispatchers keyed by channel."""

    def __init__(self, dispatchers: Optional[list[ChannelDispatcher]] = None):
        self._dispatchers: dict[NotificationChannel, ChannelDispatcher] = {}
        for dispatcher in dispatchers or []:
            self.register(dispatcher)

    def register(self, dispatcher: ChannelDispatcher) -> None:
        self._dispatchers[dispatcher.channel] = dispatcher

    def get(self, channel: NotificationChannel) -> Optional[ChannelDispatcher]:
        return self._dispatchers.get(channel)

    def is_available(self, channel: NotificationChannel) -> bool:
        dispatcher = self._dispatchers.get(channel)
        return dispatcher is not None and dispatcher.is_available()

    def channels(self) -> list[NotificationChannel]:
        return list(self._dispatchers)
