"""Notification lifecycle records and enums."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

from shared.utils import format_timestamp, normalize_json


class NotificationChannel(str, Enum):
    IN_APP = "IN_APP"
    WEB_PUSH = "WEB_PUSH"
    SMS = "SMS"
    WHATSAPP = "WHATSAPP"
    EMAIL = "EMAIL"


class NotificationStatus(str, Enum):
    PENDING = "PENDING"
    QUEUED = "QUEUED"
    DELIVERED = "DELIVERED"
    READ = "READ"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


TERMINAL_STATUSES = frozenset(
    {NotificationStatus.READ, NotificationStatus.FAILED, NotificationStatus.EXPIRED}
)

# Statuses that count against the daily cap.
RATE_COUNTED_STATUSES = (
    NotificationStatus.PENDING,
    NotificationStatus.QUEUED,
    NotificationStatus.DELIVERED,
    NotificationStatus.READ,
)


class DeliveryErrorCode(str, Enum):
    DELIVERY_FAILED = "DELIVERY_FAILED"
    RATE_LIMITED = "RATE_LIMITED"
    QUIET_HOURS = "QUIET_HOURS"
    USER_DISABLED = "USER_DISABLED"
    INVALID_CHANNEL = "INVALID_CHANNEL"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"


def parse_channel(value: Any) -> Optional[NotificationChannel]:
    if isinstance(value, NotificationChannel):
        return value
    try:
        return NotificationChannel(str(value).upper())
    except ValueError:
        return None


def parse_channels(values: Any) -> list[NotificationChannel]:
    """Known channels in caller order, unknown names and duplicates dropped."""
    values = normalize_json(values, default=[])
    if isinstance(values, str):
        values = [values]
    result: list[NotificationChannel] = []
    for value in values or []:
        channel = parse_channel(value)
        if channel is not None and channel not in result:
            result.append(channel)
    return result


@dataclass
class DeliveryResult:
    success: bool
    channel: Optional[NotificationChannel] = None
    message_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[DeliveryErrorCode] = None
    retryable: bool = False

    @classmethod
    def ok(cls, channel: NotificationChannel, message_id: Optional[str] = None) -> "DeliveryResult":
        return cls(success=True, channel=channel, message_id=message_id)

    @classmethod
    def failure(
        cls,
        channel: NotificationChannel,
        code: DeliveryErrorCode,
        error: str,
        retryable: bool = False,
    ) -> "DeliveryResult":
        return cls(success=False, channel=channel, error=error, error_code=code, retryable=retryable)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "channel": self.channel.value if self.channel else None,
            "message_id": self.message_id,
            "error": self.error,
            "error_code": self.error_code.value if self.error_code else None,
            "retryable": self.retryable,
        }


@dataclass
class NotificationPayload:
    entity_id: str
    message: str
    priority: int = 0
    channels: list[NotificationChannel] = field(default_factory=list)
    rule_id: Optional[str] = None
    conversation_id: Optional[str] = None
    trigger_data: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)


@dataclass
class ProactiveMessage:
    id: str
    entity_id: str
    user_id: str
    message: str
    priority: int
    channels: list[NotificationChannel]
    status: NotificationStatus
    created_at: datetime
    rule_id: Optional[str] = None
    conversation_id: Optional[str] = None
    trigger_data: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)
    delivery_channel: Optional[NotificationChannel] = None
    retry_count: int = 0
    error_message: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ProactiveMessage":
        return cls(
            id=str(row["id"]),
            entity_id=str(row["entity_id"]),
            user_id=str(row["user_id"]),
            message=row["message"],
            priority=int(row.get("priority") or 0),
            channels=parse_channels(row.get("channels")),
            status=NotificationStatus(row["status"]),
            created_at=row["created_at"],
            rule_id=str(row["rule_id"]) if row.get("rule_id") is not None else None,
            conversation_id=(
                str(row["conversation_id"]) if row.get("conversation_id") is not None else None
            ),
            trigger_data=normalize_json(row.get("trigger_data"), default={}),
            metadata=normalize_json(row.get("metadata"), default={}),
            delivery_channel=parse_channel(row["delivery_channel"]) if row.get("delivery_channel") else None,
            retry_count=int(row.get("retry_count") or 0),
            error_message=row.get("error_message"),
            next_attempt_at=row.get("next_attempt_at"),
            delivered_at=row.get("delivered_at"),
            read_at=row.get("read_at"),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["channels"] = [c.value for c in self.channels]
        data["status"] = self.status.value
        data["delivery_channel"] = self.delivery_channel.value if self.delivery_channel else None
        for key in ("created_at", "next_attempt_at", "delivered_at", "read_at"):
            data[key] = format_timestamp(data[key])
        return data


@dataclass
class NotificationPreference:
    user_id: str
    channel: NotificationChannel
    entity_id: Optional[str] = None
    enabled: bool = True
    quiet_hours_enabled: bool = False
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None
    timezone: str = "UTC"
    max_per_day: Optional[int] = None
    # 0 admits every priority until the user raises it; matches the column default.
    priority_threshold: int = 0
    metadata: dict = field(default_factory=dict)

    @classmethod
    def default(cls, user_id: str, channel: NotificationChannel) -> "NotificationPreference":
        return cls(user_id=user_id, channel=channel)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "NotificationPreference":
        channel = parse_channel(row.get("channel")) or NotificationChannel.IN_APP
        max_per_day = row.get("max_per_day")
        return cls(
            user_id=str(row["user_id"]),
            channel=channel,
            entity_id=str(row["entity_id"]) if row.get("entity_id") is not None else None,
            enabled=bool(row.get("enabled", True)),
            quiet_hours_enabled=bool(row.get("quiet_hours_enabled", False)),
            quiet_hours_start=row.get("quiet_hours_start"),
            quiet_hours_end=row.get("quiet_hours_end"),
            timezone=row.get("timezone") or "UTC",
            max_per_day=int(max_per_day) if max_per_day is not None else None,
            priority_threshold=int(row.get("priority_threshold") or 0),
            metadata=normalize_json(row.get("metadata"), default={}),
        )


@dataclass
class Recipient:
    """Where a dispatcher should deliver, resolved from the user's preference."""

    user_id: str
    entity_id: str
    enabled: bool = True
    conversation_id: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    push_endpoint: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_preference(
        cls,
        pref: NotificationPreference,
        entity_id: str,
        conversation_id: Optional[str] = None,
    ) -> "Recipient":
        meta = pref.metadata or {}
        return cls(
            user_id=pref.user_id,
            entity_id=entity_id,
            enabled=pref.enabled,
            conversation_id=conversation_id,
            phone=meta.get("phone"),
            email=meta.get("email"),
            push_endpoint=meta.get("push_endpoint") or meta.get("endpoint"),
            metadata=dict(meta),
        )

    def has_address_for(self, channel: NotificationChannel) -> bool:
        if channel in (NotificationChannel.SMS, NotificationChannel.WHATSAPP):
            return bool(self.phone)
        if channel is NotificationChannel.EMAIL:
            return bool(self.email)
        if channel is NotificationChannel.WEB_PUSH:
            return bool(self.push_endpoint)
        return True


@dataclass
class DeliveryAttempt:
    notification_id: str
    channel: NotificationChannel
    attempted_at: datetime
    success: bool
    external_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
