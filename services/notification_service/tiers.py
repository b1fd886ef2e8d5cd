"""
Subscription tier limits.

The billing provider only tells us a tier name (via the subscriptions
table); everything the engine enforces comes from this static table.
Unknown or missing tiers resolve to FREE.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from notification_service.models import NotificationChannel

logger = logging.getLogger(__name__)

UNLIMITED = -1


@dataclass(frozen=True)
class TierLimits:
    name: str
    evaluation_frequency: int  # seconds between evaluations of one entity
    max_notifications_per_day: int
    max_rules_per_entity: int
    channels: tuple[NotificationChannel, ...]
    sensor_data_cache_ttl: int  # seconds
    priority: int

    def allows(self, channel: NotificationChannel) -> bool:
        return channel in self.channels

    @property
    def daily_cap(self) -> Optional[int]:
        if self.max_notifications_per_day <= 0:
            return None
        return self.max_notifications_per_day

    @property
    def rule_cap(self) -> Optional[int]:
        if self.max_rules_per_entity <= 0:
            return None
        return self.max_rules_per_entity


TIER_LIMITS: dict[str, TierLimits] = {
    "FREE": TierLimits(
        name="FREE",
        evaluation_frequency=30 * 60,
        max_notifications_per_day=10,
        max_rules_per_entity=3,
        channels=(NotificationChannel.IN_APP,),
        sensor_data_cache_ttl=3600,
        priority=1,
    ),
    "PERSONAL": TierLimits(
        name="PERSONAL",
        evaluation_frequency=15 * 60,
        max_notifications_per_day=50,
        max_rules_per_entity=10,
        channels=(NotificationChannel.IN_APP, NotificationChannel.WEB_PUSH),
        sensor_data_cache_ttl=1800,
        priority=2,
    ),
    "FAMILY": TierLimits(
        name="FAMILY",
        evaluation_frequency=5 * 60,
        max_notifications_per_day=200,
        max_rules_per_entity=25,
        channels=(
            NotificationChannel.IN_APP,
            NotificationChannel.WEB_PUSH,
            NotificationChannel.SMS,
        ),
        sensor_data_cache_ttl=600,
        priority=3,
    ),
    "BUSINESS": TierLimits(
        name="BUSINESS",
        evaluation_frequency=60,
        max_notifications_per_day=UNLIMITED,
        max_rules_per_entity=UNLIMITED,
        channels=(
            NotificationChannel.IN_APP,
            NotificationChannel.WEB_PUSH,
            NotificationChannel.SMS,
            NotificationChannel.WHATSAPP,
            # EMAIL is offered on BUSINESS only.
            NotificationChannel.EMAIL,
        ),
        sensor_data_cache_ttl=300,
        priority=4,
    ),
}

DEFAULT_TIER = "FREE"


def limits_for_tier(tier_name: Optional[str]) -> TierLimits:
    if not tier_name:
        return TIER_LIMITS[DEFAULT_TIER]
    limits = TIER_LIMITS.get(tier_name.strip().upper())
    if limits is None:
        logger.warning("unknown subscription tier, using FREE", extra={"tier": tier_name})
        return TIER_LIMITS[DEFAULT_TIER]
    return limits


class TierStore(Protocol):
    async def get_user_tier(self, user_id: str) -> Optional[str]: ...


class TierProvider:
    """Resolves a user's TierLimits through the subscriptions table."""

    def __init__(self, store: TierStore):
        self._store = store

    async def get_tier_limits(self, user_id: str) -> TierLimits:
        tier_name = await self._store.get_user_tier(user_id)
        return limits_for_tier(tier_name)
