"""
Queue-time policy: tier channel gate, preference resolution, priority
threshold, quiet hours and the daily cap window.

Everything here is pure; the service supplies "now", the user's
preferences and tier, and does the counting against the store.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from notification_service.errors import PolicyRejection
from notification_service.models import (
    DeliveryErrorCode,
    NotificationChannel,
    NotificationPayload,
    NotificationPreference,
)
from notification_service.tiers import TierLimits
from shared.utils import ensure_utc

logger = logging.getLogger(__name__)

RATE_LIMIT_REASON = "rate limit reached for today"


@dataclass
class PolicyDecision:
    channels: list[NotificationChannel]
    primary: NotificationPreference
    dropped: bool = False
    defer_until: Optional[datetime] = None
    daily_cap: Optional[int] = None
    cap_window_start: Optional[datetime] = None
    notes: list[str] = field(default_factory=list)


def zone_for(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown timezone on preference, using UTC", extra={"timezone": name})
        return ZoneInfo("UTC")


def parse_hhmm(value: Optional[str]) -> Optional[time]:
    if not value:
        return None
    parts = str(value).split(":")
    try:
        hour = int(parts[0])
        minute = int(parts[1]) if len(parts) > 1 else 0
        return time(hour=hour, minute=minute)
    except (ValueError, IndexError):
        return None


def resolve_preference(
    preferences: Sequence[NotificationPreference],
    user_id: str,
    entity_id: Optional[str],
    channel: NotificationChannel,
) -> NotificationPreference:
    """Entity-specific row, then the user's global row, then the built-in default."""
    global_pref = None
    for pref in preferences:
        if pref.channel != channel:
            continue
        if entity_id is not None and pref.entity_id == entity_id:
            return pref
        if pref.entity_id is None and global_pref is None:
            global_pref = pref
    if global_pref is not None:
        return global_pref
    return NotificationPreference.default(user_id, channel)


def gate_channels(
    requested: Sequence[NotificationChannel], tier: TierLimits
) -> list[NotificationChannel]:
    allowed = [c for c in requested if tier.allows(c)]
    if not allowed:
        return [NotificationChannel.IN_APP]
    return allowed


def quiet_window(
    pref: NotificationPreference, now: datetime
) -> Optional[tuple[datetime, datetime]]:
    """(start, end) in UTC of the quiet window containing now, or None.

    The window is half-open, [start, end), so a sweep running exactly at
    the end time dispatches. start > end means it spans local midnight.
    """
    if not pref.quiet_hours_enabled:
        return None
    start_t = parse_hhmm(pref.quiet_hours_start)
    end_t = parse_hhmm(pref.quiet_hours_end)
    if start_t is None or end_t is None or start_t == end_t:
        return None

    tz = zone_for(pref.timezone)
    local = ensure_utc(now).astimezone(tz)
    today = local.date()
    current = local.time().replace(tzinfo=None)

    if start_t < end_t:
        if not (start_t <= current < end_t):
            return None
        start_day, end_day = today, today
    elif current >= start_t:
        start_day, end_day = today, today + timedelta(days=1)
    elif current < end_t:
        start_day, end_day = today - timedelta(days=1), today
    else:
        return None

    start = datetime.combine(start_day, start_t, tzinfo=tz)
    end = datetime.combine(end_day, end_t, tzinfo=tz)
    return ensure_utc(start), ensure_utc(end)


def is_in_quiet_hours(pref: NotificationPreference, now: datetime) -> bool:
    return quiet_window(pref, now) is not None


def quiet_hours_end(pref: NotificationPreference, now: datetime) -> Optional[datetime]:
    window = quiet_window(pref, now)
    return window[1] if window else None


def local_midnight(tz_name: Optional[str], now: datetime) -> datetime:
    """Start of the current local day in tz_name, as UTC."""
    tz = zone_for(tz_name)
    local = ensure_utc(now).astimezone(tz)
    return ensure_utc(datetime.combine(local.date(), time(0, 0), tzinfo=tz))


def daily_cap(pref: NotificationPreference, tier: TierLimits) -> Optional[int]:
    caps = [c for c in (pref.max_per_day, tier.daily_cap) if c is not None and c > 0]
    return min(caps) if caps else None


def evaluate_policy(
    payload: NotificationPayload,
    user_id: str,
    tier: TierLimits,
    preferences: Sequence[NotificationPreference],
    now: datetime,
) -> PolicyDecision:
    """Apply tier gate, disabled channels, priority threshold and quiet hours.

    Raises PolicyRejection(USER_DISABLED) when every remaining channel is
    switched off. The daily cap needs a count from the store and is
    enforced by the caller using decision.daily_cap and cap_window_start.
    """
    requested = list(payload.channels) or [NotificationChannel.IN_APP]
    gated = gate_channels(requested, tier)
    notes: list[str] = []
    if gated != requested:
        notes.append("channels narrowed by tier")

    enabled: list[NotificationChannel] = []
    for channel in gated:
        pref = resolve_preference(preferences, user_id, payload.entity_id, channel)
        if pref.enabled:
            enabled.append(channel)
    if not enabled:
        raise PolicyRejection(
            DeliveryErrorCode.USER_DISABLED.value,
            "notifications are disabled for every allowed channel",
        )

    primary = resolve_preference(preferences, user_id, payload.entity_id, enabled[0])
    decision = PolicyDecision(channels=enabled, primary=primary, notes=notes)

    if payload.priority < primary.priority_threshold:
        decision.dropped = True
        return decision

    decision.defer_until = quiet_hours_end(primary, now)
    decision.daily_cap = daily_cap(primary, tier)
    decision.cap_window_start = local_midnight(primary.timezone, now)
    return decision


def backoff_seconds(retry_count: int, base: int, maximum: int) -> int:
    return min(base * (2 ** retry_count), maximum)
