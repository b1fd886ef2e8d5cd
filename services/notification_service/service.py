"""
Notification lifecycle: queue, dispatch, retry, expiry, read receipts.

Only this module moves a proactive_messages row between statuses. Every
transition is a guarded UPDATE (status must still be one of the expected
values), so a sweep racing an immediate dispatch cannot double-deliver
through the status check, and a lost race is simply a no-op.
"""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol, Sequence

from channel_dispatch.base import DispatcherRegistry, result_from_exception
from notification_service.errors import (
    InvalidNotificationError,
    NotificationNotFound,
    PolicyRejection,
    PreconditionError,
)
from notification_service.models import (
    RATE_COUNTED_STATUSES,
    DeliveryAttempt,
    DeliveryErrorCode,
    DeliveryResult,
    NotificationChannel,
    NotificationPayload,
    NotificationPreference,
    NotificationStatus,
    ProactiveMessage,
    Recipient,
    parse_channels,
)
from notification_service.policy import (
    RATE_LIMIT_REASON,
    backoff_seconds,
    evaluate_policy,
    quiet_hours_end,
    resolve_preference,
)
from notification_service.tiers import TierLimits, TierProvider
from shared.config import env_bool, env_int
from shared.logging import bind_trace, log_event, log_exception
from shared.metrics import (
    notification_deliveries_total,
    notification_queue_depth,
    notifications_expired_total,
    notifications_queued_total,
    sweep_duration_seconds,
)
from shared.utils import ensure_utc, now_utc, truncate

logger = logging.getLogger(__name__)

HISTORY_DEFAULT_LIMIT = 20
HISTORY_MAX_LIMIT = 100


@dataclass(frozen=True)
class DeliveryConfig:
    max_retries: int = 3
    backoff_base_seconds: int = 30
    backoff_max_seconds: int = 3600
    max_age_hours: int = 24
    sweep_batch_size: int = 100
    pending_grace_seconds: int = 60
    dispatch_on_queue: bool = True

    @classmethod
    def from_env(cls) -> "DeliveryConfig":
        return cls(
            max_retries=env_int("NOTIFY_MAX_RETRIES", 3),
            backoff_base_seconds=env_int("NOTIFY_BACKOFF_BASE_SECONDS", 30),
            backoff_max_seconds=env_int("NOTIFY_BACKOFF_MAX_SECONDS", 3600),
            max_age_hours=env_int("NOTIFY_MAX_AGE_HOURS", 24),
            sweep_batch_size=env_int("NOTIFY_SWEEP_BATCH_SIZE", 100),
            pending_grace_seconds=env_int("NOTIFY_PENDING_GRACE_SECONDS", 60),
            dispatch_on_queue=env_bool("NOTIFY_DISPATCH_ON_QUEUE", True),
        )


@dataclass
class HistoryFilters:
    entity_id: Optional[str] = None
    status: Optional[NotificationStatus] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: int = HISTORY_DEFAULT_LIMIT
    offset: int = 0

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "HistoryFilters":
        data = data or {}
        status = data.get("status")
        try:
            limit = int(data.get("limit") or HISTORY_DEFAULT_LIMIT)
            offset = int(data.get("offset") or 0)
            parsed_status = NotificationStatus(str(status).upper()) if status else None
        except ValueError as exc:
            raise InvalidNotificationError(f"invalid history filter: {exc}")
        return cls(
            entity_id=data.get("entity_id"),
            status=parsed_status,
            start=data.get("start"),
            end=data.get("end"),
            limit=max(1, min(limit, HISTORY_MAX_LIMIT)),
            offset=max(0, offset),
        )


@dataclass
class SweepResult:
    processed: int = 0
    delivered: int = 0
    retried: int = 0
    failed: int = 0
    deferred: int = 0
    expired: int = 0
    promoted: int = 0
    duration_ms: int = 0
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class NotificationStore(Protocol):
    async def get_entity(self, entity_id: str) -> Optional[dict]: ...

    async def get_preferences(self, user_id: str) -> list[dict]: ...

    async def count_notifications_since(
        self,
        user_id: str,
        entity_id: str,
        since: datetime,
        statuses: Sequence[NotificationStatus],
    ) -> int: ...

    async def insert_message(self, message: ProactiveMessage) -> None: ...

    async def get_message(self, message_id: str) -> Optional[dict]: ...

    async def transition_status(
        self,
        message_id: str,
        from_statuses: Sequence[NotificationStatus],
        to_status: NotificationStatus,
        **fields: Any,
    ) -> Optional[dict]: ...

    async def fetch_due_messages(self, now: datetime, limit: int) -> list[dict]: ...

    async def expire_stale(self, cutoff: datetime) -> int: ...

    async def promote_stale_pending(self, cutoff: datetime, now: datetime) -> int: ...

    async def query_history(
        self, user_id: str, filters: HistoryFilters
    ) -> tuple[list[dict], int]: ...

    async def insert_delivery_attempt(self, attempt: DeliveryAttempt) -> None: ...


@dataclass
class _Recipients:
    entity: dict
    tier: TierLimits
    preferences: list[NotificationPreference]


class NotificationService:
    def __init__(
        self,
        store: NotificationStore,
        tiers: TierProvider,
        registry: DispatcherRegistry,
        config: Optional[DeliveryConfig] = None,
    ):
        self.store = store
        self.tiers = tiers
        self.registry = registry
        self.config = config or DeliveryConfig()

    # ─── Queue ───────────────────────────────────────────────────

    def _validate(self, payload: NotificationPayload) -> None:
        if not payload.entity_id:
            raise InvalidNotificationError("entity_id is required")
        if not isinstance(payload.message, str) or not payload.message.strip():
            raise InvalidNotificationError("message must be a non-empty string")
        if isinstance(payload.priority, bool) or not isinstance(payload.priority, int):
            raise InvalidNotificationError("priority must be an integer")
        payload.channels = parse_channels([getattr(c, "value", c) for c in payload.channels])

    async def _load_recipients(self, entity_id: str) -> _Recipients:
        entity = await self.store.get_entity(entity_id)
        if entity is None:
            raise InvalidNotificationError(f"unknown entity {entity_id}")
        user_id = str(entity["user_id"])
        tier = await self.tiers.get_tier_limits(user_id)
        rows = await self.store.get_preferences(user_id)
        return _Recipients(
            entity=entity,
            tier=tier,
            preferences=[NotificationPreference.from_row(r) for r in rows],
        )

    async def queue(self, payload: NotificationPayload) -> Optional[str]:
        """Apply policy and persist the payload.

        Returns the new notification id, or None when the payload was
        dropped by the priority threshold. Raises PolicyRejection when the
        user disabled every allowed channel or the daily cap is reached.
        """
        self._validate(payload)
        ctx = await self._load_recipients(payload.entity_id)
        user_id = str(ctx.entity["user_id"])
        now = now_utc()

        try:
            decision = evaluate_policy(payload, user_id, ctx.tier, ctx.preferences, now)
            if not decision.dropped and decision.daily_cap is not None:
                sent_today = await self.store.count_notifications_since(
                    user_id,
                    payload.entity_id,
                    decision.cap_window_start,
                    RATE_COUNTED_STATUSES,
                )
                if sent_today >= decision.daily_cap:
                    raise PolicyRejection(DeliveryErrorCode.RATE_LIMITED.value, RATE_LIMIT_REASON)
        except PolicyRejection as rejection:
            notifications_queued_total.labels(result="rejected").inc()
            log_event(
                logger,
                "notification rejected",
                entity_id=payload.entity_id,
                rule_id=payload.rule_id,
                code=rejection.code,
                reason=rejection.reason,
            )
            raise

        if decision.dropped:
            notifications_queued_total.labels(result="skipped").inc()
            log_event(
                logger,
                "notification skipped",
                entity_id=payload.entity_id,
                rule_id=payload.rule_id,
                reason="below_priority_threshold",
                priority=payload.priority,
                threshold=decision.primary.priority_threshold,
            )
            return None

        metadata = dict(payload.metadata or {})
        if decision.notes:
            metadata["policy_notes"] = decision.notes

        message = ProactiveMessage(
            id=str(uuid.uuid4()),
            entity_id=payload.entity_id,
            user_id=user_id,
            message=payload.message,
            priority=payload.priority,
            channels=decision.channels,
            status=NotificationStatus.PENDING,
            created_at=now,
            rule_id=payload.rule_id,
            conversation_id=payload.conversation_id,
            trigger_data=payload.trigger_data or {},
            metadata=metadata,
        )
        await self.store.insert_message(message)

        next_attempt_at = decision.defer_until or now
        await self.store.transition_status(
            message.id,
            [NotificationStatus.PENDING],
            NotificationStatus.QUEUED,
            next_attempt_at=next_attempt_at,
        )

        deferred = decision.defer_until is not None
        notifications_queued_total.labels(result="deferred" if deferred else "queued").inc()
        log_event(
            logger,
            "notification queued",
            notification_id=message.id,
            entity_id=message.entity_id,
            rule_id=message.rule_id,
            channels=[c.value for c in message.channels],
            deferred_until=next_attempt_at.isoformat() if deferred else None,
        )

        if not deferred and self.config.dispatch_on_queue:
            try:
                await self._dispatch(message.id, now, ctx)
            except Exception as exc:
                # The sweep picks the row up again; queuing already succeeded.
                log_exception(logger, "immediate dispatch failed", exc, {"notification_id": message.id})

        return message.id

    # ─── Read / history ──────────────────────────────────────────

    async def mark_as_read(self, notification_id: str) -> datetime:
        row = await self.store.get_message(notification_id)
        if row is None:
            raise NotificationNotFound(notification_id)

        now = now_utc()
        delivered_at = row.get("delivered_at")
        read_at = max(now, ensure_utc(delivered_at)) if delivered_at else now
        updated = await self.store.transition_status(
            notification_id,
            [NotificationStatus.DELIVERED],
            NotificationStatus.READ,
            read_at=read_at,
        )
        if updated is None:
            current = await self.store.get_message(notification_id)
            status = current["status"] if current else row["status"]
            raise PreconditionError(notification_id, str(status), NotificationStatus.DELIVERED.value)
        return read_at

    async def get_history(self, user_id: str, filters: Optional[dict] = None) -> dict:
        parsed = filters if isinstance(filters, HistoryFilters) else HistoryFilters.from_dict(filters)
        rows, total = await self.store.query_history(user_id, parsed)
        notifications = [ProactiveMessage.from_row(r) for r in rows]
        return {
            "notifications": notifications,
            "total": total,
            "has_more": parsed.offset + len(notifications) < total,
        }

    # ─── Dispatch ────────────────────────────────────────────────

    def select_channel(
        self, message: ProactiveMessage, ctx: _Recipients
    ) -> NotificationChannel:
        for channel in message.channels:
            if not ctx.tier.allows(channel):
                continue
            pref = resolve_preference(ctx.preferences, message.user_id, message.entity_id, channel)
            if not (pref.enabled and self.registry.is_available(channel)):
                continue
            if Recipient.from_preference(pref, message.entity_id).has_address_for(channel):
                return channel
        return NotificationChannel.IN_APP

    async def dispatch(self, message_id: str) -> Optional[DeliveryResult]:
        """Send one QUEUED, due notification. None when the row is not dispatchable."""
        result, _ = await self._dispatch(message_id, now_utc(), None)
        return result

    async def _dispatch(
        self,
        message_id: str,
        now: datetime,
        ctx: Optional[_Recipients],
    ) -> tuple[Optional[DeliveryResult], str]:
        row = await self.store.get_message(message_id)
        if row is None:
            return None, "missing"
        message = ProactiveMessage.from_row(row)
        if message.status != NotificationStatus.QUEUED:
            return None, "not_queued"
        if message.next_attempt_at and ensure_utc(message.next_attempt_at) > ensure_utc(now):
            return None, "not_due"

        if ctx is None:
            ctx = await self._load_recipients(message.entity_id)
        channel = self.select_channel(message, ctx)
        pref = resolve_preference(ctx.preferences, message.user_id, message.entity_id, channel)
        recipient = Recipient.from_preference(pref, message.entity_id, message.conversation_id)
        if ctx.entity.get("name"):
            recipient.metadata.setdefault("entity_name", ctx.entity["name"])

        dispatcher = self.registry.get(channel)
        if dispatcher is None:
            result = DeliveryResult.failure(
                channel, DeliveryErrorCode.INVALID_CHANNEL, "no dispatcher registered"
            )
        else:
            try:
                result = await dispatcher.send(message, recipient)
            except Exception as exc:
                result = result_from_exception(channel, exc)

        await self.store.insert_delivery_attempt(
            DeliveryAttempt(
                notification_id=message.id,
                channel=channel,
                attempted_at=now,
                success=result.success,
                external_id=result.message_id,
                error_code=result.error_code.value if result.error_code else None,
                error_message=truncate(result.error, 500),
            )
        )
        outcome = await self._apply_result(message, channel, result, now)
        notification_deliveries_total.labels(channel=channel.value, result=outcome).inc()
        return result, outcome

    async def _apply_result(
        self,
        message: ProactiveMessage,
        channel: NotificationChannel,
        result: DeliveryResult,
        now: datetime,
    ) -> str:
        if result.success:
            await self.store.transition_status(
                message.id,
                [NotificationStatus.QUEUED],
                NotificationStatus.DELIVERED,
                delivered_at=now,
                delivery_channel=channel,
                error_message=None,
            )
            log_event(
                logger,
                "notification delivered",
                notification_id=message.id,
                channel=channel.value,
                retry_count=message.retry_count,
            )
            return "delivered"

        error = truncate(result.error or "delivery failed", 500)
        if result.retryable and message.retry_count < self.config.max_retries:
            delay = backoff_seconds(
                message.retry_count,
                self.config.backoff_base_seconds,
                self.config.backoff_max_seconds,
            )
            next_attempt_at = now + timedelta(seconds=delay)
            await self.store.transition_status(
                message.id,
                [NotificationStatus.QUEUED],
                NotificationStatus.QUEUED,
                retry_count=message.retry_count + 1,
                next_attempt_at=next_attempt_at,
                error_message=error,
            )
            log_event(
                logger,
                "notification retry scheduled",
                level="WARNING",
                notification_id=message.id,
                channel=channel.value,
                error_code=result.error_code.value if result.error_code else None,
                retry_count=message.retry_count + 1,
                next_attempt_at=next_attempt_at.isoformat(),
            )
            return "retry"

        await self.store.transition_status(
            message.id,
            [NotificationStatus.QUEUED],
            NotificationStatus.FAILED,
            delivery_channel=channel,
            error_message=error,
        )
        log_event(
            logger,
            "notification failed",
            level="WARNING",
            notification_id=message.id,
            channel=channel.value,
            error_code=result.error_code.value if result.error_code else None,
            retry_count=message.retry_count,
            error=error,
        )
        return "failed"

    # ─── Sweep ───────────────────────────────────────────────────

    async def process_queue(self, limit: Optional[int] = None) -> SweepResult:
        """Expire stale rows, recover stuck PENDING rows, dispatch due QUEUED rows."""
        result = SweepResult()
        started = time.monotonic()
        limit = limit or self.config.sweep_batch_size

        with bind_trace():
            now = now_utc()
            result.expired = await self.store.expire_stale(
                now - timedelta(hours=self.config.max_age_hours)
            )
            if result.expired:
                notifications_expired_total.inc(result.expired)
            result.promoted = await self.store.promote_stale_pending(
                now - timedelta(seconds=self.config.pending_grace_seconds), now
            )

            rows = await self.store.fetch_due_messages(now, limit)
            notification_queue_depth.set(len(rows))

            for row in rows:
                message_id = str(row["id"])
                result.processed += 1
                try:
                    message = ProactiveMessage.from_row(row)
                    ctx = await self._load_recipients(message.entity_id)
                    primary_channel = message.channels[0] if message.channels else NotificationChannel.IN_APP
                    primary = resolve_preference(
                        ctx.preferences, message.user_id, message.entity_id, primary_channel
                    )
                    quiet_until = quiet_hours_end(primary, now)
                    if quiet_until is not None:
                        await self.store.transition_status(
                            message_id,
                            [NotificationStatus.QUEUED],
                            NotificationStatus.QUEUED,
                            next_attempt_at=quiet_until,
                        )
                        result.deferred += 1
                        continue

                    _, outcome = await self._dispatch(message_id, now, ctx)
                    if outcome == "delivered":
                        result.delivered += 1
                    elif outcome == "retry":
                        result.retried += 1
                    elif outcome == "failed":
                        result.failed += 1
                except Exception as exc:
                    result.errors.append({"notification_id": message_id, "error": str(exc)})
                    log_exception(logger, "sweep dispatch error", exc, {"notification_id": message_id})

        result.duration_ms = int((time.monotonic() - started) * 1000)
        sweep_duration_seconds.observe(result.duration_ms / 1000)
        log_event(
            logger,
            "dispatch sweep complete",
            processed=result.processed,
            delivered=result.delivered,
            retried=result.retried,
            failed=result.failed,
            deferred=result.deferred,
            expired=result.expired,
            errors=len(result.errors),
        )
        return result
