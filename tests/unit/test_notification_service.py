import uuid
from datetime import datetime, timedelta, timezone

import pytest

from channel_dispatch.base import DispatcherRegistry
from channel_dispatch.in_app import InAppDispatcher
from notification_service.errors import (
    InvalidNotificationError,
    NotificationNotFound,
    PolicyRejection,
    PreconditionError,
)
from notification_service.models import (
    DeliveryErrorCode,
    DeliveryResult,
    NotificationChannel,
    NotificationPayload,
    NotificationStatus,
    ProactiveMessage,
)
from notification_service.service import DeliveryConfig, NotificationService
from notification_service.tiers import TierProvider
from tests.helpers.memory_store import ScriptedDispatcher

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]

IN_APP = NotificationChannel.IN_APP


def _service(store, *dispatchers, **config):
    registry = DispatcherRegistry(list(dispatchers) or [InAppDispatcher(store)])
    return NotificationService(store, TierProvider(store), registry, DeliveryConfig(**config))


def _payload(message="Time to water the fern", priority=1, channels=(IN_APP,), entity_id="e1"):
    return NotificationPayload(
        entity_id=entity_id,
        message=message,
        priority=priority,
        channels=list(channels),
        rule_id="r1",
    )


def _retryable():
    return DeliveryResult.failure(IN_APP, DeliveryErrorCode.EXTERNAL_SERVICE_ERROR, "http_503", retryable=True)


async def _insert_pending(store, created_at, entity_id="e1"):
    message = ProactiveMessage(
        id=str(uuid.uuid4()),
        entity_id=entity_id,
        user_id="user-1",
        message="pending one",
        priority=0,
        channels=[IN_APP],
        status=NotificationStatus.PENDING,
        created_at=created_at,
    )
    await store.insert_message(message)
    return message.id


async def test_queue_delivers_in_app_immediately(store, notifications, clock):
    store.add_entity("e1")

    notification_id = await notifications.queue(_payload())

    row = store.messages[notification_id]
    assert row["status"] == "DELIVERED"
    assert row["delivery_channel"] == "IN_APP"
    assert row["delivered_at"] == clock()
    assert store.conversation_messages[0]["content"] == "Time to water the fern"
    assert store.attempts[0].success is True


async def test_below_priority_threshold_is_never_queued(store, notifications, clock):
    store.add_entity("e1")
    store.add_preference("user-1", "IN_APP", priority_threshold=5)

    assert await notifications.queue(_payload(priority=2)) is None
    assert store.messages == {}


async def test_free_tier_narrows_channels_to_in_app(store, clock):
    store.add_entity("e1", tier="FREE")
    service = _service(store, dispatch_on_queue=False)

    notification_id = await service.queue(_payload(channels=[NotificationChannel.SMS, IN_APP]))

    row = store.messages[notification_id]
    assert row["channels"] == ["IN_APP"]
    assert row["status"] == "QUEUED"
    assert row["metadata"]["policy_notes"] == ["channels narrowed by tier"]


async def test_daily_cap_rejects_then_resets_at_local_midnight(store, notifications, clock):
    store.add_entity("e1", tier="FREE")
    store.add_preference("user-1", "IN_APP", max_per_day=2)

    await notifications.queue(_payload())
    await notifications.queue(_payload())
    with pytest.raises(PolicyRejection) as exc_info:
        await notifications.queue(_payload())
    assert exc_info.value.code == "RATE_LIMITED"
    assert len(store.messages) == 2

    clock.set(datetime(2024, 6, 4, 0, 5, tzinfo=timezone.utc))
    assert await notifications.queue(_payload()) is not None


async def test_invalid_payloads_are_refused(store, notifications, clock):
    store.add_entity("e1")
    with pytest.raises(InvalidNotificationError):
        await notifications.queue(_payload(message="   "))
    with pytest.raises(InvalidNotificationError):
        await notifications.queue(_payload(entity_id="nope"))


async def test_quiet_hours_defer_until_morning(store, notifications, clock):
    store.add_entity("e1")
    store.add_preference(
        "user-1",
        "IN_APP",
        quiet_hours_enabled=True,
        quiet_hours_start="22:00",
        quiet_hours_end="07:00",
    )
    clock.set(datetime(2024, 6, 3, 23, 30, tzinfo=timezone.utc))
    morning = datetime(2024, 6, 4, 7, 0, tzinfo=timezone.utc)

    notification_id = await notifications.queue(_payload())
    row = store.messages[notification_id]
    assert row["status"] == "QUEUED"
    assert row["next_attempt_at"] == morning

    clock.set(datetime(2024, 6, 4, 3, 0, tzinfo=timezone.utc))
    sweep = await notifications.process_queue()
    assert sweep.processed == 0

    clock.set(morning)
    sweep = await notifications.process_queue()
    assert sweep.delivered == 1
    assert store.messages[notification_id]["status"] == "DELIVERED"
    assert store.messages[notification_id]["retry_count"] == 0


async def test_sweep_reschedules_rows_that_fall_into_quiet_hours(store, clock):
    store.add_entity("e1")
    store.add_preference(
        "user-1",
        "IN_APP",
        quiet_hours_enabled=True,
        quiet_hours_start="22:00",
        quiet_hours_end="07:00",
    )
    service = _service(store, dispatch_on_queue=False)
    clock.set(datetime(2024, 6, 3, 21, 50, tzinfo=timezone.utc))
    notification_id = await service.queue(_payload())

    clock.set(datetime(2024, 6, 3, 22, 15, tzinfo=timezone.utc))
    sweep = await service.process_queue()

    row = store.messages[notification_id]
    assert sweep.deferred == 1
    assert row["status"] == "QUEUED"
    assert row["retry_count"] == 0
    assert row["next_attempt_at"] == datetime(2024, 6, 4, 7, 0, tzinfo=timezone.utc)
    assert store.attempts == []


async def test_retryable_failures_stop_after_max_retries(store, clock):
    store.add_entity("e1")
    dispatcher = ScriptedDispatcher(IN_APP, [_retryable() for _ in range(10)])
    service = _service(store, dispatcher, max_retries=3, backoff_base_seconds=30)

    notification_id = await service.queue(_payload())
    row = store.messages[notification_id]
    assert row["status"] == "QUEUED"
    assert row["retry_count"] == 1
    assert row["next_attempt_at"] == clock() + timedelta(seconds=30)

    for _ in range(4):
        clock.advance(3600)
        await service.process_queue()

    row = store.messages[notification_id]
    assert row["status"] == "FAILED"
    assert row["retry_count"] == 3
    assert len(dispatcher.sent) == 4
    assert row["error_message"] == "http_503"


async def test_non_retryable_failure_fails_immediately(store, clock):
    store.add_entity("e1")
    dispatcher = ScriptedDispatcher(
        IN_APP, [DeliveryResult.failure(IN_APP, DeliveryErrorCode.INVALID_CHANNEL, "gone")]
    )
    service = _service(store, dispatcher)

    notification_id = await service.queue(_payload())

    assert store.messages[notification_id]["status"] == "FAILED"
    clock.advance(3600)
    await service.process_queue()
    assert len(dispatcher.sent) == 1


async def test_stale_rows_expire_without_dispatch(store, clock):
    store.add_entity("e1")
    dispatcher = ScriptedDispatcher(IN_APP)
    service = _service(store, dispatcher, dispatch_on_queue=False)
    notification_id = await service.queue(_payload())

    clock.advance(25 * 3600)
    sweep = await service.process_queue()

    assert sweep.expired == 1
    assert store.messages[notification_id]["status"] == "EXPIRED"
    assert dispatcher.sent == []


async def test_stuck_pending_rows_are_promoted_and_sent(store, notifications, clock):
    store.add_entity("e1")
    notification_id = await _insert_pending(store, clock() - timedelta(minutes=5))

    sweep = await notifications.process_queue()

    assert sweep.promoted == 1
    assert sweep.delivered == 1
    assert store.messages[notification_id]["status"] == "DELIVERED"


async def test_unavailable_channel_falls_through_to_next(store, clock):
    store.add_entity("e1")
    push = ScriptedDispatcher(NotificationChannel.WEB_PUSH, available=False)
    in_app = ScriptedDispatcher(IN_APP)
    service = _service(store, push, in_app)

    notification_id = await service.queue(_payload(channels=[NotificationChannel.WEB_PUSH, IN_APP]))

    assert push.sent == []
    assert len(in_app.sent) == 1
    assert store.messages[notification_id]["delivery_channel"] == "IN_APP"


async def test_channel_without_recipient_address_falls_through_to_in_app(store, clock):
    store.add_entity("e1")
    sms = ScriptedDispatcher(NotificationChannel.SMS)
    in_app = ScriptedDispatcher(IN_APP)
    service = _service(store, sms, in_app)

    notification_id = await service.queue(_payload(channels=[NotificationChannel.SMS, IN_APP]))

    assert sms.sent == []
    assert len(in_app.sent) == 1
    row = store.messages[notification_id]
    assert row["status"] == "DELIVERED"
    assert row["delivery_channel"] == "IN_APP"


async def test_channel_with_recipient_address_is_used(store, clock):
    store.add_entity("e1")
    store.add_preference("user-1", "SMS", metadata={"phone": "+15550100"})
    sms = ScriptedDispatcher(NotificationChannel.SMS)
    in_app = ScriptedDispatcher(IN_APP)
    service = _service(store, sms, in_app)

    notification_id = await service.queue(_payload(channels=[NotificationChannel.SMS, IN_APP]))

    _, recipient = sms.sent[0]
    assert recipient.phone == "+15550100"
    assert in_app.sent == []
    assert store.messages[notification_id]["delivery_channel"] == "SMS"


async def test_dispatch_exception_is_classified_not_raised(store, clock):
    store.add_entity("e1")
    dispatcher = ScriptedDispatcher(IN_APP)

    async def explode(message, recipient):
        raise RuntimeError("kaboom")

    dispatcher.send = explode
    service = _service(store, dispatcher)

    notification_id = await service.queue(_payload())

    row = store.messages[notification_id]
    assert row["status"] == "FAILED"
    assert "unexpected_error" in row["error_message"]


async def test_mark_as_read_requires_delivered(store, notifications, clock):
    store.add_entity("e1")
    pending_id = await _insert_pending(store, clock())

    with pytest.raises(PreconditionError) as exc_info:
        await notifications.mark_as_read(pending_id)
    assert exc_info.value.status == "PENDING"

    with pytest.raises(NotificationNotFound):
        await notifications.mark_as_read(str(uuid.uuid4()))


async def test_mark_as_read_once_and_never_before_delivery(store, notifications, clock):
    store.add_entity("e1")
    notification_id = await notifications.queue(_payload())
    delivered_at = store.messages[notification_id]["delivered_at"]

    clock.advance(-30)
    read_at = await notifications.mark_as_read(notification_id)
    assert read_at >= delivered_at
    assert store.messages[notification_id]["status"] == "READ"

    with pytest.raises(PreconditionError):
        await notifications.mark_as_read(notification_id)


async def test_history_pages_newest_first(store, notifications, clock):
    store.add_entity("e1")
    ids = []
    for _ in range(3):
        ids.append(await notifications.queue(_payload()))
        clock.advance(60)

    page = await notifications.get_history("user-1", {"limit": 2})
    assert [n.id for n in page["notifications"]] == [ids[2], ids[1]]
    assert page["total"] == 3
    assert page["has_more"] is True

    rest = await notifications.get_history("user-1", {"limit": 2, "offset": 2})
    assert [n.id for n in rest["notifications"]] == [ids[0]]
    assert rest["has_more"] is False

    delivered = await notifications.get_history("user-1", {"status": "delivered"})
    assert delivered["total"] == 3

    with pytest.raises(InvalidNotificationError):
        await notifications.get_history("user-1", {"status": "LOST"})
