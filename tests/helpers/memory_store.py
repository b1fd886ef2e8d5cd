"""In-memory stand-ins for PgStore, PgRunLock, the snapshot service and transports."""
from __future__ import annotations

import copy
import uuid
from datetime import datetime
from typing import Any, Optional, Sequence

from channel_dispatch.base import ChannelDispatcher
from notification_service.models import (
    DeliveryAttempt,
    DeliveryResult,
    NotificationChannel,
    NotificationStatus,
    ProactiveMessage,
    Recipient,
)
from rule_evaluator.execution_log import RuleExecutionLog


def _plain(value: Any) -> Any:
    if isinstance(value, (NotificationChannel, NotificationStatus)):
        return value.value
    return value


class MemoryStore:
    """Implements every PgStore method the engine calls, backed by lists and dicts."""

    def __init__(self):
        self.entities: dict[str, dict] = {}
        self.rules: list[dict] = []
        self.tiers: dict[str, str] = {}
        self.preferences: list[dict] = []
        self.execution_logs: list[RuleExecutionLog] = []
        self.messages: dict[str, dict] = {}
        self.attempts: list[DeliveryAttempt] = []
        self.conversation_messages: list[dict] = []
        self.evaluated: list[tuple[str, datetime]] = []

    # ─── Fixture builders ────────────────────────────────────────

    def add_entity(
        self,
        entity_id: str,
        user_id: str = "user-1",
        tier: Optional[str] = "BUSINESS",
        name: str = "Fern",
        timezone: str = "UTC",
        last_evaluation_at: Optional[datetime] = None,
    ) -> dict:
        entity = {
            "id": entity_id,
            "user_id": user_id,
            "name": name,
            "timezone": timezone,
            "last_evaluation_at": last_evaluation_at,
            "enabled": True,
            "proactive_enabled": True,
        }
        self.entities[entity_id] = entity
        if tier is not None:
            self.tiers[user_id] = tier
        return entity

    def add_rule(
        self,
        rule_id: str,
        entity_id: str,
        trigger: Any,
        action: Optional[dict] = None,
        priority: int = 0,
        cooldown_seconds: Optional[int] = None,
        name: Optional[str] = None,
        enabled: bool = True,
    ) -> dict:
        row = {
            "id": rule_id,
            "entity_id": entity_id,
            "name": name or rule_id,
            "trigger": trigger,
            "action": action or {"type": "notify", "message": f"{rule_id} fired"},
            "priority": priority,
            "enabled": enabled,
            "cooldown_seconds": cooldown_seconds,
            "created_at": None,
            "updated_at": None,
        }
        self.rules.append(row)
        return row

    def add_preference(self, user_id: str, channel: str, **fields: Any) -> dict:
        row = {
            "user_id": user_id,
            "entity_id": fields.pop("entity_id", None),
            "channel": channel,
            "enabled": fields.pop("enabled", True),
            "quiet_hours_enabled": fields.pop("quiet_hours_enabled", False),
            "quiet_hours_start": fields.pop("quiet_hours_start", None),
            "quiet_hours_end": fields.pop("quiet_hours_end", None),
            "timezone": fields.pop("timezone", "UTC"),
            "max_per_day": fields.pop("max_per_day", None),
            "priority_threshold": fields.pop("priority_threshold", 0),
            "metadata": fields.pop("metadata", {}),
        }
        if fields:
            raise TypeError(f"unknown preference fields: {sorted(fields)}")
        self.preferences.append(row)
        return row

    def statuses(self) -> list[str]:
        return [m["status"] for m in self.messages.values()]

    # ─── Entities and rules ──────────────────────────────────────

    async def fetch_eligible_entities(self) -> list[dict]:
        with_rules = {r["entity_id"] for r in self.rules if r["enabled"]}
        rows = [
            copy.deepcopy(e)
            for e in self.entities.values()
            if e["enabled"] and e["proactive_enabled"] and e["id"] in with_rules
        ]
        rows.sort(
            key=lambda e: (
                e["last_evaluation_at"] is not None,
                e["last_evaluation_at"] or datetime.min,
                e["id"],
            )
        )
        return rows

    async def fetch_enabled_rules(self, entity_ids: list[str]) -> list[dict]:
        wanted = set(entity_ids)
        return [copy.deepcopy(r) for r in self.rules if r["enabled"] and r["entity_id"] in wanted]

    async def get_entity(self, entity_id: str) -> Optional[dict]:
        entity = self.entities.get(entity_id)
        return copy.deepcopy(entity) if entity else None

    async def mark_entity_evaluated(self, entity_id: str, at: datetime) -> None:
        self.entities[entity_id]["last_evaluation_at"] = at
        self.evaluated.append((entity_id, at))

    async def get_user_tier(self, user_id: str) -> Optional[str]:
        return self.tiers.get(user_id)

    # ─── Execution log ───────────────────────────────────────────

    async def insert_execution_log(self, entry: RuleExecutionLog) -> None:
        self.execution_logs.append(copy.deepcopy(entry))

    async def last_triggered_at(self, rule_id: str) -> Optional[datetime]:
        times = [e.executed_at for e in self.execution_logs if e.rule_id == rule_id and e.triggered]
        return max(times) if times else None

    # ─── Preferences and counting ────────────────────────────────

    async def get_preferences(self, user_id: str) -> list[dict]:
        return [copy.deepcopy(p) for p in self.preferences if p["user_id"] == user_id]

    async def count_notifications_since(
        self,
        user_id: str,
        entity_id: str,
        since: datetime,
        statuses: Sequence[NotificationStatus],
    ) -> int:
        wanted = {_plain(s) for s in statuses}
        return sum(
            1
            for m in self.messages.values()
            if m["user_id"] == user_id
            and m["entity_id"] == entity_id
            and m["created_at"] >= since
            and m["status"] in wanted
        )

    # ─── Notification lifecycle ──────────────────────────────────

    async def insert_message(self, message: ProactiveMessage) -> None:
        self.messages[message.id] = {
            "id": message.id,
            "entity_id": message.entity_id,
            "user_id": message.user_id,
            "rule_id": message.rule_id,
            "conversation_id": message.conversation_id,
            "message": message.message,
            "priority": message.priority,
            "channels": [c.value for c in message.channels],
            "trigger_data": copy.deepcopy(message.trigger_data),
            "metadata": copy.deepcopy(message.metadata),
            "status": message.status.value,
            "delivery_channel": None,
            "retry_count": 0,
            "error_message": None,
            "next_attempt_at": None,
            "created_at": message.created_at,
            "delivered_at": None,
            "read_at": None,
        }

    async def get_message(self, message_id: str) -> Optional[dict]:
        row = self.messages.get(message_id)
        return copy.deepcopy(row) if row else None

    async def transition_status(
        self,
        message_id: str,
        from_statuses: Sequence[NotificationStatus],
        to_status: NotificationStatus,
        **fields: Any,
    ) -> Optional[dict]:
        row = self.messages.get(message_id)
        if row is None or row["status"] not in {_plain(s) for s in from_statuses}:
            return None
        row["status"] = _plain(to_status)
        for key, value in fields.items():
            row[key] = _plain(value)
        return copy.deepcopy(row)

    async def fetch_due_messages(self, now: datetime, limit: int) -> list[dict]:
        due = [
            m
            for m in self.messages.values()
            if m["status"] == "QUEUED" and m["next_attempt_at"] is not None and m["next_attempt_at"] <= now
        ]
        due.sort(key=lambda m: (m["created_at"], m["id"]))
        return [copy.deepcopy(m) for m in due[:limit]]

    async def expire_stale(self, cutoff: datetime) -> int:
        count = 0
        for m in self.messages.values():
            if m["status"] in ("PENDING", "QUEUED") and m["created_at"] < cutoff:
                m["status"] = "EXPIRED"
                m["error_message"] = m["error_message"] or "expired"
                count += 1
        return count

    async def promote_stale_pending(self, cutoff: datetime, now: datetime) -> int:
        count = 0
        for m in self.messages.values():
            if m["status"] == "PENDING" and m["created_at"] < cutoff:
                m["status"] = "QUEUED"
                m["next_attempt_at"] = now
                count += 1
        return count

    async def query_history(self, user_id: str, filters) -> tuple[list[dict], int]:
        rows = [m for m in self.messages.values() if m["user_id"] == user_id]
        if filters.entity_id:
            rows = [m for m in rows if m["entity_id"] == filters.entity_id]
        if filters.status:
            rows = [m for m in rows if m["status"] == _plain(filters.status)]
        if filters.start:
            rows = [m for m in rows if m["created_at"] >= filters.start]
        if filters.end:
            rows = [m for m in rows if m["created_at"] < filters.end]
        rows.sort(key=lambda m: (m["created_at"], m["id"]), reverse=True)
        page = rows[filters.offset : filters.offset + filters.limit]
        return [copy.deepcopy(m) for m in page], len(rows)

    async def insert_delivery_attempt(self, attempt: DeliveryAttempt) -> None:
        self.attempts.append(attempt)

    # ─── In-app conversations ────────────────────────────────────

    async def append_conversation_message(
        self,
        entity_id: str,
        user_id: str,
        conversation_id: Optional[str],
        content: str,
        metadata: dict,
    ) -> tuple[str, str]:
        conv_id = conversation_id or f"conv-{entity_id}"
        message_id = f"cm-{len(self.conversation_messages) + 1}"
        self.conversation_messages.append(
            {
                "id": message_id,
                "conversation_id": conv_id,
                "entity_id": entity_id,
                "user_id": user_id,
                "content": content,
                "metadata": metadata,
            }
        )
        return conv_id, message_id


class MemoryRunLock:
    def __init__(self, held: bool = False):
        self.holder: Optional[str] = "someone-else" if held else None
        self.acquired: list[str] = []
        self.released: list[str] = []

    async def acquire(self, job_name: str, ttl_seconds: int) -> Optional[str]:
        if self.holder is not None:
            return None
        self.holder = f"token-{uuid.uuid4().hex[:8]}"
        self.acquired.append(job_name)
        return self.holder

    async def release(self, job_name: str, token: str) -> None:
        if token == self.holder:
            self.holder = None
            self.released.append(job_name)


class StaticSnapshots:
    """Snapshot provider returning fixed readings and counting calls."""

    def __init__(self, readings: Optional[dict[str, dict]] = None, fail_for: Sequence[str] = ()):
        self.readings = readings or {}
        self.fail_for = set(fail_for)
        self.calls: list[str] = []

    async def get_snapshot(self, entity_id: str, ttl: Optional[int] = None) -> dict[str, Any]:
        self.calls.append(entity_id)
        if entity_id in self.fail_for:
            raise RuntimeError(f"snapshot service unavailable for {entity_id}")
        return dict(self.readings.get(entity_id, {}))


class ScriptedDispatcher(ChannelDispatcher):
    """Returns queued DeliveryResults in order; succeeds once the script runs out."""

    def __init__(self, channel: NotificationChannel, results: Sequence[DeliveryResult] = (), available: bool = True):
        self.channel = channel
        self.results = list(results)
        self.available = available
        self.sent: list[tuple[ProactiveMessage, Recipient]] = []

    def is_available(self) -> bool:
        return self.available

    async def send(self, message: ProactiveMessage, recipient: Recipient) -> DeliveryResult:
        self.sent.append((message, recipient))
        if self.results:
            return self.results.pop(0)
        return self.ok(f"ext-{len(self.sent)}")
