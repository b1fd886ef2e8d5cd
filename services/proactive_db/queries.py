"""
PostgreSQL access for the rule evaluator and the notification service.

PgStore is the only place SQL lives. Rows come back as plain dicts with
uuid columns stringified; the aura_id column is exposed as entity_id.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Optional, Sequence

import asyncpg

from notification_service.models import (
    DeliveryAttempt,
    NotificationChannel,
    NotificationStatus,
    ProactiveMessage,
)
from notification_service.service import HistoryFilters
from rule_evaluator.execution_log import RuleExecutionLog

logger = logging.getLogger(__name__)

MESSAGE_COLUMNS = """
    id, aura_id AS entity_id, user_id, rule_id, conversation_id, message, priority,
    channels, trigger_data, metadata, status, delivery_channel, retry_count,
    error_message, next_attempt_at, created_at, delivered_at, read_at
"""

# Columns transition_status() may set alongside the status.
TRANSITION_FIELDS = frozenset(
    {
        "next_attempt_at",
        "delivered_at",
        "read_at",
        "delivery_channel",
        "error_message",
        "retry_count",
    }
)


def _value(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


def record_to_dict(row: Optional[asyncpg.Record]) -> Optional[dict]:
    if row is None:
        return None
    return {key: _value(value) for key, value in dict(row).items()}


def rows_to_dicts(rows: Sequence[asyncpg.Record]) -> list[dict]:
    return [record_to_dict(r) for r in rows]


def affected_rows(status: str) -> int:
    """Parse asyncpg's command tag, e.g. 'UPDATE 3'."""
    try:
        return int(status.split()[-1]) if status else 0
    except ValueError:
        return 0


def _db_value(value: Any) -> Any:
    if isinstance(value, (NotificationChannel, NotificationStatus)):
        return value.value
    return value


class PgStore:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    # ─── Entities and rules ──────────────────────────────────────

    async def fetch_eligible_entities(self) -> list[dict]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT a.id, a.user_id, a.name, a.timezone, a.last_evaluation_at
                FROM auras a
                WHERE a.enabled AND a.proactive_enabled
                  AND EXISTS (
                      SELECT 1 FROM behavior_rules r
                      WHERE r.aura_id = a.id AND r.enabled
                  )
                ORDER BY a.last_evaluation_at ASC NULLS FIRST, a.id ASC
                """
            )
        return rows_to_dicts(rows)

    async def fetch_enabled_rules(self, entity_ids: list[str]) -> list[dict]:
        if not entity_ids:
            return []
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, aura_id AS entity_id, name, trigger, action, priority,
                       enabled, cooldown_seconds, created_at, updated_at
                FROM behavior_rules
                WHERE aura_id = ANY($1::uuid[]) AND enabled
                ORDER BY aura_id, priority DESC, id ASC
                """,
                entity_ids,
            )
        return rows_to_dicts(rows)

    async def get_entity(self, entity_id: str) -> Optional[dict]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT id, user_id, name, timezone FROM auras WHERE id = $1::uuid",
                entity_id,
            )
        return record_to_dict(row)

    async def mark_entity_evaluated(self, entity_id: str, at: datetime) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                "UPDATE auras SET last_evaluation_at = $2 WHERE id = $1::uuid",
                entity_id,
                at,
            )

    async def get_user_tier(self, user_id: str) -> Optional[str]:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                """
                SELECT tier FROM subscriptions
                WHERE user_id = $1::uuid AND status IN ('active', 'trialing')
                ORDER BY updated_at DESC
                LIMIT 1
                """,
                user_id,
            )

    # ─── Execution log ───────────────────────────────────────────

    async def insert_execution_log(self, entry: RuleExecutionLog) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO rule_execution_log (
                    id, rule_id, aura_id, executed_at, triggered, skipped_reason,
                    sensor_snapshot, evaluation_detail, error, execution_time_ms
                )
                VALUES ($1::uuid, $2::uuid, $3::uuid, $4, $5, $6, $7::jsonb, $8::jsonb, $9, $10)
                """,
                entry.id,
                entry.rule_id,
                entry.entity_id,
                entry.executed_at,
                entry.triggered,
                entry.skipped_reason,
                entry.sensor_snapshot,
                entry.evaluation_detail,
                entry.error,
                entry.execution_time_ms,
            )

    async def last_triggered_at(self, rule_id: str) -> Optional[datetime]:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                """
                SELECT executed_at FROM rule_execution_log
                WHERE rule_id = $1::uuid AND triggered
                ORDER BY executed_at DESC
                LIMIT 1
                """,
                rule_id,
            )

    # ─── Preferences and counting ────────────────────────────────

    async def get_preferences(self, user_id: str) -> list[dict]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT user_id, aura_id AS entity_id, channel, enabled,
                       quiet_hours_enabled, quiet_hours_start, quiet_hours_end,
                       timezone, max_per_day, priority_threshold, metadata
                FROM notification_preferences
                WHERE user_id = $1::uuid
                """,
                user_id,
            )
        return rows_to_dicts(rows)

    async def count_notifications_since(
        self,
        user_id: str,
        entity_id: str,
        since: datetime,
        statuses: Sequence[NotificationStatus],
    ) -> int:
        async with self.pool.acquire() as conn:
            count = await conn.fetchval(
                """
                SELECT COUNT(*) FROM proactive_messages
                WHERE user_id = $1::uuid AND aura_id = $2::uuid
                  AND created_at >= $3
                  AND status = ANY($4::text[])
                """,
                user_id,
                entity_id,
                since,
                [_db_value(s) for s in statuses],
            )
        return int(count or 0)

    # ─── Notification lifecycle ──────────────────────────────────

    async def insert_message(self, message: ProactiveMessage) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO proactive_messages (
                    id, aura_id, user_id, rule_id, conversation_id, message, priority,
                    channels, trigger_data, metadata, status, retry_count, created_at
                )
                VALUES (
                    $1::uuid, $2::uuid, $3::uuid, $4::uuid, $5::uuid, $6, $7,
                    $8::text[], $9::jsonb, $10::jsonb, $11, 0, $12
                )
                """,
                message.id,
                message.entity_id,
                message.user_id,
                message.rule_id,
                message.conversation_id,
                message.message,
                message.priority,
                [c.value for c in message.channels],
                message.trigger_data,
                message.metadata,
                message.status.value,
                message.created_at,
            )

    async def get_message(self, message_id: str) -> Optional[dict]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {MESSAGE_COLUMNS} FROM proactive_messages WHERE id = $1::uuid",
                message_id,
            )
        return record_to_dict(row)

    async def transition_status(
        self,
        message_id: str,
        from_statuses: Sequence[NotificationStatus],
        to_status: NotificationStatus,
        **fields: Any,
    ) -> Optional[dict]:
        """Guarded status update; returns the updated row or None if the guard failed."""
        unknown = set(fields) - TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"cannot set columns: {sorted(unknown)}")

        params: list[Any] = [message_id, _db_value(to_status), [_db_value(s) for s in from_statuses]]
        assignments = ["status = $2"]
        for column, value in sorted(fields.items()):
            params.append(_db_value(value))
            assignments.append(f"{column} = ${len(params)}")

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE proactive_messages
                SET {", ".join(assignments)}
                WHERE id = $1::uuid AND status = ANY($3::text[])
                RETURNING {MESSAGE_COLUMNS}
                """,
                *params,
            )
        return record_to_dict(row)

    async def fetch_due_messages(self, now: datetime, limit: int) -> list[dict]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {MESSAGE_COLUMNS}
                FROM proactive_messages
                WHERE status = 'QUEUED' AND next_attempt_at <= $1
                ORDER BY created_at ASC, id ASC
                LIMIT $2
                """,
                now,
                limit,
            )
        return rows_to_dicts(rows)

    async def expire_stale(self, cutoff: datetime) -> int:
        async with self.pool.acquire() as conn:
            status = await conn.execute(
                """
                UPDATE proactive_messages
                SET status = 'EXPIRED', error_message = COALESCE(error_message, 'expired')
                WHERE status IN ('PENDING', 'QUEUED') AND created_at < $1
                """,
                cutoff,
            )
        return affected_rows(status)

    async def promote_stale_pending(self, cutoff: datetime, now: datetime) -> int:
        async with self.pool.acquire() as conn:
            status = await conn.execute(
                """
                UPDATE proactive_messages
                SET status = 'QUEUED', next_attempt_at = $2
                WHERE status = 'PENDING' AND created_at < $1
                """,
                cutoff,
                now,
            )
        return affected_rows(status)

    async def query_history(
        self, user_id: str, filters: HistoryFilters
    ) -> tuple[list[dict], int]:
        clauses = ["user_id = $1::uuid"]
        params: list[Any] = [user_id]
        if filters.entity_id:
            params.append(filters.entity_id)
            clauses.append(f"aura_id = ${len(params)}::uuid")
        if filters.status:
            params.append(_db_value(filters.status))
            clauses.append(f"status = ${len(params)}")
        if filters.start:
            params.append(filters.start)
            clauses.append(f"created_at >= ${len(params)}")
        if filters.end:
            params.append(filters.end)
            clauses.append(f"created_at < ${len(params)}")
        where = " AND ".join(clauses)

        async with self.pool.acquire() as conn:
            total = await conn.fetchval(
                f"SELECT COUNT(*) FROM proactive_messages WHERE {where}", *params
            )
            rows = await conn.fetch(
                f"""
                SELECT {MESSAGE_COLUMNS}
                FROM proactive_messages
                WHERE {where}
                ORDER BY created_at DESC, id DESC
                LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
                """,
                *params,
                filters.limit,
                filters.offset,
            )
        return rows_to_dicts(rows), int(total or 0)

    async def insert_delivery_attempt(self, attempt: DeliveryAttempt) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO notification_delivery_log (
                    notification_id, channel, attempted_at, success,
                    external_id, error_code, error_message
                )
                VALUES ($1::uuid, $2, $3, $4, $5, $6, $7)
                """,
                attempt.notification_id,
                attempt.channel.value,
                attempt.attempted_at,
                attempt.success,
                attempt.external_id,
                attempt.error_code,
                attempt.error_message,
            )

    # ─── In-app conversations ────────────────────────────────────

    async def append_conversation_message(
        self,
        entity_id: str,
        user_id: str,
        conversation_id: Optional[str],
        content: str,
        metadata: dict,
    ) -> tuple[str, str]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                conv_id = None
                if conversation_id:
                    conv_id = await conn.fetchval(
                        "SELECT id FROM conversations WHERE id = $1::uuid AND aura_id = $2::uuid",
                        conversation_id,
                        entity_id,
                    )
                if conv_id is None:
                    conv_id = await conn.fetchval(
                        """
                        SELECT id FROM conversations
                        WHERE aura_id = $1::uuid AND user_id = $2::uuid AND status = 'active'
                        ORDER BY updated_at DESC
                        LIMIT 1
                        FOR UPDATE
                        """,
                        entity_id,
                        user_id,
                    )
                if conv_id is None:
                    conv_id = await conn.fetchval(
                        """
                        INSERT INTO conversations (aura_id, user_id, status)
                        VALUES ($1::uuid, $2::uuid, 'active')
                        RETURNING id
                        """,
                        entity_id,
                        user_id,
                    )
                message_id = await conn.fetchval(
                    """
                    INSERT INTO conversation_messages (conversation_id, sender, content, metadata)
                    VALUES ($1::uuid, 'aura', $2, $3::jsonb)
                    RETURNING id
                    """,
                    conv_id,
                    content,
                    metadata,
                )
                await conn.execute(
                    "UPDATE conversations SET updated_at = now() WHERE id = $1::uuid",
                    conv_id,
                )
        return str(conv_id), str(message_id)
