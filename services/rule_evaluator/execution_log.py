"""
Rule execution log writer.

Every evaluation attempt, triggered or not, produces one append-only
rule_execution_log row. The same table answers the cooldown question:
when did this rule last *trigger*.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol

from shared.utils import ensure_utc, truncate

logger = logging.getLogger(__name__)

SKIPPED_COOLDOWN = "cooldown"


@dataclass
class RuleExecutionLog:
    rule_id: str
    entity_id: str
    executed_at: datetime
    triggered: bool
    sensor_snapshot: dict = field(default_factory=dict)
    evaluation_detail: Optional[dict] = None
    skipped_reason: Optional[str] = None
    error: Optional[str] = None
    execution_time_ms: Optional[int] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict:
        return asdict(self)


class ExecutionLogStore(Protocol):
    async def insert_execution_log(self, entry: RuleExecutionLog) -> None: ...

    async def last_triggered_at(self, rule_id: str) -> Optional[datetime]: ...


class ExecutionLogWriter:
    def __init__(self, store: ExecutionLogStore):
        self._store = store

    async def record(self, entry: RuleExecutionLog) -> None:
        entry.error = truncate(entry.error, 2000)
        await self._store.insert_execution_log(entry)
        logger.debug(
            "rule execution logged",
            extra={
                "rule_id": entry.rule_id,
                "entity_id": entry.entity_id,
                "triggered": entry.triggered,
                "skipped_reason": entry.skipped_reason,
                "has_error": entry.error is not None,
            },
        )

    async def record_cooldown_skip(
        self,
        rule_id: str,
        entity_id: str,
        executed_at: datetime,
        last_triggered: datetime,
    ) -> RuleExecutionLog:
        entry = RuleExecutionLog(
            rule_id=rule_id,
            entity_id=entity_id,
            executed_at=executed_at,
            triggered=False,
            skipped_reason=SKIPPED_COOLDOWN,
            evaluation_detail={"last_triggered_at": ensure_utc(last_triggered).isoformat()},
        )
        await self.record(entry)
        return entry

    async def last_triggered_at(self, rule_id: str) -> Optional[datetime]:
        return await self._store.last_triggered_at(rule_id)


def cooldown_active(
    last_triggered: Optional[datetime],
    cooldown_seconds: Optional[int],
    now: datetime,
) -> bool:
    """True while now - last_triggered < cooldown."""
    if last_triggered is None or not cooldown_seconds:
        return False
    return ensure_utc(now) - ensure_utc(last_triggered) < timedelta(seconds=cooldown_seconds)


def snapshot_for_log(snapshot: dict[str, Any]) -> dict[str, Any]:
    """Drop the synthetic clock keys; they are reproducible from executed_at."""
    return {k: v for k, v in snapshot.items() if k != "clock"}
