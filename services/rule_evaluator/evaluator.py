"""
Rule evaluator worker.

One call to run_evaluation_pass() is one time-bounded batch job:

    lock -> COLLECT -> EVALUATE -> DONE
         COLLECT fails -> FAILED (entities/rules could not be loaded)

Per rule the order is evaluate, write the execution log row, then queue
the notification. Per-rule and per-queue failures are counted and logged;
only a COLLECT failure makes the pass unsuccessful. The pass never raises.

Run standalone (one pass, then exit):
    PYTHONPATH=services python -m rule_evaluator.evaluator
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional, Protocol

from notification_service.errors import PolicyRejection
from notification_service.models import NotificationChannel, NotificationPayload, parse_channels
from notification_service.tiers import TierLimits, TierProvider
from rule_evaluator.execution_log import (
    ExecutionLogWriter,
    RuleExecutionLog,
    cooldown_active,
    snapshot_for_log,
)
from rule_evaluator.rules import ActionType, BehaviorRule, parse_rule, render_message, sort_rules
from rule_evaluator.snapshots import SnapshotProvider, clock_fields
from rule_evaluator.triggers import evaluate_with_detail
from shared.config import env_float, env_int, optional_env
from shared.logging import bind_trace, log_event, log_exception
from shared.metrics import (
    entities_abandoned_total,
    evaluation_pass_duration_seconds,
    evaluation_passes_total,
    rule_evaluations_total,
)
from shared.utils import chunked, ensure_utc, now_utc, truncate

logger = logging.getLogger(__name__)

DEFAULT_ACTION_CHANNELS: dict[ActionType, list[NotificationChannel]] = {
    ActionType.NOTIFY: [NotificationChannel.IN_APP, NotificationChannel.WEB_PUSH],
    ActionType.ALERT: [
        NotificationChannel.IN_APP,
        NotificationChannel.WEB_PUSH,
        NotificationChannel.SMS,
        NotificationChannel.WHATSAPP,
        NotificationChannel.EMAIL,
    ],
    ActionType.RESPOND: [NotificationChannel.IN_APP],
    ActionType.PROMPT: [NotificationChannel.IN_APP],
    ActionType.LOG: [NotificationChannel.IN_APP],
    ActionType.WEBHOOK: [NotificationChannel.IN_APP],
}


@dataclass(frozen=True)
class EvaluatorConfig:
    batch_size: int = 50
    evaluation_timeout: float = 30.0
    concurrency: int = 10
    sensor_data_ttl: int = 600
    lock_ttl: int = 120
    job_name: str = "rule_evaluation"

    @classmethod
    def from_env(cls) -> "EvaluatorConfig":
        return cls(
            batch_size=env_int("EVAL_BATCH_SIZE", 50),
            evaluation_timeout=env_float("EVAL_TIMEOUT_SECONDS", 30.0),
            concurrency=env_int("EVAL_CONCURRENCY", 10),
            sensor_data_ttl=env_int("SENSOR_DATA_TTL_SECONDS", 600),
            lock_ttl=env_int("EVAL_LOCK_TTL_SECONDS", 120),
            job_name=optional_env("EVAL_JOB_NAME", "rule_evaluation"),
        )


class PassPhase(str, Enum):
    COLLECT = "COLLECT"
    EVALUATE = "EVALUATE"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass
class PassResult:
    success: bool = True
    skipped: bool = False
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    abandoned: int = 0
    triggered: int = 0
    notifications_queued: int = 0
    notifications_rejected: int = 0
    duration_ms: int = 0
    phase: PassPhase = PassPhase.COLLECT
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["phase"] = self.phase.value
        return data


@dataclass
class PassContext:
    """All state of one in-flight pass."""

    now: datetime
    deadline: float
    result: PassResult
    trace_id: str = ""
    snapshots: dict[str, dict] = field(default_factory=dict)
    tiers: dict[str, TierLimits] = field(default_factory=dict)

    def past_deadline(self) -> bool:
        return time.monotonic() >= self.deadline


@dataclass
class EntityWork:
    entity: dict
    tier: TierLimits
    rules: list[dict]

    @property
    def entity_id(self) -> str:
        return str(self.entity["id"])


class EvaluatorStore(Protocol):
    async def fetch_eligible_entities(self) -> list[dict]: ...

    async def fetch_enabled_rules(self, entity_ids: list[str]) -> list[dict]: ...

    async def insert_execution_log(self, entry: RuleExecutionLog) -> None: ...

    async def last_triggered_at(self, rule_id: str) -> Optional[datetime]: ...

    async def mark_entity_evaluated(self, entity_id: str, at: datetime) -> None: ...


class RunLock(Protocol):
    async def acquire(self, job_name: str, ttl_seconds: int) -> Optional[str]: ...

    async def release(self, job_name: str, token: str) -> None: ...


class Notifier(Protocol):
    async def queue(self, payload: NotificationPayload) -> Optional[str]: ...


class RuleEvaluatorWorker:
    def __init__(
        self,
        store: EvaluatorStore,
        snapshots: SnapshotProvider,
        tiers: TierProvider,
        notifier: Notifier,
        run_lock: Optional[RunLock] = None,
        config: Optional[EvaluatorConfig] = None,
    ):
        self.store = store
        self.snapshots = snapshots
        self.tiers = tiers
        self.notifier = notifier
        self.run_lock = run_lock
        self.config = config or EvaluatorConfig()
        self.log_writer = ExecutionLogWriter(store)

    async def run_evaluation_pass(self) -> PassResult:
        started = time.monotonic()
        result = PassResult()

        with bind_trace() as trace_id:
            token = None
            if self.run_lock is not None:
                try:
                    token = await self.run_lock.acquire(self.config.job_name, self.config.lock_ttl)
                except Exception as exc:
                    log_exception(logger, "run lock acquire failed", exc, {"job_name": self.config.job_name})
                    result.errors.append(f"lock acquire failed: {exc}")
                    token = None
                if token is None:
                    result.skipped = True
                    result.phase = PassPhase.DONE
                    result.duration_ms = int((time.monotonic() - started) * 1000)
                    evaluation_passes_total.labels(outcome="lock_skipped").inc()
                    log_event(logger, "evaluation pass skipped, lock held", job_name=self.config.job_name)
                    return result

            ctx = PassContext(
                now=now_utc(),
                deadline=started + self.config.evaluation_timeout,
                result=result,
                trace_id=trace_id,
            )
            try:
                await self._run(ctx)
            except Exception as exc:
                # Only reachable through bugs; the pass still reports instead of raising.
                result.success = False
                result.phase = PassPhase.FAILED
                result.errors.append(f"pass aborted: {exc}")
                log_exception(logger, "evaluation pass aborted", exc)
            finally:
                if self.run_lock is not None and token is not None:
                    try:
                        await self.run_lock.release(self.config.job_name, token)
                    except Exception as exc:
                        log_exception(logger, "run lock release failed", exc, {"job_name": self.config.job_name})

        result.duration_ms = int((time.monotonic() - started) * 1000)
        evaluation_pass_duration_seconds.observe(result.duration_ms / 1000)
        evaluation_passes_total.labels(
            outcome="completed" if result.success else "collect_failed"
        ).inc()
        log_event(
            logger,
            "evaluation pass complete",
            level="INFO" if result.success else "ERROR",
            success=result.success,
            processed=result.processed,
            succeeded=result.succeeded,
            failed=result.failed,
            abandoned=result.abandoned,
            triggered=result.triggered,
            notifications_queued=result.notifications_queued,
            notifications_rejected=result.notifications_rejected,
            duration_ms=result.duration_ms,
        )
        return result

    async def _run(self, ctx: PassContext) -> None:
        result = ctx.result
        result.phase = PassPhase.COLLECT
        try:
            work = await self.collect(ctx)
        except Exception as exc:
            result.success = False
            result.phase = PassPhase.FAILED
            result.errors.append(f"collect failed: {exc}")
            log_exception(logger, "evaluation collect failed", exc)
            return

        result.phase = PassPhase.EVALUATE
        semaphore = asyncio.Semaphore(max(1, self.config.concurrency))

        async def guarded(item: EntityWork) -> None:
            async with semaphore:
                try:
                    await self.process_entity(ctx, item)
                except Exception as exc:
                    # One entity never fails the batch.
                    result.failed += 1
                    result.errors.append(f"entity {item.entity_id}: {exc}")
                    log_exception(logger, "entity evaluation failed", exc, {"entity_id": item.entity_id})

        for batch in chunked(work, max(1, self.config.batch_size)):
            if ctx.past_deadline():
                self._abandon(ctx, len(batch))
                continue
            await asyncio.gather(*(guarded(item) for item in batch))

        result.phase = PassPhase.DONE

    def _abandon(self, ctx: PassContext, count: int) -> None:
        ctx.result.abandoned += count
        entities_abandoned_total.inc(count)

    # ─── COLLECT ─────────────────────────────────────────────────

    async def _tier_for(self, ctx: PassContext, user_id: str) -> TierLimits:
        tier = ctx.tiers.get(user_id)
        if tier is None:
            tier = await self.tiers.get_tier_limits(user_id)
            ctx.tiers[user_id] = tier
        return tier

    async def collect(self, ctx: PassContext) -> list[EntityWork]:
        entities = await self.store.fetch_eligible_entities()
        due: list[tuple[dict, TierLimits]] = []
        for entity in entities:
            tier = await self._tier_for(ctx, str(entity["user_id"]))
            last = entity.get("last_evaluation_at")
            if last is not None and ctx.now - ensure_utc(last) < timedelta(
                seconds=tier.evaluation_frequency
            ):
                continue
            due.append((entity, tier))

        if not due:
            return []

        rule_rows = await self.store.fetch_enabled_rules([str(e["id"]) for e, _ in due])
        by_entity: dict[str, list[dict]] = {}
        for row in rule_rows:
            by_entity.setdefault(str(row["entity_id"]), []).append(row)

        work = [
            EntityWork(entity=entity, tier=tier, rules=by_entity[str(entity["id"])])
            for entity, tier in due
            if by_entity.get(str(entity["id"]))
        ]
        log_event(
            logger,
            "evaluation collect complete",
            entities_total=len(entities),
            entities_due=len(work),
            rules_total=sum(len(w.rules) for w in work),
        )
        return work

    async def _snapshot_for(self, ctx: PassContext, item: EntityWork) -> dict[str, Any]:
        snapshot = ctx.snapshots.get(item.entity_id)
        if snapshot is None:
            raw = await self.snapshots.get_snapshot(
                item.entity_id, ttl=item.tier.sensor_data_cache_ttl
            )
            snapshot = dict(raw or {})
            snapshot["clock"] = clock_fields(ctx.now, item.entity.get("timezone"))
            ctx.snapshots[item.entity_id] = snapshot
        return snapshot

    # ─── EVALUATE ────────────────────────────────────────────────

    def _rules_in_order(self, item: EntityWork) -> tuple[list[BehaviorRule], list[tuple[dict, Exception]]]:
        parsed: list[BehaviorRule] = []
        invalid: list[tuple[dict, Exception]] = []
        for row in item.rules:
            try:
                parsed.append(parse_rule(row))
            except Exception as exc:
                invalid.append((row, exc))
        ordered = sort_rules(parsed)
        cap = item.tier.rule_cap
        if cap is not None and len(ordered) > cap:
            ordered = ordered[:cap]
        return ordered, invalid

    async def process_entity(self, ctx: PassContext, item: EntityWork) -> None:
        result = ctx.result
        if ctx.past_deadline():
            self._abandon(ctx, 1)
            return

        rules, invalid = self._rules_in_order(item)
        for row, exc in invalid:
            await self._record_rule_failure(ctx, str(row.get("id")), item.entity_id, {}, exc)

        snapshot: Optional[dict] = None
        snapshot_error: Optional[Exception] = None
        try:
            snapshot = await self._snapshot_for(ctx, item)
        except Exception as exc:
            snapshot_error = exc
            log_exception(logger, "snapshot fetch failed", exc, {"entity_id": item.entity_id})

        for rule in rules:
            if ctx.past_deadline():
                # Partially handled; last_evaluation_at stays put so the next pass retries.
                self._abandon(ctx, 1)
                return
            if snapshot_error is not None:
                await self._record_rule_failure(ctx, rule.id, item.entity_id, {}, snapshot_error)
                continue
            await self.process_rule(ctx, item, rule, snapshot)

        try:
            await self.store.mark_entity_evaluated(item.entity_id, ctx.now)
        except Exception as exc:
            result.errors.append(f"entity {item.entity_id}: mark evaluated failed: {exc}")
            log_exception(logger, "mark entity evaluated failed", exc, {"entity_id": item.entity_id})

    async def _record_rule_failure(
        self,
        ctx: PassContext,
        rule_id: str,
        entity_id: str,
        snapshot: dict,
        exc: Exception,
    ) -> None:
        ctx.result.processed += 1
        ctx.result.failed += 1
        ctx.result.errors.append(f"rule {rule_id}: {exc}")
        rule_evaluations_total.labels(result="error").inc()
        try:
            await self.log_writer.record(
                RuleExecutionLog(
                    rule_id=rule_id,
                    entity_id=entity_id,
                    executed_at=ctx.now,
                    triggered=False,
                    sensor_snapshot=snapshot_for_log(snapshot),
                    error=truncate(f"{type(exc).__name__}: {exc}", 2000),
                )
            )
        except Exception as log_exc:
            log_exception(logger, "execution log write failed", log_exc, {"rule_id": rule_id})

    async def process_rule(
        self,
        ctx: PassContext,
        item: EntityWork,
        rule: BehaviorRule,
        snapshot: dict[str, Any],
    ) -> None:
        result = ctx.result
        rule_started = time.monotonic()
        try:
            if rule.cooldown_seconds:
                last = await self.log_writer.last_triggered_at(rule.id)
                if cooldown_active(last, rule.cooldown_seconds, ctx.now):
                    await self.log_writer.record_cooldown_skip(rule.id, item.entity_id, ctx.now, last)
                    result.processed += 1
                    result.succeeded += 1
                    rule_evaluations_total.labels(result="cooldown").inc()
                    return

            detail = evaluate_with_detail(rule.trigger, snapshot)
            entry = RuleExecutionLog(
                rule_id=rule.id,
                entity_id=item.entity_id,
                executed_at=ctx.now,
                triggered=detail.matched,
                sensor_snapshot=snapshot_for_log(snapshot),
                evaluation_detail=detail.to_dict(),
                execution_time_ms=int((time.monotonic() - rule_started) * 1000),
            )
            await self.log_writer.record(entry)
        except Exception as exc:
            await self._record_rule_failure(ctx, rule.id, item.entity_id, snapshot, exc)
            return

        result.processed += 1
        rule_evaluations_total.labels(result="triggered" if detail.matched else "not_triggered").inc()
        if not detail.matched:
            result.succeeded += 1
            return

        result.triggered += 1
        payload = self.build_payload(item, rule, snapshot, entry, detail.checks)
        try:
            notification_id = await self.notifier.queue(payload)
        except PolicyRejection as rejection:
            result.succeeded += 1
            result.notifications_rejected += 1
            log_event(
                logger,
                "rule notification rejected by policy",
                rule_id=rule.id,
                entity_id=item.entity_id,
                code=rejection.code,
                reason=rejection.reason,
            )
            return
        except Exception as exc:
            result.failed += 1
            result.errors.append(f"rule {rule.id}: queue failed: {exc}")
            log_exception(logger, "notification queue failed", exc, {"rule_id": rule.id, "entity_id": item.entity_id})
            return

        result.succeeded += 1
        if notification_id is not None:
            result.notifications_queued += 1
        log_event(
            logger,
            "rule triggered",
            rule_id=rule.id,
            entity_id=item.entity_id,
            notification_id=notification_id,
            priority=rule.priority,
        )

    def build_payload(
        self,
        item: EntityWork,
        rule: BehaviorRule,
        snapshot: dict[str, Any],
        entry: RuleExecutionLog,
        checks: list[dict],
    ) -> NotificationPayload:
        channels = parse_channels(list(rule.action.channels))
        if not channels:
            channels = list(DEFAULT_ACTION_CHANNELS.get(rule.action.type, [NotificationChannel.IN_APP]))
        return NotificationPayload(
            entity_id=item.entity_id,
            message=render_message(rule.action, snapshot),
            priority=rule.priority,
            channels=channels,
            rule_id=rule.id,
            trigger_data={
                "rule_name": rule.name,
                "execution_log_id": entry.id,
                "checks": checks,
            },
            metadata={"action_type": rule.action.type.value, "parameters": rule.action.parameters},
        )


async def main() -> None:
    from channel_dispatch.registry import build_default_registry
    from notification_service.service import DeliveryConfig, NotificationService
    from proactive_db.pool import create_pool
    from proactive_db.queries import PgStore
    from proactive_db.run_lock import PgRunLock
    from rule_evaluator.snapshots import CachingSnapshotProvider, HttpSnapshotProvider
    from shared.logging import configure_logging

    configure_logging("rule_evaluator")
    config = EvaluatorConfig.from_env()
    pool = await create_pool()
    try:
        store = PgStore(pool)
        tiers = TierProvider(store)
        notifications = NotificationService(
            store, tiers, build_default_registry(store), DeliveryConfig.from_env()
        )
        worker = RuleEvaluatorWorker(
            store=store,
            snapshots=CachingSnapshotProvider(HttpSnapshotProvider.from_env(), config.sensor_data_ttl),
            tiers=tiers,
            notifier=notifications,
            run_lock=PgRunLock(pool),
            config=config,
        )
        await worker.run_evaluation_pass()
    finally:
        await pool.close()


if __name__ == "__main__":
    asyncio.run(main())
