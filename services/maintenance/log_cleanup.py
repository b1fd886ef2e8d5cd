"""
Retention cleanup for notification and rule-execution history.

Run via: PYTHONPATH=services python -m maintenance.log_cleanup [days]
Also exposed as POST /cron/cleanup-notifications on the cron API.
"""
import asyncio
import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

import asyncpg

from proactive_db.pool import create_pool
from shared.logging import configure_logging, log_event
from shared.utils import now_utc

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30
BATCH_SIZE = 10000


@dataclass(frozen=True)
class CleanupTarget:
    table_name: str
    timestamp_column: str
    condition: str


# Only terminal or uninteresting rows are removed. Triggered execution
# logs are kept since cooldown lookups read them.
CLEANUP_TARGETS = (
    CleanupTarget(
        "proactive_messages",
        "created_at",
        "status IN ('DELIVERED', 'READ', 'FAILED', 'EXPIRED')",
    ),
    CleanupTarget("rule_execution_log", "executed_at", "NOT triggered"),
    CleanupTarget("notification_delivery_log", "attempted_at", "TRUE"),
)


async def cleanup_table(
    conn: asyncpg.Connection,
    target: CleanupTarget,
    cutoff: datetime,
    batch_size: int = BATCH_SIZE,
) -> int:
    """Delete matching rows in batches. Returns number of rows deleted."""
    total_deleted = 0

    while True:
        result = await conn.execute(
            f"""
            DELETE FROM {target.table_name}
            WHERE ctid IN (
                SELECT ctid FROM {target.table_name}
                WHERE {target.timestamp_column} < $1 AND {target.condition}
                LIMIT $2
            )
            """,
            cutoff,
            batch_size,
        )
        deleted = int(result.split()[-1])
        total_deleted += deleted
        if deleted < batch_size:
            break
        await asyncio.sleep(0.1)

    return total_deleted


async def release_expired_locks(conn: asyncpg.Connection) -> int:
    result = await conn.execute("DELETE FROM job_locks WHERE expires_at < now()")
    return int(result.split()[-1])


async def run_cleanup(
    conn: asyncpg.Connection,
    days: int = DEFAULT_RETENTION_DAYS,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    if days < 1:
        raise ValueError("retention days must be at least 1")
    cutoff = (now or now_utc()) - timedelta(days=days)
    job_id = await conn.fetchval(
        """
        INSERT INTO maintenance_log (job_name, started_at, status)
        VALUES ('notification_cleanup', now(), 'RUNNING')
        RETURNING id
        """
    )

    details: Dict[str, int] = {}
    try:
        for target in CLEANUP_TARGETS:
            deleted = await cleanup_table(conn, target, cutoff)
            details[target.table_name] = deleted
            if deleted > 0:
                log_event(
                    logger,
                    "cleaned table",
                    table=target.table_name,
                    rows=deleted,
                    retention_days=days,
                )
        details["job_locks"] = await release_expired_locks(conn)

        await conn.execute(
            """
            UPDATE maintenance_log
            SET completed_at = now(), status = 'COMPLETED',
                rows_affected = $2, details = $3::jsonb
            WHERE id = $1
            """,
            job_id,
            sum(details.values()),
            details,
        )
    except Exception as e:
        await conn.execute(
            """
            UPDATE maintenance_log
            SET completed_at = now(), status = 'FAILED', error_message = $2
            WHERE id = $1
            """,
            job_id,
            str(e),
        )
        raise

    log_event(logger, "notification cleanup complete", retention_days=days, **details)
    return details


async def main() -> None:
    configure_logging("log_cleanup")
    days = int(sys.argv[1]) if len(sys.argv) > 1 else DEFAULT_RETENTION_DAYS
    pool = await create_pool(min_size=1, max_size=1)
    try:
        async with pool.acquire() as conn:
            await run_cleanup(conn, days)
    finally:
        await pool.close()


if __name__ == "__main__":
    asyncio.run(main())
