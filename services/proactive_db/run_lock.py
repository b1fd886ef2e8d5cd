"""
Short-TTL run lock in the job_locks table.

acquire() wins when no row exists or the existing row has expired; a
crashed holder therefore blocks the job for at most one TTL.
"""
import logging
import uuid
from typing import Optional

import asyncpg

logger = logging.getLogger(__name__)


class PgRunLock:
    def __init__(self, pool: asyncpg.Pool, owner: Optional[str] = None):
        self.pool = pool
        self.owner = owner or f"worker-{uuid.uuid4().hex[:12]}"

    async def acquire(self, job_name: str, ttl_seconds: int) -> Optional[str]:
        token = f"{self.owner}:{uuid.uuid4().hex}"
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO job_locks (job_name, token, acquired_at, expires_at)
                VALUES ($1, $2, now(), now() + ($3::int * interval '1 second'))
                ON CONFLICT (job_name) DO UPDATE
                SET token = EXCLUDED.token,
                    acquired_at = EXCLUDED.acquired_at,
                    expires_at = EXCLUDED.expires_at
                WHERE job_locks.expires_at < now()
                RETURNING token
                """,
                job_name,
                token,
                int(ttl_seconds),
            )
        if row is None:
            logger.info("run lock held elsewhere", extra={"job_name": job_name})
            return None
        return row["token"]

    async def release(self, job_name: str, token: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                "DELETE FROM job_locks WHERE job_name = $1 AND token = $2",
                job_name,
                token,
            )
