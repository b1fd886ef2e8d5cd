import json
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import asyncpg

from shared.config import env_int, optional_env, require_env

STATEMENT_TIMEOUT_MS = env_int("PG_STATEMENT_TIMEOUT_MS", 15000)


def _encode_json(value) -> str:
    return json.dumps(value, default=str)


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec(
        "jsonb", encoder=_encode_json, decoder=json.loads, schema="pg_catalog"
    )
    await conn.execute(f"SET statement_timeout = {int(STATEMENT_TIMEOUT_MS)}")


async def create_pool(min_size: int = 2, max_size: int = 10) -> asyncpg.Pool:
    database_url = os.getenv("DATABASE_URL")
    if database_url:
        return await asyncpg.create_pool(
            dsn=database_url,
            min_size=min_size,
            max_size=max_size,
            command_timeout=30,
            init=_init_connection,
        )
    return await asyncpg.create_pool(
        host=optional_env("PG_HOST", "proactive-postgres"),
        port=env_int("PG_PORT", 5432),
        database=optional_env("PG_DB", "proactive"),
        user=optional_env("PG_USER", "proactive"),
        password=require_env("PG_PASS"),
        min_size=min_size,
        max_size=max_size,
        command_timeout=30,
        init=_init_connection,
    )


@asynccontextmanager
async def transaction(pool: asyncpg.Pool) -> AsyncGenerator[asyncpg.Connection, None]:
    """
    Acquire a connection and open a transaction on it.

    Usage:
        async with transaction(pool) as conn:
            await conn.execute("UPDATE proactive_messages ...")
    """
    async with pool.acquire() as conn:
        async with conn.transaction():
            yield conn
