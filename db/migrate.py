#!/usr/bin/env python3
"""
Database migration runner for the proactive notification engine.

Usage:
    python3 db/migrate.py            # apply pending migrations
    python3 db/migrate.py --status   # list applied / pending, change nothing

Reads DATABASE_URL from environment. Applies all *.sql files in
db/migrations/ in numeric filename order, each in its own transaction.
A file whose contents changed after it was applied is reported and
aborts the run. Exits non-zero on any error.
"""

import argparse
import hashlib
import logging
import os
import re
import sys
from pathlib import Path

import psycopg2

logging.basicConfig(
    level=logging.INFO,
    format='{"ts":"%(asctime)s","level":"%(levelname)s","msg":"%(message)s"}',
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger("migrator")

MIGRATIONS_DIR = Path(os.environ.get("MIGRATIONS_DIR", Path(__file__).parent / "migrations"))

CREATE_TRACKING_TABLE = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version     TEXT        NOT NULL PRIMARY KEY,
    filename    TEXT        NOT NULL,
    checksum    TEXT        NOT NULL,
    applied_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


class MigrationError(RuntimeError):
    pass


def get_connection():
    db_url = os.environ.get("DATABASE_URL")
    if not db_url:
        logger.error("DATABASE_URL environment variable is not set")
        sys.exit(1)
    logger.info("Connecting to database")
    return psycopg2.connect(db_url)


def checksum(sql: str) -> str:
    return hashlib.sha256(sql.encode("utf-8")).hexdigest()


def get_migration_files(directory: Path = MIGRATIONS_DIR) -> list[tuple[str, Path]]:
    files: list[tuple[str, Path]] = []
    for file_path in directory.glob("*.sql"):
        match = re.match(r"^(\d+)", file_path.name)
        if match:
            files.append((match.group(1), file_path))
    return sorted(files, key=lambda item: int(item[0]))


def applied_migrations(conn) -> dict[str, str]:
    with conn.cursor() as cur:
        cur.execute("SELECT version, checksum FROM schema_migrations")
        return {version: digest for version, digest in cur.fetchall()}


def plan(conn, directory: Path = MIGRATIONS_DIR) -> list[tuple[str, Path, str]]:
    """Pending (version, path, sql) in order; raises on drifted applied files."""
    applied = applied_migrations(conn)
    pending: list[tuple[str, Path, str]] = []
    for version, file_path in get_migration_files(directory):
        sql = file_path.read_text(encoding="utf-8")
        recorded = applied.get(version)
        if recorded is None:
            pending.append((version, file_path, sql))
        elif recorded != checksum(sql):
            raise MigrationError(
                f"{file_path.name} was modified after it was applied (checksum mismatch)"
            )
    return pending


def run_migrations(conn, directory: Path = MIGRATIONS_DIR) -> int:
    conn.autocommit = False
    with conn.cursor() as cur:
        cur.execute(CREATE_TRACKING_TABLE)
    conn.commit()

    pending = plan(conn, directory)
    if not pending:
        logger.info("No pending migrations")
        return 0

    applied_count = 0
    for version, file_path, sql in pending:
        logger.info(f"Applying {file_path.name}")
        try:
            with conn.cursor() as cur:
                cur.execute(sql)
                cur.execute(
                    "INSERT INTO schema_migrations (version, filename, checksum) VALUES (%s, %s, %s)",
                    (version, file_path.name, checksum(sql)),
                )
            conn.commit()
        except Exception as exc:
            conn.rollback()
            raise MigrationError(f"Migration {file_path.name} FAILED: {exc}") from exc
        logger.info(f"Applied {file_path.name} successfully")
        applied_count += 1

    return applied_count


def print_status(conn, directory: Path = MIGRATIONS_DIR) -> None:
    with conn.cursor() as cur:
        cur.execute(CREATE_TRACKING_TABLE)
    conn.commit()
    applied = applied_migrations(conn)
    for version, file_path in get_migration_files(directory):
        state = "applied" if version in applied else "pending"
        print(f"{version}\t{state}\t{file_path.name}")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Apply SQL migrations")
    parser.add_argument("--status", action="store_true", help="show migration state and exit")
    args = parser.parse_args(argv)

    logger.info("Starting migration runner")
    conn = get_connection()
    try:
        if args.status:
            print_status(conn)
            return 0
        applied = run_migrations(conn)
        logger.info(f"Migration complete. {applied} migration(s) applied.")
        return 0
    except MigrationError as exc:
        logger.error(str(exc))
        return 1
    finally:
        conn.close()


if __name__ == "__main__":
    sys.exit(main())
