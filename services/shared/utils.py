"""Shared utilities across services."""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Iterator, Optional, TypeVar

T = TypeVar("T")


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: Optional[datetime]) -> Optional[str]:
    """Format datetime to ISO string with UTC timezone."""
    if dt is None:
        return None
    return ensure_utc(dt).isoformat()


def chunked(items: list[T], size: int) -> Iterator[list[T]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        yield items[start : start + size]


def normalize_json(value: Any, default: Any = None) -> Any:
    """Decode JSONB columns that arrive as str/bytes (PgBouncer) or already decoded."""
    if value is None:
        return default
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return default
    return value


def truncate(value: Optional[str], max_length: int = 500) -> Optional[str]:
    if value is None:
        return None
    return value[:max_length]
