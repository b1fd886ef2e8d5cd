"""
Sensor snapshot providers.

The engine never talks to weather/location/fitness APIs itself; it asks a
snapshot service for a pre-assembled {sensor_key: value} mapping per
entity. Snapshots may be stale up to the tier's sensor_data_cache_ttl.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol

from notification_service.policy import zone_for
from shared.config import env_float, optional_env
from shared.http_client import traced_client

logger = logging.getLogger(__name__)


class SnapshotError(Exception):
    pass


class SnapshotProvider(Protocol):
    async def get_snapshot(self, entity_id: str, ttl: Optional[int] = None) -> dict[str, Any]: ...


class HttpSnapshotProvider:
    def __init__(self, base_url: str, timeout: float = 8.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_env(cls) -> "HttpSnapshotProvider":
        return cls(
            base_url=optional_env("SNAPSHOT_SERVICE_URL", "http://sensor-snapshots:8080"),
            timeout=env_float("SNAPSHOT_TIMEOUT_SECONDS", 8.0),
        )

    async def get_snapshot(self, entity_id: str, ttl: Optional[int] = None) -> dict[str, Any]:
        url = f"{self.base_url}/entities/{entity_id}/snapshot"
        try:
            async with traced_client(timeout=self.timeout, retries=1) as client:
                resp = await client.get(url)
        except Exception as exc:
            raise SnapshotError(f"snapshot request failed: {type(exc).__name__}") from exc
        if resp.status_code == 404:
            return {}
        if resp.status_code >= 400:
            raise SnapshotError(f"snapshot service returned http_{resp.status_code}")
        try:
            body = resp.json()
        except ValueError as exc:
            raise SnapshotError("snapshot body is not JSON") from exc
        if not isinstance(body, dict):
            raise SnapshotError("snapshot body is not an object")
        sensors = body.get("sensors", body)
        return sensors if isinstance(sensors, dict) else {}


@dataclass
class _CacheEntry:
    expires_at: float
    snapshot: dict[str, Any]


class CachingSnapshotProvider:
    """Keeps snapshots across passes for the caller-supplied TTL."""

    def __init__(self, inner: SnapshotProvider, default_ttl: int = 600):
        self.inner = inner
        self.default_ttl = default_ttl
        self._cache: dict[str, _CacheEntry] = {}

    async def get_snapshot(self, entity_id: str, ttl: Optional[int] = None) -> dict[str, Any]:
        ttl = self.default_ttl if ttl is None else ttl
        now = time.monotonic()
        entry = self._cache.get(entity_id)
        if entry is not None and entry.expires_at > now:
            return entry.snapshot

        snapshot = await self.inner.get_snapshot(entity_id, ttl)
        if ttl > 0:
            self._cache[entity_id] = _CacheEntry(expires_at=now + ttl, snapshot=snapshot)
        self._evict(now)
        return snapshot

    def _evict(self, now: float) -> None:
        expired = [k for k, v in self._cache.items() if v.expires_at <= now]
        for key in expired:
            del self._cache[key]

    def invalidate(self, entity_id: str) -> None:
        self._cache.pop(entity_id, None)


def clock_fields(now: datetime, tz_name: Optional[str] = None) -> dict[str, Any]:
    """Synthetic clock.* sensors; weekday 0 = Sunday."""
    local = now.astimezone(zone_for(tz_name))
    return {
        "hour": local.hour,
        "minute": local.minute,
        "weekday": (local.weekday() + 1) % 7,
        "date": local.date().isoformat(),
        "timezone": tz_name or "UTC",
    }
