import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

repo_root = Path(__file__).resolve().parent.parent
for path in (repo_root, repo_root / "services"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

os.environ.setdefault("CRON_SECRET", "test-cron-secret")

from channel_dispatch.base import DispatcherRegistry  # noqa: E402
from channel_dispatch.in_app import InAppDispatcher  # noqa: E402
from notification_service.service import DeliveryConfig, NotificationService  # noqa: E402
from notification_service.tiers import TierProvider  # noqa: E402
from tests.helpers.memory_store import MemoryStore  # noqa: E402


class FrozenClock:
    """Replaces module-level now_utc() so passes and sweeps see a fixed time."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


@pytest.fixture
def clock(monkeypatch):
    frozen = FrozenClock(datetime(2024, 6, 3, 12, 0, tzinfo=timezone.utc))
    monkeypatch.setattr("rule_evaluator.evaluator.now_utc", frozen)
    monkeypatch.setattr("notification_service.service.now_utc", frozen)
    return frozen


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def in_app_registry(store):
    return DispatcherRegistry([InAppDispatcher(store)])


@pytest.fixture
def notifications(store, in_app_registry):
    return NotificationService(store, TierProvider(store), in_app_registry, DeliveryConfig())
