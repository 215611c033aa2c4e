"""
Pytest configuration for the evidence attribution tests.
"""

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from models.domain import CoreActivity, EvidenceItem

# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)


def pytest_configure(config):
    """Configure pytest with asyncio marker."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as an async test."
    )


class FakeRedis:
    """In-memory stand-in for the redis.asyncio calls the rate limiter makes."""

    def __init__(self):
        self.store = {}
        self.ttls = {}

    async def get(self, key):
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl


class FakeClock:
    """Settable time source (epoch seconds)."""

    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def now() -> datetime:
    return datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


def make_evidence(created_at, content="", **kwargs) -> EvidenceItem:
    kwargs.setdefault('project_id', 'proj-1')
    return EvidenceItem(id=kwargs.pop('id', None), created_at=created_at, content=content, **kwargs)


def make_activity(activity_id, name, uncertainty, created_at, project_id='proj-1') -> CoreActivity:
    return CoreActivity(
        id=activity_id,
        project_id=project_id,
        name=name,
        uncertainty=uncertainty,
        created_at=created_at,
    )
