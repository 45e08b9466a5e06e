"""Shared fixtures for circuit breaker, classifier and quota tests."""

from datetime import datetime, timezone
from typing import AsyncGenerator

import pytest
from fakeredis import FakeAsyncRedis

from llm_dispatch.resilience.quota_ledger import QuotaLedger
from llm_dispatch.resilience.quota_store import InMemoryQuotaStore
from llm_dispatch.resilience.redis_client import RedisConnection
from llm_dispatch.routing.registry import ProviderRegistry


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCalendar:
    """Manually set wall clock for billing-period tests."""

    def __init__(self, moment: datetime) -> None:
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def calendar() -> FakeCalendar:
    """Wall clock pinned to mid-January 2026 UTC."""
    return FakeCalendar(datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def registry() -> ProviderRegistry:
    return ProviderRegistry()


@pytest.fixture
def memory_store() -> InMemoryQuotaStore:
    return InMemoryQuotaStore()


@pytest.fixture
def ledger(
    registry: ProviderRegistry, memory_store: InMemoryQuotaStore, calendar: FakeCalendar
) -> QuotaLedger:
    """Quota ledger on an in-memory store with a pinned calendar."""
    return QuotaLedger(registry, store=memory_store, clock=calendar)


@pytest.fixture
async def fake_redis() -> AsyncGenerator[FakeAsyncRedis, None]:
    """Async fakeredis client for isolated testing.

    Yields:
        A fresh FakeAsyncRedis instance with decode_responses=True.
        Automatically flushed and closed after each test.
    """
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
async def redis_connection(fake_redis: FakeAsyncRedis) -> AsyncGenerator[RedisConnection, None]:
    """RedisConnection with injected fakeredis client (bypasses connecting).

    Args:
        fake_redis: The fakeredis client fixture.

    Returns:
        A RedisConnection that uses fakeredis internally.
    """
    connection = RedisConnection(redis_url="redis://fake:6379/0", key_prefix="test:")
    connection._client = fake_redis
    connection._available = True
    yield connection
    connection._client = None
