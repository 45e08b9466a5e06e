"""Tests for the Redis-backed quota store and its in-process fallback."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from llm_dispatch.models import PlanTier, Region
from llm_dispatch.resilience import redis_client
from llm_dispatch.resilience.quota_ledger import QuotaLedger
from llm_dispatch.resilience.quota_store import InMemoryQuotaStore, RedisQuotaStore
from llm_dispatch.resilience.redis_client import RedisConnection

KEY = "quota:user-1:gemini-2.0-flash:2026-01"


def _expiry() -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=10)


class TestInMemoryStore:
    """Tests for the process-local counter store."""

    @pytest.mark.unit
    async def test_increment_and_get(self) -> None:
        store = InMemoryQuotaStore()
        assert await store.increment(KEY, 10, _expiry()) == 10
        assert await store.increment(KEY, 5, _expiry()) == 15
        assert await store.get(KEY) == 15
        assert await store.get("missing") == 0

    @pytest.mark.unit
    async def test_prune_keeps_active_period(self) -> None:
        store = InMemoryQuotaStore()
        await store.increment("quota:u:p:2026-01", 1, _expiry())
        await store.increment("quota:u:p:2026-02", 1, _expiry())

        assert await store.prune("2026-02") == 1
        assert await store.get("quota:u:p:2026-02") == 1
        assert len(store) == 1


class TestRedisStore:
    """Tests for RedisQuotaStore against fakeredis."""

    @pytest.mark.unit
    async def test_increment_writes_namespaced_key(
        self, redis_connection: RedisConnection, fake_redis
    ) -> None:
        store = RedisQuotaStore(redis_connection)

        assert await store.increment(KEY, 300, _expiry()) == 300
        assert await store.increment(KEY, 200, _expiry()) == 500

        assert await fake_redis.get(f"test:{KEY}") == "500"
        assert await store.get(KEY) == 500

    @pytest.mark.unit
    async def test_key_expires_at_period_end(
        self, redis_connection: RedisConnection, fake_redis
    ) -> None:
        store = RedisQuotaStore(redis_connection)
        await store.increment(KEY, 1, _expiry())

        ttl = await fake_redis.ttl(f"test:{KEY}")
        assert 0 < ttl <= 10 * 24 * 3600

    @pytest.mark.unit
    async def test_concurrent_increments(self, redis_connection: RedisConnection) -> None:
        store = RedisQuotaStore(redis_connection)
        await asyncio.gather(*[store.increment(KEY, 7, _expiry()) for _ in range(30)])
        assert await store.get(KEY) == 210

    @pytest.mark.integration
    async def test_ledger_on_redis(
        self, redis_connection: RedisConnection, registry
    ) -> None:
        """The ledger works unchanged on top of Redis."""
        ledger = QuotaLedger(registry, store=RedisQuotaStore(redis_connection))
        await ledger.record_usage("user-1", "mistral-large-3", 350_000)

        best = await ledger.get_best_available(
            "user-1", PlanTier.STARTER, Region.IN, "mistral-large-3"
        )
        assert best.provider_id == "gemini-2.0-flash"
        assert best.was_downgraded is True


class TestGracefulFallback:
    """Tests for counting locally while Redis is unreachable."""

    @pytest.mark.unit
    async def test_no_redis_url_uses_fallback(self) -> None:
        fallback = InMemoryQuotaStore()
        store = RedisQuotaStore(RedisConnection(redis_url=None), fallback=fallback)

        assert await store.increment(KEY, 40, _expiry()) == 40
        assert await store.get(KEY) == 40
        assert await fallback.get(KEY) == 40

    @pytest.mark.unit
    async def test_write_error_degrades_to_fallback(self) -> None:
        """A failing pipeline marks Redis unavailable and counts locally."""
        client = MagicMock()
        client.pipeline.side_effect = RedisConnectionError("connection refused")
        connection = RedisConnection(redis_url="redis://fake:6379/0", key_prefix="test:")
        connection._client = client
        connection._available = True
        fallback = InMemoryQuotaStore()
        store = RedisQuotaStore(connection, fallback=fallback)

        total = await store.increment(KEY, 25, _expiry())

        assert total == 25
        assert await fallback.get(KEY) == 25
        assert connection.available is False

    @pytest.mark.unit
    async def test_reads_add_fallback_to_redis(
        self, redis_connection: RedisConnection, fake_redis
    ) -> None:
        """Usage counted during an outage stays visible after Redis returns."""
        fallback = InMemoryQuotaStore()
        await fallback.increment(KEY, 15, _expiry())
        await fake_redis.set(f"test:{KEY}", 100)
        store = RedisQuotaStore(redis_connection, fallback=fallback)

        assert await store.get(KEY) == 115



class TestReconnect:
    """Tests for reconnecting after Redis drops out."""

    @pytest.mark.unit
    async def test_stale_client_closed_before_reconnect(
        self, monkeypatch: pytest.MonkeyPatch, fake_redis
    ) -> None:
        stale = MagicMock()
        stale.aclose = AsyncMock()
        connection = RedisConnection(redis_url="redis://fake:6379/0", key_prefix="test:")
        connection._client = stale
        connection._available = True
        connection.mark_unavailable()
        monkeypatch.setattr(redis_client.aioredis, "from_url", lambda *args, **kwargs: fake_redis)

        client = await connection.get_client()

        assert client is fake_redis
        assert connection.available is True
        stale.aclose.assert_awaited_once()

    @pytest.mark.unit
    async def test_failed_connect_backs_off(
        self, monkeypatch: pytest.MonkeyPatch, clock
    ) -> None:
        """No new connect attempt until the backoff has elapsed."""
        unreachable = MagicMock()
        unreachable.ping = AsyncMock(side_effect=RedisConnectionError("connection refused"))
        unreachable.aclose = AsyncMock()
        attempts: list[str] = []

        def from_url(url: str, **kwargs) -> MagicMock:
            attempts.append(url)
            return unreachable

        monkeypatch.setattr(redis_client.aioredis, "from_url", from_url)
        connection = RedisConnection(
            redis_url="redis://fake:6379/0", retry_backoff_seconds=5.0, clock=clock
        )

        assert await connection.get_client() is None
        assert await connection.get_client() is None
        assert len(attempts) == 1

        clock.advance(5.1)
        assert await connection.get_client() is None
        assert len(attempts) == 2
        assert unreachable.aclose.await_count == 2
