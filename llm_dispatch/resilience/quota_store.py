"""Key/counter backends for the quota ledger."""

import asyncio
import logging
from datetime import datetime
from typing import Optional, Protocol

from redis.exceptions import RedisError

from llm_dispatch.resilience.redis_client import RedisConnection

logger = logging.getLogger(__name__)


class QuotaStore(Protocol):
    """Atomic per-key counters with period-scoped keys."""

    async def get(self, key: str) -> int: ...

    async def increment(self, key: str, amount: int, expires_at: datetime) -> int: ...

    async def prune(self, active_period: str) -> int: ...


class InMemoryQuotaStore:
    """Process-local counters guarded by one asyncio lock per key.

    Keys end with their billing period (``...:YYYY-MM``); ``prune`` drops
    every key from other periods.
    """

    def __init__(self) -> None:
        self._counters: dict[str, int] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks.setdefault(key, asyncio.Lock())
        return lock

    async def get(self, key: str) -> int:
        return self._counters.get(key, 0)

    async def increment(self, key: str, amount: int, expires_at: datetime) -> int:
        """Add ``amount`` to a counter and return the new total."""
        async with self._lock_for(key):
            total = self._counters.get(key, 0) + amount
            self._counters[key] = total
            return total

    async def prune(self, active_period: str) -> int:
        """Drop counters outside the active period. Returns how many were dropped."""
        stale = [k for k in self._counters if not k.endswith(f":{active_period}")]
        for key in stale:
            self._counters.pop(key, None)
            self._locks.pop(key, None)
        if stale:
            logger.info(f"quota_store_pruned: keys={len(stale)}, active_period={active_period}")
        return len(stale)

    def __len__(self) -> int:
        return len(self._counters)


class RedisQuotaStore:
    """Redis-backed counters using INCRBY with expiry at period end.

    Increments that cannot reach Redis land in an in-process fallback
    store, and reads add the fallback count to the Redis count, so usage
    recorded during an outage is never lost from this process's view.

    Args:
        connection: Redis connection holder.
        fallback: Store used while Redis is unreachable.
    """

    def __init__(
        self,
        connection: RedisConnection,
        fallback: Optional[InMemoryQuotaStore] = None,
    ) -> None:
        self._connection = connection
        self._fallback = fallback if fallback is not None else InMemoryQuotaStore()

    async def get(self, key: str) -> int:
        local = await self._fallback.get(key)
        client = await self._connection.get_client()
        if client is None:
            return local
        try:
            raw = await client.get(self._connection.key(key))
        except (RedisError, OSError) as e:
            logger.warning(f"quota_store_read_degraded: key={key}, error={e}")
            self._connection.mark_unavailable()
            return local
        return int(raw or 0) + local

    async def increment(self, key: str, amount: int, expires_at: datetime) -> int:
        client = await self._connection.get_client()
        if client is not None:
            try:
                redis_key = self._connection.key(key)
                async with client.pipeline(transaction=True) as pipe:
                    pipe.incrby(redis_key, amount)
                    pipe.expireat(redis_key, int(expires_at.timestamp()))
                    total, _ = await pipe.execute()
                return int(total) + await self._fallback.get(key)
            except (RedisError, OSError) as e:
                logger.warning(f"quota_store_write_degraded: key={key}, error={e}")
                self._connection.mark_unavailable()

        # Redis unavailable; count locally so nothing is under-counted
        local_total = await self._fallback.increment(key, amount, expires_at)
        return local_total

    async def prune(self, active_period: str) -> int:
        """Redis keys expire on their own; only local fallback counters are pruned."""
        return await self._fallback.prune(active_period)
