"""Lazily connected async Redis client that degrades instead of raising."""

import logging
import time
from typing import Callable, Optional

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


class RedisConnection:
    """Owns one async Redis client for the quota store.

    Connecting is deferred to first use. When Redis is not configured or
    cannot be reached, ``get_client`` returns None and callers fall back
    to in-process state. After a failed connect, reconnects are not
    attempted again until ``retry_backoff_seconds`` have passed.

    Args:
        redis_url: Connection URL, or None to disable Redis entirely.
        key_prefix: Namespace prepended to every key.
        retry_backoff_seconds: Wait after a failed connect before retrying.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        key_prefix: str = "dispatch:",
        retry_backoff_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._redis_url: Optional[str] = redis_url
        self._key_prefix: str = key_prefix
        self._client: Optional[aioredis.Redis] = None
        self._available: bool = False
        self._retry_backoff = retry_backoff_seconds
        self._clock = clock
        self._retry_at: float = 0.0

    async def get_client(self) -> Optional[aioredis.Redis]:
        """Return a connected client, or None when Redis is unusable."""
        if self._redis_url is None:
            return None
        if self._client is not None and self._available:
            return self._client
        if self._clock() < self._retry_at:
            return None

        # Drop the client left behind by mark_unavailable before reconnecting
        await self._discard_client()

        try:
            self._client = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                socket_connect_timeout=2.0,
                socket_timeout=2.0,
            )
            await self._client.ping()  # type: ignore[misc, union-attr]
            self._available = True
            self._retry_at = 0.0
            logger.info("redis_connected: quota_store=redis")
            return self._client
        except (aioredis.ConnectionError, aioredis.TimeoutError, OSError) as e:
            self._retry_at = self._clock() + self._retry_backoff
            logger.warning(f"redis_unavailable: error={e}, retry_in={self._retry_backoff}s")
            await self._discard_client()
            return None

    def mark_unavailable(self) -> None:
        """Force a reconnect attempt on next use after a failed command."""
        self._available = False

    @property
    def available(self) -> bool:
        return self._available and self._redis_url is not None

    def key(self, name: str) -> str:
        """Namespaced Redis key."""
        return f"{self._key_prefix}{name}"

    async def close(self) -> None:
        """Close the client if one was opened."""
        if self._client is None:
            return
        await self._discard_client()
        logger.info("redis_closed: quota_store=redis")

    async def _discard_client(self) -> None:
        client, self._client = self._client, None
        self._available = False
        if client is None:
            return
        try:
            await client.aclose()
        except Exception as e:
            logger.warning(f"redis_close_error: error={e}")
