"""
Redis key-value backend shared by the query cache and the rate limiter.
"""

import asyncio
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.logging import get_logger
from shared.errors import CacheBackendError


# Failures that mean "the backend could not answer", as opposed to caller bugs
BACKEND_ERRORS = (RedisError, CacheBackendError, OSError, asyncio.TimeoutError)


class RedisBackend:
    """Explicitly constructed Redis handle with a start/stop lifecycle."""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 2.0,
        connect_timeout: float = 2.0,
        client: Optional[redis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.connect_timeout = connect_timeout
        self.logger = get_logger("helpdesk.backend")
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> redis.Redis:
        """Return the live client; callers treat a missing client as a backend failure."""
        if self._client is None:
            raise CacheBackendError("Redis backend not started", {"redis_url": self._safe_url()})
        return self._client

    @property
    def started(self) -> bool:
        return self._client is not None

    async def start(self) -> bool:
        """Create the connection pool and probe it.

        An unreachable backend is logged but does not prevent startup: the pool
        reconnects lazily and every consumer degrades while it is down.
        """
        if self._client is None:
            self._client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self.connect_timeout,
                socket_timeout=self.socket_timeout,
                retry_on_timeout=False,
                health_check_interval=30,
            )
            self._owns_client = True

        available = await self.ping()
        if available:
            self.logger.info("Redis backend started", redis_url=self._safe_url())
        else:
            self.logger.warning("Redis backend unreachable at startup", redis_url=self._safe_url())
        return available

    async def stop(self) -> None:
        """Close the connection pool if this backend created it."""
        if self._client is None:
            return
        if self._owns_client:
            await self._client.aclose()
        self._client = None
        self.logger.info("Redis backend stopped")

    async def ping(self) -> bool:
        """Check Redis health."""
        try:
            return bool(await self.client.ping())
        except BACKEND_ERRORS as exc:
            self.logger.warning("Redis ping failed", error=str(exc))
            return False

    async def count_keys(self, pattern: str, batch_size: int = 500) -> int:
        """Count keys matching a pattern with SCAN (never KEYS)."""
        count = 0
        async for _ in self.client.scan_iter(match=pattern, count=batch_size):
            count += 1
        return count

    def _safe_url(self) -> str:
        """Redis URL without credentials, for logs."""
        if "@" in self.redis_url:
            scheme, _, rest = self.redis_url.partition("://")
            return f"{scheme}://***@{rest.split('@', 1)[1]}"
        return self.redis_url
