"""
Cache-aside service over the Redis backend.

Reads try Redis first and fall back to the caller's compute function on a
miss, an unreadable payload or any backend failure. Computed values are written
back with a TTL and registered in one ``tag:<name>`` set per tag, in the same
MULTI/EXEC transaction, so tag invalidation never has to scan the keyspace.
"""

import asyncio
import json
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, Iterable, List, Optional, Set, Tuple, TypeVar, TYPE_CHECKING

from shared.logging import get_logger
from shared.errors import CacheBackendError, CacheConfigurationError
from .backend import BACKEND_ERRORS, RedisBackend

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


T = TypeVar("T")

TAG_PREFIX = "tag:"


class CacheTTL:
    """Standard TTLs in seconds."""

    SHORT = 60          # very volatile data
    MEDIUM = 300        # moderately stable data
    LONG = 3600         # stable data
    VERY_LONG = 86400   # reference data


class CacheKeys:
    """Readable keys for the ticketing read paths."""

    @staticmethod
    def ticket(ticket_id: str) -> str:
        return f"ticket:{ticket_id}"

    @staticmethod
    def ticket_list(user_id: str, page: int = 0) -> str:
        return f"tickets:list:{user_id}:{page}"

    @staticmethod
    def ticket_count(user_id: str) -> str:
        return f"tickets:count:{user_id}"

    @staticmethod
    def categories() -> str:
        return "categories:all"

    @staticmethod
    def category(category_id: str) -> str:
        return f"category:{category_id}"

    @staticmethod
    def dashboard_stats(user_id: str) -> str:
        return f"dashboard:stats:{user_id}"

    @staticmethod
    def admin_stats() -> str:
        return "admin:stats"


class CacheStatus(str, Enum):
    """How a lookup was served."""

    HIT = "hit"
    COMPUTED = "computed"
    COMPUTED_WRITE_FAILED = "computed_write_failed"
    COMPUTED_WRITE_DEFERRED = "computed_write_deferred"


@dataclass
class CacheResult(Generic[T]):
    """Outcome of a cache-aside lookup."""

    key: str
    value: T
    status: CacheStatus
    error: Optional[str] = None

    @property
    def hit(self) -> bool:
        return self.status is CacheStatus.HIT


def tag_key(tag: str) -> str:
    """Name of the index set holding the keys carrying ``tag``."""
    return f"{TAG_PREFIX}{tag}"


class CacheService:
    """Generic cache-aside wrapper with TTL and tag bookkeeping."""

    def __init__(
        self,
        backend: RedisBackend,
        *,
        default_ttl: int = CacheTTL.MEDIUM,
        tag_index_ttl: int = CacheTTL.VERY_LONG,
        write_behind: bool = True,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.backend = backend
        self.default_ttl = default_ttl
        self.tag_index_ttl = tag_index_ttl
        self.write_behind = write_behind
        self.metrics = metrics
        self.logger = get_logger("helpdesk.cache_service")

        self._pending: Set[asyncio.Task] = set()
        self._stats: Dict[str, int] = {
            "hits": 0,
            "misses": 0,
            "read_errors": 0,
            "write_failures": 0,
        }

    async def get(
        self,
        key: str,
        compute: Callable[[], Awaitable[T]],
        *,
        ttl: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> T:
        """Return the cached value for ``key`` or compute, store and return it."""
        result = await self.lookup(key, compute, ttl=ttl, tags=tags)
        return result.value

    async def lookup(
        self,
        key: str,
        compute: Callable[[], Awaitable[T]],
        *,
        ttl: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> CacheResult[T]:
        """Cache-aside lookup reporting how the value was obtained.

        Errors raised by ``compute`` propagate and nothing is written. Backend
        errors never propagate: reads degrade to a miss and write failures are
        reported through the result status.
        """
        ttl, tag_list = self._validate(key, ttl, tags)

        found, cached = await self._read(key)
        if found:
            self._record("hits", "hit")
            return CacheResult(key=key, value=cached, status=CacheStatus.HIT)

        self._record("misses", "miss")
        fresh = await compute()

        if self.write_behind:
            task = asyncio.create_task(self._persist(key, fresh, ttl, tag_list))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            return CacheResult(key=key, value=fresh, status=CacheStatus.COMPUTED_WRITE_DEFERRED)

        error = await self._persist(key, fresh, ttl, tag_list)
        if error is not None:
            return CacheResult(key=key, value=fresh, status=CacheStatus.COMPUTED_WRITE_FAILED, error=error)
        return CacheResult(key=key, value=fresh, status=CacheStatus.COMPUTED)

    async def set(
        self,
        key: str,
        value: Any,
        *,
        ttl: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> None:
        """Store a value, raising ``CacheBackendError`` when the write fails."""
        ttl, tag_list = self._validate(key, ttl, tags)
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as exc:
            raise CacheConfigurationError("Value is not JSON serializable", {"key": key, "error": str(exc)})

        try:
            await self._write(key, payload, ttl, tag_list)
        except BACKEND_ERRORS as exc:
            self.logger.error("Failed to set cache", key=key, error=str(exc))
            raise CacheBackendError("Failed to set cache", {"key": key, "error": str(exc)}) from exc

    async def delete(self, *keys: str) -> int:
        """Delete exact keys; returns the number removed, 0 on backend failure."""
        if not keys:
            return 0
        try:
            return int(await self.backend.client.delete(*keys))
        except BACKEND_ERRORS as exc:
            self.logger.error("Failed to invalidate cache keys", keys=list(keys), error=str(exc))
            return 0

    async def exists(self, key: str) -> bool:
        """Check whether a key is cached; False when the backend is unavailable."""
        try:
            return await self.backend.client.exists(key) == 1
        except BACKEND_ERRORS as exc:
            self.logger.warning("Cache exists check error", key=key, error=str(exc))
            return False

    async def drain(self) -> None:
        """Wait for deferred writes scheduled by ``write_behind`` lookups."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def stop(self) -> None:
        await self.drain()

    def stats(self) -> Dict[str, Any]:
        """Local counters since process start."""
        total = self._stats["hits"] + self._stats["misses"]
        return {
            **self._stats,
            "pending_writes": len(self._pending),
            "hit_ratio": self._stats["hits"] / total if total else 0.0,
        }

    async def _read(self, key: str) -> Tuple[bool, Any]:
        """Read and decode a cached payload; any failure reads as a miss."""
        try:
            raw = await self.backend.client.get(key)
        except BACKEND_ERRORS as exc:
            self._stats["read_errors"] += 1
            self.logger.warning("Cache get error", key=key, error=str(exc))
            return False, None

        if raw is None:
            return False, None

        try:
            return True, json.loads(raw)
        except (TypeError, ValueError) as exc:
            self.logger.warning("Discarding undeserializable cache payload", key=key, error=str(exc))
            return False, None

    async def _persist(self, key: str, value: Any, ttl: float, tags: List[str]) -> Optional[str]:
        """Best-effort write; returns the swallowed error message, if any."""
        try:
            payload = json.dumps(value)
            await self._write(key, payload, ttl, tags)
        except (TypeError, ValueError) + BACKEND_ERRORS as exc:
            self._stats["write_failures"] += 1
            if self.metrics:
                self.metrics.increment_counter("cache_write_failures_total")
            self.logger.warning("Cache set error", key=key, error=str(exc))
            return str(exc)

        self.logger.debug("Cached value", key=key, ttl=ttl, tags=tags)
        return None

    async def _write(self, key: str, payload: str, ttl: float, tags: List[str]) -> None:
        """Write the entry and its tag memberships atomically."""
        index_ttl = math.ceil(max(ttl, self.tag_index_ttl))
        async with self.backend.client.pipeline(transaction=True) as pipe:
            if float(ttl).is_integer():
                pipe.set(key, payload, ex=int(ttl))
            else:
                pipe.set(key, payload, px=max(1, round(ttl * 1000)))
            for tag in tags:
                pipe.sadd(tag_key(tag), key)
                pipe.expire(tag_key(tag), index_ttl)
            await pipe.execute()

    def _validate(self, key: str, ttl: Optional[float], tags: Optional[Iterable[str]]) -> Tuple[float, List[str]]:
        if not isinstance(key, str) or not key:
            raise CacheConfigurationError("Cache key must be a non-empty string", {"key": key})

        ttl = self.default_ttl if ttl is None else ttl
        if isinstance(ttl, bool) or not isinstance(ttl, (int, float)) or not math.isfinite(ttl) or ttl <= 0:
            raise CacheConfigurationError("Cache TTL must be a positive number of seconds", {"ttl": ttl})

        tag_list = list(dict.fromkeys(tags or []))
        for tag in tag_list:
            if not isinstance(tag, str) or not tag:
                raise CacheConfigurationError("Cache tags must be non-empty strings", {"tags": tag_list})
        return ttl, tag_list

    def _record(self, stat: str, result: str) -> None:
        self._stats[stat] += 1
        if self.metrics:
            self.metrics.increment_counter("cache_requests_total", result=result)
