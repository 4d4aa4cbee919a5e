"""
Unit tests for the Helpdesk cache-aside service.
"""

import asyncio
import pytest
from unittest.mock import AsyncMock, patch

import fakeredis
from redis.exceptions import ConnectionError as RedisConnectionError

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_helpdesk.app.caching.backend import RedisBackend
from service_helpdesk.app.caching.cache_service import (
    CacheKeys,
    CacheService,
    CacheStatus,
    CacheTTL,
    tag_key,
)
from shared.errors import CacheBackendError, CacheConfigurationError
from shared.metrics import MetricsCollector


@pytest.fixture
def server():
    return fakeredis.FakeServer()


@pytest.fixture
def fake_redis(server):
    return fakeredis.aioredis.FakeRedis(server=server, decode_responses=True)


@pytest.fixture
def backend(fake_redis):
    return RedisBackend("redis://localhost:6379/0", client=fake_redis)


@pytest.fixture
def metrics():
    return MetricsCollector("helpdesk-test")


@pytest.fixture
def cache(backend, metrics):
    return CacheService(backend, metrics=metrics, write_behind=False)


class TestCacheAside:
    """Hit, miss and expiry behaviour."""

    @pytest.mark.asyncio
    async def test_miss_then_hit_runs_compute_once(self, cache, fake_redis):
        compute = AsyncMock(return_value={"count": 3})

        first = await cache.get("query:abc", compute, ttl=5)
        second = await cache.get("query:abc", compute, ttl=5)

        assert first == {"count": 3}
        assert second == {"count": 3}
        compute.assert_awaited_once()

        ttl = await fake_redis.ttl("query:abc")
        assert 0 < ttl <= 5

    @pytest.mark.asyncio
    async def test_lookup_reports_status(self, cache):
        compute = AsyncMock(return_value=[1, 2, 3])

        first = await cache.lookup("query:list", compute)
        second = await cache.lookup("query:list", compute)

        assert first.status is CacheStatus.COMPUTED
        assert not first.hit
        assert second.status is CacheStatus.HIT
        assert second.hit
        assert second.value == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_recomputes_after_ttl_expiry(self, cache):
        compute = AsyncMock(side_effect=[{"count": 3}, {"count": 4}])

        assert await cache.get("query:abc", compute, ttl=1) == {"count": 3}
        await asyncio.sleep(1.1)
        assert await cache.get("query:abc", compute, ttl=1) == {"count": 4}

        assert compute.await_count == 2

    @pytest.mark.asyncio
    async def test_default_ttl_applied(self, cache, fake_redis):
        await cache.get("query:default", AsyncMock(return_value=1))

        ttl = await fake_redis.ttl("query:default")
        assert CacheTTL.MEDIUM - 5 <= ttl <= CacheTTL.MEDIUM

    @pytest.mark.asyncio
    async def test_undeserializable_payload_is_recomputed(self, cache, fake_redis):
        await fake_redis.set("query:broken", "{not json")
        compute = AsyncMock(return_value={"fresh": True})

        result = await cache.lookup("query:broken", compute)

        assert result.value == {"fresh": True}
        assert result.status is CacheStatus.COMPUTED
        assert await fake_redis.get("query:broken") == '{"fresh": true}'

    @pytest.mark.asyncio
    async def test_compute_errors_propagate_and_nothing_is_written(self, cache, fake_redis):
        compute = AsyncMock(side_effect=LookupError("ticket store down"))

        with pytest.raises(LookupError):
            await cache.get("query:failing", compute)

        assert await fake_redis.exists("query:failing") == 0

    @pytest.mark.asyncio
    async def test_tags_are_indexed_with_entry(self, cache, fake_redis):
        await cache.get("query:abc", AsyncMock(return_value={"count": 3}), ttl=5, tags=["tickets", "tickets"])

        assert await fake_redis.smembers(tag_key("tickets")) == {"query:abc"}
        # Index outlives the entry it tracks
        assert await fake_redis.ttl(tag_key("tickets")) > 5


class TestBackendFailures:
    """Backend outages degrade to misses and never surface to callers."""

    @pytest.mark.asyncio
    async def test_read_error_falls_back_to_compute(self, cache, fake_redis):
        compute = AsyncMock(return_value={"count": 3})

        with patch.object(fake_redis, "get", new_callable=AsyncMock) as mock_get:
            mock_get.side_effect = RedisConnectionError("connection refused")
            result = await cache.lookup("query:abc", compute)

        assert result.value == {"count": 3}
        assert result.status is CacheStatus.COMPUTED
        assert cache.stats()["read_errors"] == 1

    @pytest.mark.asyncio
    async def test_unreachable_backend_reports_write_failure(self, cache, server, metrics):
        server.connected = False
        compute = AsyncMock(return_value={"count": 3})

        result = await cache.lookup("query:abc", compute)

        assert result.value == {"count": 3}
        assert result.status is CacheStatus.COMPUTED_WRITE_FAILED
        assert result.error
        compute.assert_awaited_once()
        assert metrics.sample("cache_write_failures_total") == 1.0

    @pytest.mark.asyncio
    async def test_backend_not_started_computes(self, metrics):
        cache = CacheService(RedisBackend("redis://localhost:6379/0"), metrics=metrics)

        value = await cache.get("query:abc", AsyncMock(return_value="fresh"))
        await cache.drain()

        assert value == "fresh"

    @pytest.mark.asyncio
    async def test_unserializable_value_is_returned_but_not_cached(self, cache, fake_redis):
        value = object()

        result = await cache.lookup("query:object", AsyncMock(return_value=value))

        assert result.value is value
        assert result.status is CacheStatus.COMPUTED_WRITE_FAILED
        assert await fake_redis.exists("query:object") == 0

    @pytest.mark.asyncio
    async def test_exists_and_delete_tolerate_outage(self, cache, server):
        server.connected = False

        assert await cache.exists("query:abc") is False
        assert await cache.delete("query:abc") == 0


class TestValidation:
    """Caller errors are raised before any backend I/O."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", ["", None, 42])
    async def test_invalid_key(self, cache, key):
        compute = AsyncMock()

        with pytest.raises(CacheConfigurationError):
            await cache.get(key, compute)
        compute.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ttl", [0, -5, True, "60", float("inf")])
    async def test_invalid_ttl(self, cache, ttl):
        with pytest.raises(CacheConfigurationError):
            await cache.get("query:abc", AsyncMock(), ttl=ttl)

    @pytest.mark.asyncio
    async def test_fractional_ttl(self, cache, fake_redis):
        await cache.set("query:short", 1, ttl=2.5, tags=["tickets"])
        await cache.get("query:whole", AsyncMock(return_value=2), ttl=3.0)

        assert 0 < await fake_redis.pttl("query:short") <= 2500
        assert 0 < await fake_redis.ttl("query:whole") <= 3
        assert await fake_redis.ttl(tag_key("tickets")) > 2

    @pytest.mark.asyncio
    async def test_invalid_tag(self, cache):
        with pytest.raises(CacheConfigurationError):
            await cache.get("query:abc", AsyncMock(), tags=["tickets", ""])


class TestWriteBehind:
    """Deferred writes complete after the lookup returns."""

    @pytest.mark.asyncio
    async def test_miss_returns_before_slow_write_completes(self, backend, fake_redis):
        cache = CacheService(backend)
        release = asyncio.Event()
        real_write = cache._write

        async def slow_write(*args):
            await release.wait()
            await real_write(*args)

        cache._write = slow_write
        result = await asyncio.wait_for(
            cache.lookup("query:abc", AsyncMock(return_value={"count": 3}), ttl=5),
            timeout=0.5,
        )

        assert result.status is CacheStatus.COMPUTED_WRITE_DEFERRED
        assert result.value == {"count": 3}
        assert cache.stats()["pending_writes"] == 1
        assert await fake_redis.exists("query:abc") == 0

        release.set()
        await cache.drain()

        assert await fake_redis.get("query:abc") == '{"count": 3}'

    @pytest.mark.asyncio
    async def test_deferred_write_failure_is_counted(self, backend, server, metrics):
        cache = CacheService(backend, metrics=metrics)
        server.connected = False

        result = await cache.lookup("query:abc", AsyncMock(return_value={"count": 3}))
        await cache.drain()

        assert result.status is CacheStatus.COMPUTED_WRITE_DEFERRED
        assert cache.stats()["write_failures"] == 1
        assert metrics.sample("cache_write_failures_total") == 1.0

    @pytest.mark.asyncio
    async def test_deferred_write_is_drained(self, backend, fake_redis):
        cache = CacheService(backend, write_behind=True)

        result = await cache.lookup("query:deferred", AsyncMock(return_value={"count": 1}), tags=["tickets"])
        assert result.status is CacheStatus.COMPUTED_WRITE_DEFERRED

        await cache.stop()

        assert cache.stats()["pending_writes"] == 0
        assert await fake_redis.get("query:deferred") == '{"count": 1}'
        assert await fake_redis.smembers(tag_key("tickets")) == {"query:deferred"}


class TestDirectOperations:
    """set / delete / exists and the local counters."""

    @pytest.mark.asyncio
    async def test_set_delete_exists(self, cache):
        await cache.set(CacheKeys.ticket("42"), {"id": "42"}, ttl=CacheTTL.LONG, tags=["tickets:42"])

        assert await cache.exists("ticket:42") is True
        assert await cache.delete("ticket:42", "ticket:missing") == 1
        assert await cache.exists("ticket:42") is False

    @pytest.mark.asyncio
    async def test_set_rejects_unserializable_value(self, cache):
        with pytest.raises(CacheConfigurationError):
            await cache.set("query:abc", {1, 2, 3})

    @pytest.mark.asyncio
    async def test_set_raises_on_backend_failure(self, cache, server):
        server.connected = False

        with pytest.raises(CacheBackendError):
            await cache.set("query:abc", {"count": 3})

    @pytest.mark.asyncio
    async def test_stats_and_metrics(self, cache, metrics):
        compute = AsyncMock(return_value=1)
        await cache.get("query:a", compute)
        await cache.get("query:a", compute)
        await cache.get("query:a", compute)

        stats = cache.stats()
        assert stats["hits"] == 2
        assert stats["misses"] == 1
        assert stats["hit_ratio"] == pytest.approx(2 / 3)
        assert metrics.sample("cache_requests_total", result="hit") == 2.0
        assert metrics.sample("cache_requests_total", result="miss") == 1.0
