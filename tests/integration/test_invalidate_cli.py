"""
Integration tests for the cache invalidation CLI.
"""

import pytest

import fakeredis

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from scripts.invalidate_cache import _parse_args, invalidate
from service_helpdesk.app.caching.backend import RedisBackend
from service_helpdesk.app.caching.cache_service import CacheService


class TestInvalidateCli:
    """Operator invalidation against an in-memory Redis."""

    @pytest.fixture
    def fake_redis(self):
        return fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)

    @pytest.fixture
    def backend(self, fake_redis):
        return RedisBackend("redis://localhost:6379/0", client=fake_redis)

    async def _seed(self, backend):
        cache = CacheService(backend)
        await cache.set("query:a", 1, tags=["tickets"])
        await cache.set("query:b", 2, tags=["categories"])
        await cache.set("ticket:42", {"id": "42"})

    @pytest.mark.asyncio
    async def test_tag_and_model(self, backend, fake_redis):
        await self._seed(backend)

        summary = await invalidate(
            redis_url=backend.redis_url,
            tags=["tickets"],
            model="ticket",
            record_id="42",
            invalidate_all=False,
            dry_run=False,
            backend=backend,
        )

        assert summary["keys_deleted"] == 2
        assert summary["complete"] is True
        assert await fake_redis.exists("query:b") == 1

    @pytest.mark.asyncio
    async def test_all(self, backend, fake_redis):
        await self._seed(backend)

        summary = await invalidate(
            redis_url=backend.redis_url,
            tags=[],
            model=None,
            record_id=None,
            invalidate_all=True,
            dry_run=False,
            backend=backend,
        )

        assert summary["keys_deleted"] == 2
        assert set(summary["tags"]) == {"tickets", "categories", "dashboard", "stats"}

    @pytest.mark.asyncio
    async def test_dry_run_deletes_nothing(self, backend, fake_redis):
        await self._seed(backend)

        summary = await invalidate(
            redis_url=backend.redis_url,
            tags=["tickets"],
            model="ticket",
            record_id=None,
            invalidate_all=False,
            dry_run=True,
            backend=backend,
        )

        assert summary["dry_run"] is True
        assert summary["tags"] == {"tickets": 1}
        assert summary["patterns"]["ticket:*"] == 1
        assert await fake_redis.dbsize() == 5

    def test_arguments(self):
        args = _parse_args(["--tag", "tickets", "--tag", "stats", "--dry-run"])
        assert args.tags == ["tickets", "stats"]
        assert args.dry_run is True

        with pytest.raises(SystemExit):
            _parse_args([])
        with pytest.raises(SystemExit):
            _parse_args(["--id", "42"])
