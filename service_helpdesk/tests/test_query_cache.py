"""
Unit tests for query key generation and the cached query executor.
"""

import pytest
from unittest.mock import AsyncMock

import fakeredis

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_helpdesk.app.caching.backend import RedisBackend
from service_helpdesk.app.caching.cache_service import CacheService, CacheStatus, tag_key
from service_helpdesk.app.caching.query_cache import (
    CachedQueryExecutor,
    cached_query,
    extract_record_id,
    generate_query_key,
)


@pytest.fixture
def fake_redis():
    return fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def cache(fake_redis):
    return CacheService(RedisBackend("redis://localhost:6379/0", client=fake_redis), write_behind=False)


@pytest.fixture
def executor(cache):
    return CachedQueryExecutor(cache)


class TestGenerateQueryKey:
    """Key derivation is pure and order independent."""

    def test_identical_inputs_give_identical_keys(self):
        args = {"where": {"status": "OPEN"}, "take": 20}
        assert generate_query_key("ticket", args, "findMany") == generate_query_key("ticket", args, "findMany")

    def test_dict_ordering_does_not_matter(self):
        first = generate_query_key("ticket", {"take": 20, "where": {"status": "OPEN", "userId": "u1"}})
        second = generate_query_key("ticket", {"where": {"userId": "u1", "status": "OPEN"}, "take": 20})
        assert first == second

    def test_changed_argument_changes_key(self):
        base = generate_query_key("ticket", {"where": {"status": "OPEN"}})
        assert generate_query_key("ticket", {"where": {"status": "COMPLETED"}}) != base
        assert generate_query_key("category", {"where": {"status": "OPEN"}}) != base
        assert generate_query_key("ticket", {"where": {"status": "OPEN"}}, "count") != base

    def test_key_format(self):
        key = generate_query_key("ticket")
        assert key.startswith("query:")
        assert len(key) == len("query:") + 64

    @pytest.mark.parametrize(
        "args,expected",
        [
            ({"id": 42}, "42"),
            ({"where": {"id": "t-1"}}, "t-1"),
            ({"where": {"status": "OPEN"}}, None),
            (None, None),
            (["id"], None),
        ],
    )
    def test_extract_record_id(self, args, expected):
        assert extract_record_id(args) == expected


class TestCachedQueryExecutor:
    """Queries are served through the cache with model tags."""

    @pytest.mark.asyncio
    async def test_execute_caches_result(self, executor):
        query = AsyncMock(return_value=[{"id": "1"}])

        first = await executor.execute("ticket", "findMany", {"where": {"status": "OPEN"}}, query)
        second = await executor.execute("ticket", "findMany", {"where": {"status": "OPEN"}}, query)

        assert first == second == [{"id": "1"}]
        query.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_execute_tags_model_and_record(self, executor, fake_redis):
        args = {"where": {"id": "42"}}
        result = await executor.execute_with_result(
            "ticket", "findUnique", args, AsyncMock(return_value={"id": "42"}), tags=["tickets:42"]
        )

        assert result.status is CacheStatus.COMPUTED
        key = generate_query_key("ticket", args, "findUnique")
        assert result.key == key
        assert await fake_redis.smembers(tag_key("ticket")) == {key}
        assert await fake_redis.smembers(tag_key("ticket:42")) == {key}
        assert await fake_redis.smembers(tag_key("tickets:42")) == {key}

    @pytest.mark.asyncio
    async def test_default_ttl(self, cache, fake_redis):
        executor = CachedQueryExecutor(cache, default_ttl=30)

        result = await executor.execute_with_result("category", "findMany", None, AsyncMock(return_value=[]))

        assert 0 < await fake_redis.ttl(result.key) <= 30


class TestCachedQueryDecorator:
    """Decorated functions are transparently cached."""

    @pytest.mark.asyncio
    async def test_decorated_function_is_cached_per_arguments(self, cache):
        calls = []

        @cached_query(cache, "open-tickets", ttl=60, tags=["tickets"])
        async def open_tickets(user_id, limit=10):
            calls.append((user_id, limit))
            return {"user": user_id, "limit": limit}

        assert await open_tickets("u1") == {"user": "u1", "limit": 10}
        assert await open_tickets("u1") == {"user": "u1", "limit": 10}
        assert await open_tickets("u1", limit=5) == {"user": "u1", "limit": 5}

        assert calls == [("u1", 10), ("u1", 5)]
        assert open_tickets.cache_name == "open-tickets"
        assert open_tickets.__name__ == "open_tickets"

    @pytest.mark.asyncio
    async def test_entries_default_to_self_tag(self, cache, fake_redis):
        @cached_query(cache, "categories", key_builder=lambda: "categories:all")
        async def all_categories():
            return ["Hardware", "Software"]

        await all_categories()

        assert await fake_redis.smembers(tag_key("categories:all")) == {"categories:all"}
