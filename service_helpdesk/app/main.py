"""
Helpdesk service: query cache, invalidation and rate limiting in front of the
ticketing read and write paths.
"""

from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from fastapi import Depends, Header, Query
from pydantic import BaseModel, Field

from shared.base_service import BaseService
from shared.errors import AuthenticationError
from .caching.backend import BACKEND_ERRORS, RedisBackend
from .caching.cache_service import CacheService
from .caching.invalidation import CacheInvalidator, TagInvalidator
from .caching.query_cache import CachedQueryExecutor
from .domain.dashboard import DashboardStatsService, TicketCounter
from .ratelimit.sliding_window import (
    DEFAULT_ROUTE_RULES,
    DEFAULT_RULE,
    RateLimitMiddleware,
    SlidingWindowRateLimiter,
    load_rate_limit_rules,
)


class InvalidateTagsRequest(BaseModel):
    tags: List[str] = Field(..., min_length=1)


class InvalidateModelRequest(BaseModel):
    model: str = Field(..., min_length=1)
    id: Optional[str] = None


class TicketChangedEvent(BaseModel):
    ticket_id: str = Field(..., min_length=1)
    user_id: Optional[str] = None


class CategoryChangedEvent(BaseModel):
    category_id: Optional[str] = None


class UserChangedEvent(BaseModel):
    user_id: str = Field(..., min_length=1)


class HelpdeskService(BaseService):
    """Helpdesk cache and rate limiting service."""

    def __init__(
        self,
        *,
        redis_client: Optional[redis.Redis] = None,
        ticket_counter: Optional[TicketCounter] = None,
        **config_overrides: Any,
    ):
        super().__init__("helpdesk", 8000, **config_overrides)

        self.backend = RedisBackend(
            self.config.redis_url,
            socket_timeout=self.config.redis_socket_timeout,
            connect_timeout=self.config.redis_connect_timeout,
            client=redis_client,
        )
        self.cache = CacheService(
            self.backend,
            default_ttl=self.config.cache_default_ttl,
            tag_index_ttl=self.config.cache_tag_index_ttl,
            write_behind=self.config.cache_write_behind,
            metrics=self.metrics,
        )
        self.tag_invalidator = TagInvalidator(self.backend, metrics=self.metrics)
        self.invalidator = CacheInvalidator(self.tag_invalidator)
        self.query_executor = CachedQueryExecutor(self.cache)
        self.dashboard = DashboardStatsService(self.cache, ticket_counter)
        self.rate_limiter = self._build_rate_limiter()

        self.app.add_middleware(
            RateLimitMiddleware,
            limiter=self.rate_limiter,
            enabled=self.config.rate_limiting_active,
        )

        self._setup_cache_routes()
        self._setup_helpdesk_routes()

        self.app.state.helpdesk_service = self

    async def startup(self):
        available = await self.backend.start()
        self.metrics.set_gauge("backend_available", 1 if available else 0)

    async def shutdown(self):
        await self.cache.stop()
        await self.backend.stop()

    def _build_rate_limiter(self) -> SlidingWindowRateLimiter:
        rules = dict(DEFAULT_ROUTE_RULES)
        default_rule = DEFAULT_RULE
        if self.config.rate_limits_file:
            loaded = load_rate_limit_rules(self.config.rate_limits_file)
            rules.update(loaded["routes"])
            default_rule = loaded["default"] or DEFAULT_RULE
            self.logger.info(
                "Loaded rate limit rules",
                path=self.config.rate_limits_file,
                routes=sorted(loaded["routes"]),
            )
        return SlidingWindowRateLimiter(
            self.backend,
            rules=rules,
            default_rule=default_rule,
            metrics=self.metrics,
        )

    async def _check_dependencies(self) -> Dict[str, str]:
        available = await self.backend.ping()
        self.metrics.set_gauge("backend_available", 1 if available else 0)
        return {"redis": "ok" if available else "unavailable"}

    async def _require_admin_key(self, x_api_key: Optional[str] = Header(default=None, alias="X-API-Key")):
        """Guard for cache administration routes."""
        keys = self.config.admin_api_keys
        if not keys and self.config.env == "local":
            return
        if x_api_key is None or x_api_key not in keys:
            self.logger.warning("Rejected cache administration request", has_key=x_api_key is not None)
            raise AuthenticationError("Invalid API key")

    def _setup_cache_routes(self):
        """Cache administration routes used by write paths and operators."""
        admin = [Depends(self._require_admin_key)]

        @self.app.get("/api/cache/stats", dependencies=admin)
        async def cache_stats():
            stats: Dict[str, Any] = {"local": self.cache.stats()}
            try:
                stats["keys"] = {
                    "query": await self.backend.count_keys("query:*"),
                    "tag": await self.backend.count_keys("tag:*"),
                    "ratelimit": await self.backend.count_keys("ratelimit:*"),
                }
            except BACKEND_ERRORS as exc:
                self.logger.error("Cache stats error", error=str(exc))
                stats["error"] = str(exc)
            return stats

        @self.app.post("/api/cache/invalidate", dependencies=admin)
        async def invalidate_tags(body: InvalidateTagsRequest):
            report = await self.tag_invalidator.invalidate(body.tags)
            return report.to_dict()

        @self.app.post("/api/cache/invalidate-model", dependencies=admin)
        async def invalidate_model(body: InvalidateModelRequest):
            report = await self.tag_invalidator.invalidate_model_cache(body.model, body.id)
            return report.to_dict()

        @self.app.post("/api/cache/events/ticket", dependencies=admin)
        async def ticket_changed(body: TicketChangedEvent):
            report = await self.invalidator.on_ticket_change(body.ticket_id, body.user_id)
            return report.to_dict()

        @self.app.post("/api/cache/events/category", dependencies=admin)
        async def category_changed(body: CategoryChangedEvent):
            report = await self.invalidator.on_category_change(body.category_id)
            return report.to_dict()

        @self.app.post("/api/cache/events/user", dependencies=admin)
        async def user_changed(body: UserChangedEvent):
            report = await self.invalidator.on_user_change(body.user_id)
            return report.to_dict()

    def _setup_helpdesk_routes(self):

        @self.app.get("/")
        async def root():
            return {
                "service": self.service_name,
                "message": "Helpdesk Access Layer - Cache and Rate Limiting",
                "version": "1.0.0",
            }

        @self.app.get("/api/rate-limits")
        async def rate_limits():
            return {
                "enabled": self.config.rate_limiting_active,
                "configured_limits": self.rate_limiter.configured_limits(),
            }

        @self.app.get("/api/dashboard-stats")
        async def dashboard_stats(
            user_id: Optional[str] = Query(default=None),
            role: str = Query(default="USER"),
        ):
            return await self.dashboard.get_stats(user_id, role)


def create_app(**kwargs: Any):
    """Create FastAPI application."""
    service = HelpdeskService(**kwargs)
    return service.app


if __name__ == "__main__":
    service = HelpdeskService()
    service.run()
