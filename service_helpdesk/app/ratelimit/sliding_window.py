"""
Sliding window rate limiter for the Helpdesk service.
"""

import json
import math
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Union, TYPE_CHECKING

import yaml
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from shared.logging import get_logger
from shared.errors import RateLimitError, ValidationError
from ..caching.backend import BACKEND_ERRORS, RedisBackend

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


@dataclass(frozen=True)
class RateLimitRule:
    """Allow ``limit`` requests per trailing ``window_seconds``."""

    limit: int
    window_seconds: float
    prefix: str = "default"

    def __post_init__(self):
        if self.limit <= 0 or self.window_seconds <= 0:
            raise ValidationError(
                "Rate limit rules need a positive limit and window",
                {"prefix": self.prefix, "limit": self.limit, "window_seconds": self.window_seconds},
            )


DEFAULT_RULE = RateLimitRule(limit=60, window_seconds=60)

DEFAULT_ROUTE_RULES = {
    "/api/auth": RateLimitRule(limit=5, window_seconds=60, prefix="/api/auth"),
    "/api/upload": RateLimitRule(limit=5, window_seconds=300, prefix="/api/upload"),
    "/api/tickets": RateLimitRule(limit=30, window_seconds=60, prefix="/api/tickets"),
}


@dataclass
class RateLimitDecision:
    """Outcome of one rate limit check."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime
    rule: str
    count: int = 0
    retry_after: int = 0
    degraded: bool = False
    error: Optional[str] = field(default=None, repr=False)

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": self.reset_at.isoformat().replace("+00:00", "Z"),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers

    def to_error(self) -> RateLimitError:
        return RateLimitError(
            "Please wait before trying again",
            {"limit": self.limit, "reset_at": self.reset_at.isoformat(), "retry_after": self.retry_after},
            limit=self.limit,
            reset_at=self.reset_at,
        )


class SlidingWindowRateLimiter:
    """Distributed sliding window log limiter on Redis sorted sets.

    Each attempt, allowed or not, is recorded as a member scored by its
    timestamp. Members older than the window are pruned in the same
    transaction, and the key expires one window after the last attempt.
    """

    def __init__(
        self,
        backend: RedisBackend,
        *,
        rules: Optional[Dict[str, RateLimitRule]] = None,
        default_rule: RateLimitRule = DEFAULT_RULE,
        metrics: Optional["MetricsCollector"] = None,
        clock: Callable[[], float] = time.time,
        key_prefix: str = "ratelimit",
    ):
        self.backend = backend
        # Buckets are keyed by rule prefix, so each rule takes the route it is registered under
        self.rules = {
            route: replace(rule, prefix=route)
            for route, rule in (DEFAULT_ROUTE_RULES if rules is None else rules).items()
        }
        self.default_rule = replace(default_rule, prefix="default")
        self.metrics = metrics
        self.clock = clock
        self.key_prefix = key_prefix
        self.logger = get_logger("helpdesk.rate_limiter")

    def resolve_rule(self, route: str) -> RateLimitRule:
        """Longest matching route prefix wins; otherwise the default rule."""
        best: Optional[str] = None
        for prefix in self.rules:
            if route.startswith(prefix) and (best is None or len(prefix) > len(best)):
                best = prefix
        return self.rules[best] if best is not None else self.default_rule

    def _make_key(self, identifier: str, rule: RateLimitRule) -> str:
        """Generate rate limit key."""
        return f"{self.key_prefix}:{rule.prefix}:{identifier}"

    async def check(self, identifier: str, route: str) -> RateLimitDecision:
        """Count this attempt and decide whether it is within the limit."""
        rule = self.resolve_rule(route)
        key = self._make_key(identifier, rule)
        now = self.clock()
        window_start = now - rule.window_seconds
        member = f"{now:.6f}:{uuid.uuid4().hex[:12]}"

        try:
            async with self.backend.client.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(key, "-inf", window_start)
                pipe.zadd(key, {member: now})
                pipe.zcard(key)
                pipe.zrange(key, 0, 0, withscores=True)
                pipe.expire(key, math.ceil(rule.window_seconds))
                _, _, count, oldest, _ = await pipe.execute()
        except BACKEND_ERRORS as exc:
            return self._fail_open(rule, now, identifier, exc)

        count = int(count)
        oldest_score = float(oldest[0][1]) if oldest else now
        reset_ts = oldest_score + rule.window_seconds
        allowed = count <= rule.limit

        decision = RateLimitDecision(
            allowed=allowed,
            limit=rule.limit,
            remaining=max(0, rule.limit - count),
            reset_at=datetime.fromtimestamp(reset_ts, tz=timezone.utc),
            rule=rule.prefix,
            count=count,
            retry_after=0 if allowed else max(1, math.ceil(reset_ts - now)),
        )

        if not allowed:
            self.logger.warning(
                "Rate limit exceeded",
                identifier=identifier,
                route=route,
                rule=rule.prefix,
                count=count,
                limit=rule.limit,
            )
        self._record(rule, "allowed" if allowed else "denied")
        return decision

    async def enforce(self, identifier: str, route: str) -> RateLimitDecision:
        """Like ``check`` but raises ``RateLimitError`` when the limit is exceeded."""
        decision = await self.check(identifier, route)
        if not decision.allowed:
            raise decision.to_error()
        return decision

    async def status(self, identifier: str, route: str) -> RateLimitDecision:
        """Current window usage without counting an attempt."""
        rule = self.resolve_rule(route)
        key = self._make_key(identifier, rule)
        now = self.clock()

        try:
            async with self.backend.client.pipeline(transaction=False) as pipe:
                pipe.zcount(key, f"({now - rule.window_seconds}", "+inf")
                pipe.zrangebyscore(key, f"({now - rule.window_seconds}", "+inf", start=0, num=1, withscores=True)
                count, oldest = await pipe.execute()
        except BACKEND_ERRORS as exc:
            self.logger.error("Rate limit status error", identifier=identifier, error=str(exc))
            return self._open_decision(rule, now, exc)

        count = int(count)
        reset_ts = (float(oldest[0][1]) if oldest else now) + rule.window_seconds
        return RateLimitDecision(
            allowed=count < rule.limit,
            limit=rule.limit,
            remaining=max(0, rule.limit - count),
            reset_at=datetime.fromtimestamp(reset_ts, tz=timezone.utc),
            rule=rule.prefix,
            count=count,
        )

    async def reset(self, identifier: str, route: str) -> bool:
        """Reset rate limit for identifier and route."""
        key = self._make_key(identifier, self.resolve_rule(route))
        try:
            await self.backend.client.delete(key)
        except BACKEND_ERRORS as exc:
            self.logger.error("Rate limit reset error", identifier=identifier, error=str(exc))
            return False

        self.logger.info("Rate limit reset", identifier=identifier, route=route)
        return True

    def configured_limits(self) -> Dict[str, Dict[str, Any]]:
        limits = {
            prefix: {"limit": rule.limit, "window_seconds": rule.window_seconds}
            for prefix, rule in self.rules.items()
        }
        limits["default"] = {"limit": self.default_rule.limit, "window_seconds": self.default_rule.window_seconds}
        return limits

    def _fail_open(self, rule: RateLimitRule, now: float, identifier: str, exc: Exception) -> RateLimitDecision:
        self.logger.error(
            "Rate limit backend unavailable, allowing request",
            identifier=identifier,
            rule=rule.prefix,
            error=str(exc),
        )
        if self.metrics:
            self.metrics.increment_counter("rate_limit_fail_open_total")
        self._record(rule, "fail_open")
        return self._open_decision(rule, now, exc)

    def _open_decision(self, rule: RateLimitRule, now: float, exc: Exception) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=True,
            limit=rule.limit,
            remaining=rule.limit,
            reset_at=datetime.fromtimestamp(now + rule.window_seconds, tz=timezone.utc),
            rule=rule.prefix,
            degraded=True,
            error=str(exc),
        )

    def _record(self, rule: RateLimitRule, decision: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("rate_limit_decisions_total", route=rule.prefix, decision=decision)


def load_rate_limit_rules(path: Union[str, Path]) -> Dict[str, Any]:
    """Load route rules from a JSON or YAML file.

    Expected shape::

        default: {limit: 60, window_seconds: 60}
        routes:
          /api/auth: {limit: 5, window_seconds: 60}

    Returns ``{"default": RateLimitRule | None, "routes": {prefix: RateLimitRule}}``.
    """
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        raw = json.loads(text)
    else:
        raw = yaml.safe_load(text)

    if not isinstance(raw, dict):
        raise ValidationError("Rate limit file must contain a mapping", {"path": str(path)})

    routes = {
        prefix: _rule_from_mapping(entry, prefix)
        for prefix, entry in (raw.get("routes") or {}).items()
    }
    default = _rule_from_mapping(raw["default"], "default") if raw.get("default") else None
    return {"default": default, "routes": routes}


def _rule_from_mapping(entry: Any, prefix: str) -> RateLimitRule:
    if not isinstance(entry, dict) or "limit" not in entry or "window_seconds" not in entry:
        raise ValidationError("Rate limit rule needs limit and window_seconds", {"prefix": prefix})
    return RateLimitRule(limit=int(entry["limit"]), window_seconds=float(entry["window_seconds"]), prefix=prefix)


def client_identifier(request: Request) -> str:
    """Extract the caller IP from standard proxy headers."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host
    return "127.0.0.1"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rejects over-limit requests with 429 before any route handler runs."""

    def __init__(
        self,
        app,
        *,
        limiter: SlidingWindowRateLimiter,
        enabled: bool = True,
        exempt_paths: Iterable[str] = ("/health", "/metrics"),
    ):
        super().__init__(app)
        self.limiter = limiter
        self.enabled = enabled
        self.exempt_paths = tuple(exempt_paths)
        self.logger = get_logger("helpdesk.rate_limit_middleware")

    def should_skip(self, request: Request) -> bool:
        if not self.enabled:
            return True
        if request.headers.get("X-Internal-Request", "").lower() == "true":
            return True
        return request.url.path in self.exempt_paths

    async def dispatch(self, request: Request, call_next):
        if self.should_skip(request):
            return await call_next(request)

        try:
            decision = await self.limiter.check(client_identifier(request), request.url.path)
        except Exception as exc:
            self.logger.error("Rate limiter middleware error", path=request.url.path, error=str(exc), exc_info=True)
            return await call_next(request)

        if not decision.allowed:
            error = decision.to_error()
            return JSONResponse(
                status_code=error.status_code,
                content={"error": "Too many requests", "message": error.message},
                headers=decision.headers(),
            )

        response = await call_next(request)
        for name, value in decision.headers().items():
            response.headers[name] = value
        return response
