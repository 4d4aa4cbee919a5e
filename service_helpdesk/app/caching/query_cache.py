"""
Cached execution of read queries keyed by a content hash of their arguments.
"""

import functools
import hashlib
import json
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

from shared.logging import get_logger
from .cache_service import CacheResult, CacheService

T = TypeVar("T")

QUERY_PREFIX = "query:"


def canonical_json(value: Any) -> str:
    """Serialize with stable key ordering so equal arguments hash equally."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def generate_query_key(name: str, args: Any = None, operation: Optional[str] = None) -> str:
    """Deterministic cache key for a logical query and its arguments."""
    signature = canonical_json({"name": name, "operation": operation, "args": args})
    return f"{QUERY_PREFIX}{hashlib.sha256(signature.encode('utf-8')).hexdigest()}"


def extract_record_id(args: Any) -> Optional[str]:
    """Find the record id a query targets, either ``{"id": ...}`` or ``{"where": {"id": ...}}``."""
    if not isinstance(args, dict):
        return None
    if args.get("id") is not None:
        return str(args["id"])
    where = args.get("where")
    if isinstance(where, dict) and where.get("id") is not None:
        return str(where["id"])
    return None


class CachedQueryExecutor:
    """Runs read queries through the cache service with model tags."""

    def __init__(self, cache: CacheService, *, default_ttl: Optional[int] = None):
        self.cache = cache
        self.default_ttl = default_ttl
        self.logger = get_logger("helpdesk.query_cache")

    async def execute(
        self,
        model: str,
        operation: str,
        args: Optional[Dict[str, Any]],
        query: Callable[[], Awaitable[T]],
        *,
        ttl: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> T:
        """Execute ``query`` or serve its cached result."""
        result = await self.execute_with_result(model, operation, args, query, ttl=ttl, tags=tags)
        return result.value

    async def execute_with_result(
        self,
        model: str,
        operation: str,
        args: Optional[Dict[str, Any]],
        query: Callable[[], Awaitable[T]],
        *,
        ttl: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> CacheResult[T]:
        key = generate_query_key(model, args, operation)
        entry_tags = self.model_tags(model, args) + list(tags or [])
        result = await self.cache.lookup(
            key,
            query,
            ttl=ttl if ttl is not None else self.default_ttl,
            tags=entry_tags,
        )
        self.logger.debug(
            "Query served",
            model=model,
            operation=operation,
            key=key,
            status=result.status.value,
        )
        return result

    @staticmethod
    def model_tags(model: str, args: Any) -> List[str]:
        """Tags tying an entry to its model and, when known, the record id."""
        tags = [model]
        record_id = extract_record_id(args)
        if record_id is not None:
            tags.append(f"{model}:{record_id}")
        return tags


def cached_query(
    cache: CacheService,
    name: str,
    *,
    ttl: Optional[float] = None,
    tags: Optional[Iterable[str]] = None,
    key_builder: Optional[Callable[..., str]] = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorate an async query function so calls are served through ``cache``.

    Keys default to ``generate_query_key(name, {"args": ..., "kwargs": ...})``.
    Without explicit tags an entry is tagged with its own key, so it can still be
    revalidated individually.
    """
    fixed_tags = list(tags or [])

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            if key_builder is not None:
                key = key_builder(*args, **kwargs)
            else:
                key = generate_query_key(name, {"args": list(args), "kwargs": kwargs})
            return await cache.get(
                key,
                lambda: func(*args, **kwargs),
                ttl=ttl,
                tags=fixed_tags or [key],
            )

        wrapper.cache_name = name  # type: ignore[attr-defined]
        return wrapper

    return decorator
