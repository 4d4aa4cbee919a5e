"""
Cache invalidation by tag, by model and by domain event.

Tag invalidation reads the ``tag:<name>`` index and deletes its members inside
a WATCH/MULTI transaction, so keys added to the tag concurrently are either
deleted too or survive with a fresh index. Model invalidation sweeps the
keyspace with SCAN and is best-effort: whatever was collected before a backend
failure is still deleted.
"""

import asyncio
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set, TYPE_CHECKING

from redis.exceptions import WatchError

from shared.logging import get_logger
from shared.errors import CacheBackendError, CacheConfigurationError
from .backend import BACKEND_ERRORS, RedisBackend
from .cache_service import CacheKeys, TAG_PREFIX, tag_key

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


RESERVED_NAMESPACES = ("query", "tag", "ratelimit")
DELETE_BATCH_SIZE = 500

_GLOB_CHARS = re.compile(r"([*?\[\]\\])")


def escape_glob(value: str) -> str:
    """Escape Redis MATCH metacharacters in a literal fragment."""
    return _GLOB_CHARS.sub(r"\\\1", value)


@dataclass
class InvalidationReport:
    """What an invalidation removed and what went wrong along the way."""

    keys_deleted: int = 0
    tags: List[str] = field(default_factory=list)
    patterns: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.errors

    def merge(self, other: "InvalidationReport") -> "InvalidationReport":
        self.keys_deleted += other.keys_deleted
        self.tags.extend(other.tags)
        self.patterns.extend(other.patterns)
        self.errors.extend(other.errors)
        return self

    def to_dict(self) -> dict:
        return {
            "keys_deleted": self.keys_deleted,
            "tags": self.tags,
            "patterns": self.patterns,
            "errors": self.errors,
            "complete": self.complete,
        }


class TagInvalidator:
    """Removes cache entries by tag index or by model key patterns."""

    def __init__(
        self,
        backend: RedisBackend,
        *,
        metrics: Optional["MetricsCollector"] = None,
        scan_count: int = 100,
        max_retries: int = 5,
    ):
        self.backend = backend
        self.metrics = metrics
        self.scan_count = scan_count
        self.max_retries = max_retries
        self.logger = get_logger("helpdesk.invalidation")

    async def invalidate(self, tags: Iterable[str]) -> InvalidationReport:
        """Delete every entry carrying any of ``tags``."""
        report = InvalidationReport()
        for tag in dict.fromkeys(tags):
            if not tag:
                continue
            report.tags.append(tag)
            try:
                report.keys_deleted += await self.revalidate_tag(tag)
            except BACKEND_ERRORS as exc:
                self.logger.error("Failed to invalidate tag", tag=tag, error=str(exc))
                report.errors.append(f"{tag}: {exc}")

        self._record("tag", report)
        return report

    async def revalidate_tag(self, tag: str) -> int:
        """Atomically delete a tag's members and its index; returns entries removed."""
        index = tag_key(tag)
        client = self.backend.client

        for attempt in range(1, self.max_retries + 1):
            async with client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(index)
                    members = await pipe.smembers(index)
                    pipe.multi()
                    if members:
                        pipe.delete(*members)
                    pipe.delete(index)
                    results = await pipe.execute()
                except WatchError:
                    self.logger.debug("Tag index changed during invalidation, retrying", tag=tag, attempt=attempt)
                    continue

            deleted = int(results[0]) if members else 0
            self.logger.info("Invalidated tag", tag=tag, keys_deleted=deleted)
            return deleted

        raise CacheBackendError(
            "Tag index kept changing during invalidation",
            {"tag": tag, "attempts": self.max_retries},
        )

    async def invalidate_model_cache(self, model: str, record_id: Optional[str] = None) -> InvalidationReport:
        """Sweep every entry derived from ``model`` (or one of its records)."""
        self.check_model(model)
        report = InvalidationReport(patterns=self.model_patterns(model, record_id))

        matched: Set[str] = set()
        for pattern in report.patterns:
            try:
                await self._scan_into(pattern, matched)
            except BACKEND_ERRORS as exc:
                self.logger.error("Cache scan interrupted", pattern=pattern, collected=len(matched), error=str(exc))
                report.errors.append(f"scan {pattern}: {exc}")

        indexes = sorted(key for key in matched if key.startswith(TAG_PREFIX))
        for index in indexes:
            try:
                matched.update(await self.backend.client.smembers(index))
            except BACKEND_ERRORS as exc:
                self.logger.error("Failed to read tag index", index=index, error=str(exc))
                report.errors.append(f"smembers {index}: {exc}")

        if matched:
            report.keys_deleted = await self._delete_keys(sorted(matched), report)
        self.logger.info(
            "Invalidated model cache",
            model=model,
            record_id=record_id,
            keys_deleted=report.keys_deleted,
            errors=len(report.errors),
        )
        self._record("model", report)
        return report

    async def invalidate_keys(self, *keys: str) -> InvalidationReport:
        """Delete exact keys."""
        report = InvalidationReport()
        if keys:
            report.keys_deleted = await self._delete_keys(list(keys), report)
        self._record("key", report)
        return report

    @staticmethod
    def model_patterns(model: str, record_id: Optional[str] = None) -> List[str]:
        """SCAN patterns covering a model's tag indexes and readable keys."""
        model_part = escape_glob(model)
        if record_id is not None:
            id_part = escape_glob(str(record_id))
            return [f"{TAG_PREFIX}{model_part}:{id_part}", f"{model_part}:{id_part}"]
        return [f"{TAG_PREFIX}{model_part}", f"{TAG_PREFIX}{model_part}:*", f"{model_part}:*"]

    async def _scan_into(self, pattern: str, matched: Set[str]) -> None:
        """Page a SCAN cursor until exhausted, adding matches as they arrive."""
        client = self.backend.client
        cursor = 0
        while True:
            cursor, keys = await client.scan(cursor=cursor, match=pattern, count=self.scan_count)
            matched.update(keys)
            if int(cursor) == 0:
                return

    async def _delete_keys(self, keys: List[str], report: InvalidationReport) -> int:
        deleted = 0
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[start:start + DELETE_BATCH_SIZE]
            try:
                deleted += int(await self.backend.client.delete(*batch))
            except BACKEND_ERRORS as exc:
                self.logger.error("Failed to delete cache keys", count=len(batch), error=str(exc))
                report.errors.append(f"delete: {exc}")
        return deleted

    def check_model(self, model: str) -> None:
        if not isinstance(model, str) or not model:
            raise CacheConfigurationError("Model name must be a non-empty string", {"model": model})
        if model.split(":", 1)[0] in RESERVED_NAMESPACES:
            raise CacheConfigurationError("Model name collides with a reserved key namespace", {"model": model})

    def _record(self, kind: str, report: InvalidationReport) -> None:
        if not self.metrics:
            return
        self.metrics.increment_counter("cache_invalidations_total", kind=kind)
        self.metrics.observe_histogram("cache_invalidated_keys", report.keys_deleted, kind=kind)


class CacheInvalidator:
    """Invalidation rules for ticketing write paths.

    Tag conventions: ``tickets`` marks reads over the whole ticket collection,
    ``tickets:user:<id>`` reads scoped to one requester, ``tickets:<id>`` reads of
    one ticket, ``categories`` category reads and ``user:<id>`` profile reads.
    """

    MAIN_TAGS = ("tickets", "categories", "dashboard", "stats")

    def __init__(self, tags: TagInvalidator):
        self.tags = tags
        self.logger = get_logger("helpdesk.cache_invalidator")

    async def on_ticket_change(self, ticket_id: str, user_id: Optional[str] = None) -> InvalidationReport:
        """Invalidate reads affected by creating, editing or deleting a ticket."""
        owner = user_id or "anonymous"
        key_report, tag_report = await asyncio.gather(
            self.tags.invalidate_keys(
                CacheKeys.ticket(ticket_id),
                CacheKeys.dashboard_stats(owner),
                CacheKeys.admin_stats(),
            ),
            self.tags.invalidate(["tickets", f"tickets:{ticket_id}", f"tickets:user:{owner}"]),
        )
        return key_report.merge(tag_report)

    async def on_category_change(self, category_id: Optional[str] = None) -> InvalidationReport:
        """Invalidate category reads."""
        keys = [CacheKeys.categories()]
        if category_id:
            keys.append(CacheKeys.category(category_id))
        key_report, tag_report = await asyncio.gather(
            self.tags.invalidate_keys(*keys),
            self.tags.invalidate(["categories"]),
        )
        return key_report.merge(tag_report)

    async def on_user_change(self, user_id: str) -> InvalidationReport:
        """Invalidate reads scoped to a user profile."""
        key_report, tag_report = await asyncio.gather(
            self.tags.invalidate_keys(CacheKeys.dashboard_stats(user_id)),
            self.tags.invalidate([f"user:{user_id}"]),
        )
        return key_report.merge(tag_report)

    async def invalidate_all(self) -> InvalidationReport:
        """Invalidate every main tag."""
        self.logger.warning("Invalidating all main cache tags", tags=list(self.MAIN_TAGS))
        return await self.tags.invalidate(self.MAIN_TAGS)

    async def invalidate_by_tags(self, tags: Iterable[str]) -> InvalidationReport:
        return await self.tags.invalidate(tags)
