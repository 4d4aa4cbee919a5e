#!/usr/bin/env python3
"""
Invalidate Helpdesk query cache entries by tag or by model.

This helper mirrors the service's cache administration endpoints but can be
executed manually from a developer workstation or CI job, e.g. after a bulk
data fix applied directly to the system of record.
"""

import argparse
import asyncio
import json
from typing import List, Optional
import sys
import os

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from service_helpdesk.app.caching.backend import RedisBackend  # noqa: E402
from service_helpdesk.app.caching.cache_service import tag_key  # noqa: E402
from service_helpdesk.app.caching.invalidation import (  # noqa: E402
    CacheInvalidator,
    InvalidationReport,
    TagInvalidator,
)


async def invalidate(
    *,
    redis_url: str,
    tags: List[str],
    model: Optional[str],
    record_id: Optional[str],
    invalidate_all: bool,
    dry_run: bool,
    backend: Optional[RedisBackend] = None,
) -> dict:
    """Run the requested invalidations and return the summary."""
    backend = backend or RedisBackend(redis_url)
    await backend.start()
    try:
        tag_invalidator = TagInvalidator(backend)
        invalidator = CacheInvalidator(tag_invalidator)

        if invalidate_all:
            tags = list(dict.fromkeys(list(tags) + list(CacheInvalidator.MAIN_TAGS)))

        if dry_run:
            return await _plan(backend, tags, model, record_id)

        report = InvalidationReport()
        if tags:
            report.merge(await invalidator.invalidate_by_tags(tags))
        if model:
            report.merge(await tag_invalidator.invalidate_model_cache(model, record_id))
        return report.to_dict()
    finally:
        await backend.stop()


async def _plan(backend: RedisBackend, tags: List[str], model: Optional[str], record_id: Optional[str]) -> dict:
    """Count what would be removed without deleting anything."""
    planned = {"dry_run": True, "tags": {}, "patterns": {}}
    for tag in tags:
        planned["tags"][tag] = await backend.client.scard(tag_key(tag))
    if model:
        TagInvalidator(backend).check_model(model)
        for pattern in TagInvalidator.model_patterns(model, record_id):
            planned["patterns"][pattern] = await backend.count_keys(pattern)
    return planned


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Invalidate Helpdesk query cache entries.")
    parser.add_argument("--redis-url", default=os.getenv("HELPDESK_REDIS_URL", "redis://localhost:6379/0"), help="Redis connection URL")
    parser.add_argument("--tag", dest="tags", action="append", default=[], help="Tag to invalidate (repeatable)")
    parser.add_argument("--model", default=None, help="Model whose cached queries should be swept")
    parser.add_argument("--id", dest="record_id", default=None, help="Restrict --model to one record id")
    parser.add_argument("--all", dest="invalidate_all", action="store_true", help="Invalidate every main tag")
    parser.add_argument("--dry-run", action="store_true", help="Do not delete anything; print what would be removed")
    args = parser.parse_args(argv)

    if args.record_id and not args.model:
        parser.error("--id requires --model")
    if not (args.tags or args.model or args.invalidate_all):
        parser.error("nothing to invalidate: pass --tag, --model or --all")
    return args


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    try:
        summary = asyncio.run(
            invalidate(
                redis_url=args.redis_url,
                tags=args.tags,
                model=args.model,
                record_id=args.record_id,
                invalidate_all=args.invalidate_all,
                dry_run=args.dry_run,
            )
        )
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[cache-invalidate] failed: {exc}", file=sys.stderr)
        return 1

    if args.dry_run:
        print("[cache-invalidate] DRY RUN - no keys deleted")

    print(json.dumps(summary, indent=2))
    return 0 if summary.get("complete", True) else 2


if __name__ == "__main__":
    raise SystemExit(main())
