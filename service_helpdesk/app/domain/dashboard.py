"""
Cached dashboard statistics for the ticketing read path.
"""

import asyncio
from typing import Any, Dict, Optional, Protocol

from shared.logging import get_logger
from shared.errors import ServiceUnavailableError
from ..caching.cache_service import CacheKeys, CacheService, CacheTTL


class TicketStatus:
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class TicketCounter(Protocol):
    """Counting queries answered by the system of record."""

    async def count_tickets(self, *, user_id: Optional[str] = None, status: Optional[str] = None) -> int:
        ...

    async def count_users(self) -> int:
        ...


def _percentage(part: int, total: int) -> int:
    return round(part / total * 100) if total > 0 else 0


class DashboardStatsService:
    """Ticket totals and status distribution, cached per user.

    Administrators see every ticket, so their entries carry the ``tickets`` tag;
    everyone else only depends on their own tickets (``tickets:user:<id>``).
    """

    def __init__(self, cache: CacheService, counter: Optional[TicketCounter] = None, *, ttl: int = CacheTTL.SHORT):
        self.cache = cache
        self.counter = counter
        self.ttl = ttl
        self.logger = get_logger("helpdesk.dashboard")

    async def get_stats(self, user_id: Optional[str], role: str = "USER") -> Dict[str, Any]:
        if self.counter is None:
            raise ServiceUnavailableError("Ticket store is not configured")

        owner = user_id or "anonymous"
        is_admin = role.upper() == "ADMIN"
        tags = ["dashboard", "stats", "tickets" if is_admin else f"tickets:user:{owner}"]

        return await self.cache.get(
            CacheKeys.dashboard_stats(owner),
            lambda: self._compute(None if is_admin else owner, is_admin),
            ttl=self.ttl,
            tags=tags,
        )

    async def _compute(self, user_id: Optional[str], include_users: bool) -> Dict[str, Any]:
        counter = self.counter
        total, open_count, in_progress, completed, users = await asyncio.gather(
            counter.count_tickets(user_id=user_id),
            counter.count_tickets(user_id=user_id, status=TicketStatus.OPEN),
            counter.count_tickets(user_id=user_id, status=TicketStatus.IN_PROGRESS),
            counter.count_tickets(user_id=user_id, status=TicketStatus.COMPLETED),
            counter.count_users() if include_users else _zero(),
        )
        self.logger.debug("Dashboard stats computed", user_id=user_id, total=total)

        return {
            "stats": {
                "tickets": {
                    "total": total,
                    "open": open_count,
                    "in_progress": in_progress,
                    "completed": completed,
                },
                "users": {"total": users},
                "distribution": {
                    "open": _percentage(open_count, total),
                    "in_progress": _percentage(in_progress, total),
                    "completed": _percentage(completed, total),
                },
            }
        }


async def _zero() -> int:
    return 0
