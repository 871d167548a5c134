# reliefdispatch/services/engine.py
"""
Entry points the rest of the platform calls into (request intake,
operator tools, the HTTP routers). They run against the process-wide
scheduler from deps.
"""
from typing import Iterable, Optional

from reliefdispatch.deps import get_scheduler
from reliefdispatch.schemas import BackfillResult, MatchResult
from reliefdispatch.services.urgency import check_sos_status

__all__ = [
    "enqueue_auto_assignment",
    "auto_match_request",
    "backfill_pending_requests",
    "check_sos_status",
]


def enqueue_auto_assignment(request_id: str, priority: Optional[str] = None) -> bool:
    """Fire-and-forget; safe to call from any thread. Repeat calls are no-ops."""
    return get_scheduler().enqueue(request_id, priority)


async def auto_match_request(request_id: str) -> MatchResult:
    return await get_scheduler().auto_match(request_id)


async def backfill_pending_requests(
    statuses: Optional[Iterable[str]] = None,
    limit: Optional[int] = None,
) -> BackfillResult:
    return await get_scheduler().backfill(statuses, limit)
