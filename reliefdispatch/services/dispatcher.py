# reliefdispatch/services/dispatcher.py
"""
Priority dispatch scheduler.

Ready items live in a heap ordered by (order desc, enqueued_at, seq); items
waiting out a retry delay live in a second heap keyed by not_before and are
promoted on pop. A single consumer drains the queue; every allocation-state
change (drain, cancel, decline) runs under one asyncio lock.
"""
import asyncio
import heapq
import itertools
import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, List, Optional

from reliefdispatch.core.config import Settings, priority_order_value, settings
from reliefdispatch.core.states import PENDING_STATES, is_settled
from reliefdispatch.schemas import BackfillResult, QueueEntryOut
from reliefdispatch.services.allocation import Allocator

logger = logging.getLogger(__name__)


@dataclass
class QueueItem:
    request_id: str
    priority: Optional[str]
    order: float
    enqueued_at: float
    attempts: int = 0
    not_before: float = 0.0
    seq: int = 0


class DispatchScheduler:
    def __init__(
        self,
        repo,
        allocator: Optional[Allocator] = None,
        cfg: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.repo = repo
        self.cfg = cfg or settings
        self.allocator = allocator or Allocator(repo, cfg=self.cfg)
        self.clock = clock

        self._lock = threading.Lock()
        self._ready: list = []
        self._delayed: list = []
        self._index: Dict[str, QueueItem] = {}
        self._seq = itertools.count()

        self._mutation_lock = asyncio.Lock()
        self._draining = False
        self._stopping = False

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._worker_task: Optional[asyncio.Task] = None
        self._backfill_task: Optional[asyncio.Task] = None

    # --------------------------
    # Queue
    # --------------------------
    def __len__(self) -> int:
        with self._lock:
            return len(self._index)

    def _push_locked(self, item: QueueItem) -> None:
        self._index[item.request_id] = item
        if item.not_before > self.clock():
            heapq.heappush(self._delayed, (item.not_before, item.seq, item.request_id))
        else:
            heapq.heappush(self._ready, (-item.order, item.enqueued_at, item.seq, item.request_id))

    def enqueue(self, request_id: str, priority: Optional[str] = None) -> bool:
        """
        Thread-safe. Returns True when the item was added or upgraded,
        False when it was already queued with an equal or higher order.
        """
        order = priority_order_value(priority, self.cfg)
        with self._lock:
            existing = self._index.get(request_id)
            if existing is not None:
                if priority_order_value(existing.priority, self.cfg) >= order:
                    return False
                # stale heap entries are skipped on pop via the seq check
                item = replace(existing, priority=priority, order=order, seq=next(self._seq))
            else:
                item = QueueItem(
                    request_id=request_id,
                    priority=priority,
                    order=order,
                    enqueued_at=self.clock(),
                    seq=next(self._seq),
                )
            self._push_locked(item)

        logger.debug("queued request %s (priority=%s, order=%s)", request_id, priority, order)
        self._wake()
        return True

    def pop_next(self) -> Optional[QueueItem]:
        with self._lock:
            now = self.clock()
            while self._delayed and self._delayed[0][0] <= now:
                _, seq, rid = heapq.heappop(self._delayed)
                item = self._index.get(rid)
                if item is not None and item.seq == seq:
                    heapq.heappush(self._ready, (-item.order, item.enqueued_at, item.seq, rid))

            while self._ready:
                _, _, seq, rid = heapq.heappop(self._ready)
                item = self._index.get(rid)
                if item is None or item.seq != seq:
                    continue
                del self._index[rid]
                return item
            return None

    def snapshot(self) -> List[QueueEntryOut]:
        with self._lock:
            items = sorted(self._index.values(), key=lambda i: (-i.order, i.enqueued_at, i.seq))
            now = self.clock()
        return [
            QueueEntryOut(
                request_id=i.request_id,
                priority=i.priority,
                order=i.order,
                attempts=i.attempts,
                delayed_for_s=round(max(0.0, i.not_before - now), 3),
            )
            for i in items
        ]

    def _next_delay_s(self) -> float:
        with self._lock:
            if not self._delayed:
                return self.cfg.worker_interval_s
            due_in = self._delayed[0][0] - self.clock()
        return max(0.0, min(self.cfg.worker_interval_s, due_in))

    def _wake(self) -> None:
        loop, event = self._loop, self._wakeup
        if loop is None or event is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(event.set)

    # --------------------------
    # Retry policy
    # --------------------------
    def retry_delay_s(self, attempts: int) -> float:
        return min(self.cfg.retry_max_delay_s, self.cfg.retry_base_delay_s * 2 ** attempts)

    def _retry_or_drop(self, item: QueueItem, priority: Optional[str], why: str) -> str:
        if priority == "low":
            logger.info("dropping low-priority request %s after %s", item.request_id, why)
            return "dropped"
        if item.attempts >= self.cfg.max_dispatch_attempts:
            logger.warning("dropping request %s after %d retries (%s)",
                           item.request_id, item.attempts, why)
            return "dropped"

        attempts = item.attempts + 1
        delay = self.retry_delay_s(item.attempts)
        with self._lock:
            if item.request_id in self._index:
                # re-enqueued by someone else while we were working on it
                return "requeued"
            now = self.clock()
            self._push_locked(QueueItem(
                request_id=item.request_id,
                priority=item.priority,
                order=priority_order_value(item.priority, self.cfg) - attempts,
                enqueued_at=now,
                attempts=attempts,
                not_before=now + delay,
                seq=next(self._seq),
            ))
        logger.info("retrying request %s in %.1fs (attempt %d, %s)",
                    item.request_id, delay, attempts + 1, why)
        return "retry"

    # --------------------------
    # Consumer
    # --------------------------
    async def process_item(self, item: QueueItem) -> str:
        """
        One dispatch attempt. Returns what happened:
        matched, skipped, dropped, retry or requeued.
        """
        try:
            request = await self.repo.get_request(item.request_id)
        except Exception as exc:
            logger.exception("lookup of request %s raised", item.request_id)
            return self._retry_or_drop(item, item.priority, f"error: {exc}")
        if request is None:
            logger.info("request %s no longer exists; dropped", item.request_id)
            return "dropped"
        if is_settled(request.status):
            logger.debug("request %s already %s; skipped", item.request_id, request.status)
            return "skipped"

        priority = item.priority or request.priority
        try:
            result = await self.allocator.auto_match(item.request_id)
        except Exception as exc:
            logger.exception("dispatch of request %s raised", item.request_id)
            return self._retry_or_drop(item, priority, f"error: {exc}")

        if result.success:
            return "matched"
        if not result.retryable:
            logger.warning("request %s not dispatchable: %s", item.request_id, result.message)
            return "dropped"
        return self._retry_or_drop(item, priority, result.message or "no match")

    async def drain(self) -> int:
        """Process every item that is due now. Re-entrant calls are no-ops."""
        if self._draining:
            return 0
        self._draining = True
        processed = 0
        try:
            while not self._stopping:
                item = self.pop_next()
                if item is None:
                    break
                async with self._mutation_lock:
                    await self.process_item(item)
                processed += 1
        finally:
            self._draining = False
        return processed

    async def run_exclusive(self, fn, *args, **kwargs):
        async with self._mutation_lock:
            return await fn(*args, **kwargs)

    async def auto_match(self, request_id: str):
        return await self.run_exclusive(self.allocator.auto_match, request_id)

    async def cancel(self, assignment_id: str, reason: Optional[str] = None):
        return await self.run_exclusive(self.allocator.cancel_assignment, assignment_id, reason)

    async def decline(self, assignment_id: str):
        assignment, request = await self.run_exclusive(self.allocator.decline_assignment, assignment_id)
        if request is not None and not is_settled(request.status):
            self.enqueue(request.id, request.priority)
        return assignment, request

    # --------------------------
    # Backfill
    # --------------------------
    async def backfill(
        self,
        statuses: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
    ) -> BackfillResult:
        statuses = list(statuses or PENDING_STATES)
        limit = limit or self.cfg.startup_backfill_limit
        try:
            pending = await self.repo.find_requests(statuses, unassigned_only=True, limit=limit)
        except Exception as exc:
            logger.error("backfill scan failed: %s", exc)
            return BackfillResult(success=False, error=str(exc))

        enqueued = sum(1 for r in pending if self.enqueue(r.id, r.priority))
        if pending:
            logger.info("backfill: scanned %d, enqueued %d", len(pending), enqueued)
        return BackfillResult(success=True, scanned=len(pending), enqueued=enqueued)

    # --------------------------
    # Lifecycle
    # --------------------------
    async def _worker(self) -> None:
        while not self._stopping:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._next_delay_s())
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()
            try:
                await self.drain()
            except Exception:
                logger.exception("dispatch worker pass failed")

    async def _backfill_loop(self) -> None:
        while not self._stopping:
            await asyncio.sleep(self.cfg.backfill_interval_s)
            await self.backfill(limit=self.cfg.backfill_limit)

    @property
    def running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        await self.backfill(limit=self.cfg.startup_backfill_limit)
        self._worker_task = asyncio.create_task(self._worker())
        self._backfill_task = asyncio.create_task(self._backfill_loop())
        logger.info("dispatch scheduler started (%d queued)", len(self))

    async def stop(self) -> None:
        """Waits for the item in flight; anything still queued is left for the next backfill."""
        self._stopping = True
        if self._backfill_task is not None:
            self._backfill_task.cancel()
            try:
                await self._backfill_task
            except asyncio.CancelledError:
                pass
        if self._wakeup is not None:
            self._wakeup.set()
        if self._worker_task is not None:
            await self._worker_task
        self._worker_task = self._backfill_task = None
        self._loop = self._wakeup = None
        logger.info("dispatch scheduler stopped")
