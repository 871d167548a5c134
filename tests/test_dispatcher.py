import threading

import anyio
import pytest

from reliefdispatch.core.config import Settings
from reliefdispatch.repos.inmemory import InMemoryRepo
from reliefdispatch.schemas import MatchResult
from reliefdispatch.services.dispatcher import DispatchScheduler
from helpers import FakeClock, make_offer, make_org, make_request, needs

pytestmark = pytest.mark.anyio


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(repo, clock):
    return DispatchScheduler(repo, clock=clock)


# --------------------------
# Queue ordering
# --------------------------
def test_sos_jumps_the_queue(scheduler, clock):
    for i in range(5):
        scheduler.enqueue(f"low-{i}", "low")
        clock.advance(1)
    scheduler.enqueue("sos-1", "sos")

    first = scheduler.pop_next()
    assert first.request_id == "sos-1"
    assert [scheduler.pop_next().request_id for _ in range(5)] == [f"low-{i}" for i in range(5)]
    assert scheduler.pop_next() is None


def test_equal_priority_is_fifo(scheduler, clock):
    scheduler.enqueue("a", "high")
    clock.advance(1)
    scheduler.enqueue("b", "high")
    scheduler.enqueue("c", "critical")
    assert [scheduler.pop_next().request_id for _ in range(3)] == ["c", "a", "b"]


def test_enqueue_is_idempotent_and_upgrades(scheduler):
    assert scheduler.enqueue("r1", "medium") is True
    assert scheduler.enqueue("r1", "medium") is False
    assert scheduler.enqueue("r1", "low") is False
    assert len(scheduler) == 1

    assert scheduler.enqueue("r1", "sos") is True
    assert len(scheduler) == 1
    item = scheduler.pop_next()
    assert item.priority == "sos"
    assert item.order == 100
    assert scheduler.pop_next() is None


def test_unknown_priority_uses_default_order(scheduler):
    scheduler.enqueue("r1")
    assert scheduler.snapshot()[0].order == 15


def test_enqueue_from_threads(scheduler):
    threads = [
        threading.Thread(target=scheduler.enqueue, args=(f"r{i}", "high"))
        for i in range(20)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(scheduler) == 20


# --------------------------
# Processing
# --------------------------
async def test_drain_matches_request(repo, scheduler):
    org = await repo.insert_organization(make_org())
    await repo.insert_offer(make_offer(org, "food", total=20))
    req = await repo.insert_request(make_request(needs=needs("food", quantity=2)))

    scheduler.enqueue(req.id, "high")
    assert await scheduler.drain() == 1

    stored = await repo.get_request(req.id)
    assert stored.status == "assigned"
    assert len(stored.assignments) == 1
    assert len(scheduler) == 0


async def test_no_match_is_retried_with_delay(repo, scheduler, clock):
    req = await repo.insert_request(make_request(needs=needs("food")))
    scheduler.enqueue(req.id, "high")

    await scheduler.drain()

    snap = scheduler.snapshot()
    assert len(snap) == 1
    assert snap[0].attempts == 1
    assert snap[0].order == 49
    assert snap[0].delayed_for_s == 2.0
    # not due yet
    assert scheduler.pop_next() is None

    clock.advance(2)
    item = scheduler.pop_next()
    assert item.request_id == req.id
    assert item.attempts == 1


async def test_retrying_item_keeps_reduced_order(repo, scheduler):
    req = await repo.insert_request(make_request(needs=needs("food")))
    scheduler.enqueue(req.id, "high")
    await scheduler.drain()

    # a backfill pass re-enqueues at the same priority
    assert scheduler.enqueue(req.id, "high") is False
    assert scheduler.snapshot()[0].order == 49

    assert scheduler.enqueue(req.id, "critical") is True
    assert scheduler.snapshot()[0].order == 80


async def test_backoff_grows_and_caps(scheduler):
    assert [scheduler.retry_delay_s(n) for n in range(7)] == [2, 4, 8, 16, 32, 60, 60]


async def test_dropped_after_max_attempts(repo, scheduler, clock):
    req = await repo.insert_request(make_request(needs=needs("food")))
    scheduler.enqueue(req.id, "critical")

    attempts = 0
    while len(scheduler):
        clock.advance(120)
        attempts += await scheduler.drain()
    # first try plus three retries
    assert attempts == 4


async def test_low_priority_dropped_after_first_failure(repo, scheduler):
    req = await repo.insert_request(make_request(needs=needs("food")))
    scheduler.enqueue(req.id, "low")
    await scheduler.drain()
    assert len(scheduler) == 0


async def test_settled_and_missing_requests(repo, scheduler):
    from reliefdispatch.services.dispatcher import QueueItem

    done = await repo.insert_request(make_request(status="fulfilled"))
    assert await scheduler.process_item(QueueItem(done.id, "high", 50, 0)) == "skipped"
    assert await scheduler.process_item(QueueItem("gone", "high", 50, 0)) == "dropped"


async def test_invalid_request_not_retried(repo, scheduler):
    req = await repo.insert_request(make_request(location=None))
    scheduler.enqueue(req.id, "sos")
    await scheduler.drain()
    assert len(scheduler) == 0


class ExplodingAllocator:
    def __init__(self):
        self.calls = 0

    async def auto_match(self, request_id):
        self.calls += 1
        raise RuntimeError("boom")


async def test_exception_is_retried(repo, clock):
    allocator = ExplodingAllocator()
    scheduler = DispatchScheduler(repo, allocator=allocator, clock=clock)
    req = await repo.insert_request(make_request())
    scheduler.enqueue(req.id, "high")

    await scheduler.drain()

    assert allocator.calls == 1
    assert scheduler.snapshot()[0].attempts == 1


async def test_low_priority_dropped_after_exception(repo, clock):
    allocator = ExplodingAllocator()
    scheduler = DispatchScheduler(repo, allocator=allocator, clock=clock)
    req = await repo.insert_request(make_request())
    scheduler.enqueue(req.id, "low")

    await scheduler.drain()

    assert allocator.calls == 1
    assert len(scheduler) == 0


class FlakyRepo(InMemoryRepo):
    """get_request fails the first `failures` times it is called."""

    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures

    async def get_request(self, request_id):
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("store unreachable")
        return await super().get_request(request_id)


async def test_store_error_on_lookup_is_retried(clock):
    repo = FlakyRepo()
    await repo.insert_organization(make_org())
    req = await repo.insert_request(make_request(needs=needs("water")))
    scheduler = DispatchScheduler(repo, clock=clock)
    scheduler.enqueue(req.id, "sos")

    assert await scheduler.drain() == 1
    snap = scheduler.snapshot()
    assert [e.request_id for e in snap] == [req.id]
    assert snap[0].attempts == 1

    clock.advance(2)
    await scheduler.drain()
    assert (await repo.get_request(req.id)).status == "assigned"
    assert len(scheduler) == 0


async def test_worker_survives_store_outage():
    repo = FlakyRepo()
    await repo.insert_organization(make_org())
    first = await repo.insert_request(make_request(needs=needs("water")))
    cfg = Settings(retry_base_delay_s=0.01, worker_interval_s=0.01)
    scheduler = DispatchScheduler(repo, cfg=cfg)

    await scheduler.start()
    try:
        second = await repo.insert_request(make_request(needs=needs("food")))
        scheduler.enqueue(second.id, "sos")
        with anyio.fail_after(5):
            for rid in (first.id, second.id):
                while (await repo.get_request(rid)).status != "assigned":
                    await anyio.sleep(0.01)
        assert scheduler.running
    finally:
        await scheduler.stop()


class BrokenOnceScheduler(DispatchScheduler):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.broken = True

    async def process_item(self, item):
        if self.broken:
            self.broken = False
            raise RuntimeError("boom")
        return await super().process_item(item)


async def test_worker_keeps_running_after_failed_pass(repo):
    await repo.insert_organization(make_org())
    scheduler = BrokenOnceScheduler(repo, cfg=Settings(worker_interval_s=0.01))
    await scheduler.start()
    try:
        req = await repo.insert_request(make_request(needs=needs("medical")))
        scheduler.enqueue("lost", "sos")
        scheduler.enqueue(req.id, "high")
        with anyio.fail_after(5):
            while (await repo.get_request(req.id)).status != "assigned":
                await anyio.sleep(0.01)
        assert scheduler.running
    finally:
        await scheduler.stop()


class SlowAllocator:
    def __init__(self, scheduler_ref):
        self.scheduler_ref = scheduler_ref
        self.nested = None

    async def auto_match(self, request_id):
        # a drain triggered while draining must not start a second consumer
        self.nested = await self.scheduler_ref[0].drain()
        return MatchResult(success=True)


async def test_drain_is_not_reentrant(repo, clock):
    ref = []
    allocator = SlowAllocator(ref)
    scheduler = DispatchScheduler(repo, allocator=allocator, clock=clock)
    ref.append(scheduler)
    req = await repo.insert_request(make_request())
    scheduler.enqueue(req.id, "high")

    assert await scheduler.drain() == 1
    assert allocator.nested == 0


# --------------------------
# Backfill / lifecycle
# --------------------------
async def test_backfill_enqueues_unassigned(repo, scheduler):
    a = await repo.insert_request(make_request(priority="high"))
    b = await repo.insert_request(make_request(status="triaged"))
    await repo.insert_request(make_request(assignments=["x"]))
    await repo.insert_request(make_request(status="closed"))

    result = await scheduler.backfill()

    assert result.success
    assert result.scanned == 2
    assert result.enqueued == 2
    assert {e.request_id for e in scheduler.snapshot()} == {a.id, b.id}

    again = await scheduler.backfill()
    assert again.enqueued == 0


async def test_decline_requeues(repo, scheduler):
    await repo.insert_organization(make_org())
    req = await repo.insert_request(make_request(needs=needs("shelter"), priority="critical"))
    result = await scheduler.auto_match(req.id)

    _, request = await scheduler.decline(result.assignments[0].id)

    assert request.status == "triaged"
    assert [e.request_id for e in scheduler.snapshot()] == [req.id]


async def test_start_dispatches_backlog(repo):
    await repo.insert_organization(make_org())
    req = await repo.insert_request(make_request(needs=needs("medical")))
    scheduler = DispatchScheduler(repo)

    await scheduler.start()
    try:
        with anyio.fail_after(5):
            while (await repo.get_request(req.id)).status != "assigned":
                await anyio.sleep(0.01)
    finally:
        await scheduler.stop()

    assert not scheduler.running


async def test_enqueue_wakes_running_worker(repo):
    await repo.insert_organization(make_org())
    scheduler = DispatchScheduler(repo)
    await scheduler.start()
    try:
        req = await repo.insert_request(make_request(needs=needs("water")))
        t = threading.Thread(target=scheduler.enqueue, args=(req.id, "sos"))
        t.start()
        t.join()
        with anyio.fail_after(1):
            while (await repo.get_request(req.id)).status != "assigned":
                await anyio.sleep(0.01)
    finally:
        await scheduler.stop()
