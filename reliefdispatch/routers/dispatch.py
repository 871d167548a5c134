# reliefdispatch/routers/dispatch.py
from typing import List

from fastapi import APIRouter, Body, Depends, HTTPException

from reliefdispatch.core.errors import InvalidRequestError, NotFoundError
from reliefdispatch.deps import get_repo, get_scheduler
from reliefdispatch.schemas import (
    BackfillIn, BackfillResult, CancelIn, EnqueueIn, MatchResult, QueueEntryOut,
)
from reliefdispatch.services.allocation import validate_for_dispatch
from reliefdispatch.services.dispatcher import DispatchScheduler
from reliefdispatch.services.engine import (
    auto_match_request, backfill_pending_requests, check_sos_status, enqueue_auto_assignment,
)
from reliefdispatch.services.stats import compute_unmet_demand

router = APIRouter(prefix="/api/dispatch", tags=["dispatch"])


async def _load_request(repo, rid: str):
    req = await repo.get_request(rid)
    if not req:
        raise HTTPException(404, "Request not found")
    return req


@router.post("/requests/{rid}/classify")
async def classify_request(rid: str, repo=Depends(get_repo)):
    req = await _load_request(repo, rid)
    check_sos_status(req)
    await repo.save_request(req)
    return {
        "id": req.id,
        "priority": req.priority,
        "sos_detected": req.sos_detected,
        "sos_indicators": req.sos_indicators,
    }


@router.post("/requests/{rid}/enqueue")
async def enqueue_request(
    rid: str,
    body: EnqueueIn | None = Body(None),
    repo=Depends(get_repo),
):
    req = await _load_request(repo, rid)
    try:
        validate_for_dispatch(req)
    except InvalidRequestError as e:
        raise HTTPException(400, str(e))

    priority = (body.priority if body else None) or req.priority
    queued = enqueue_auto_assignment(req.id, priority)
    return {"ok": True, "queued": queued, "priority": priority}


@router.post("/requests/{rid}/auto-match", response_model=MatchResult)
async def auto_match(rid: str, repo=Depends(get_repo)):
    await _load_request(repo, rid)
    return await auto_match_request(rid)


@router.post("/backfill", response_model=BackfillResult)
async def backfill(body: BackfillIn | None = Body(None)):
    body = body or BackfillIn()
    return await backfill_pending_requests(body.statuses, body.limit)


@router.get("/queue", response_model=List[QueueEntryOut])
async def queue_snapshot(scheduler: DispatchScheduler = Depends(get_scheduler)):
    return scheduler.snapshot()


@router.post("/assignments/{aid}/cancel")
async def cancel_assignment(
    aid: str,
    body: CancelIn | None = Body(None),
    scheduler: DispatchScheduler = Depends(get_scheduler),
):
    try:
        assignment = await scheduler.cancel(aid, body.reason if body else None)
    except NotFoundError:
        raise HTTPException(404, "Assignment not found")
    except InvalidRequestError as e:
        raise HTTPException(400, str(e))
    return {"ok": True, "assignment": assignment}


@router.post("/assignments/{aid}/decline")
async def decline_assignment(aid: str, scheduler: DispatchScheduler = Depends(get_scheduler)):
    try:
        assignment, req = await scheduler.decline(aid)
    except NotFoundError:
        raise HTTPException(404, "Assignment not found")
    except InvalidRequestError as e:
        raise HTTPException(400, str(e))
    return {
        "ok": True,
        "assignment": assignment,
        "request_status": req.status if req else None,
    }


@router.get("/unmet-demand")
async def unmet_demand(repo=Depends(get_repo)):
    return await compute_unmet_demand(repo)
