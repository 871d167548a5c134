# reliefdispatch/routers/operator.py
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from reliefdispatch.core.errors import InvalidRequestError, NotFoundError
from reliefdispatch.deps import get_events, get_repo
from reliefdispatch.schemas import DuplicatePair, ResolveDuplicateIn
from reliefdispatch.services.duplicates import find_duplicates, resolve_duplicate

router = APIRouter(prefix="/api/operator", tags=["operator"])


@router.get("/duplicates", response_model=List[DuplicatePair])
async def list_duplicates(
    threshold: Optional[float] = Query(None, ge=0, le=1),
    max_distance: Optional[float] = Query(None, gt=0, description="meters"),
    repo=Depends(get_repo),
):
    return await find_duplicates(repo, threshold=threshold, max_distance_m=max_distance)


@router.post("/duplicates/resolve")
async def resolve(body: ResolveDuplicateIn, repo=Depends(get_repo), events=Depends(get_events)):
    try:
        result = await resolve_duplicate(
            repo,
            body.request_1_id,
            body.request_2_id,
            body.action,
            keep_id=body.keep_id,
            notes=body.notes,
            performed_by=body.performed_by,
            events=events,
        )
    except NotFoundError as e:
        raise HTTPException(404, str(e))
    except InvalidRequestError as e:
        raise HTTPException(400, str(e))
    return {"ok": True, **result}
