# reliefdispatch/services/duplicates.py
"""
Duplicate detection and operator resolution.

Pairs of nearby, unresolved requests are scored on five components
(location, time, text, needs, beneficiaries). Pairs above the threshold are
surfaced for a human to merge or dismiss; nothing is merged automatically.
"""
import logging
import re
from typing import Dict, List, Optional, Tuple

from reliefdispatch.core.config import Settings, settings
from reliefdispatch.core.errors import InvalidRequestError, NotFoundError
from reliefdispatch.core.states import DUPLICATE_SCAN_STATES
from reliefdispatch.schemas import AidRequest, DuplicatePair, TimelineEntry
from reliefdispatch.services.geo import haversine_m

logger = logging.getLogger(__name__)

WEIGHTS = {
    "location": 0.35,
    "time": 0.20,
    "text": 0.15,
    "needs": 0.20,
    "beneficiaries": 0.10,
}
TIME_WINDOW_H = 24.0
_PUNCT = re.compile(r"[^\w\s]")


def _tokens(text: str) -> set:
    cleaned = _PUNCT.sub("", text.lower())
    return {w for w in cleaned.split() if len(w) > 2}


def text_similarity(a: str, b: str) -> float:
    """Jaccard similarity over lower-cased, punctuation-free words longer than 2 chars."""
    if not a or not b:
        return 0.0
    ta, tb = _tokens(a), _tokens(b)
    union = ta | tb
    if not union:
        return 0.0
    return len(ta & tb) / len(union)


def needs_similarity(a: AidRequest, b: AidRequest) -> float:
    considered = [
        cat for cat in set(a.needs) | set(b.needs)
        if a.need(cat).required or b.need(cat).required
    ]
    if not considered:
        return 0.0
    agree = sum(1 for cat in considered if a.need(cat).required == b.need(cat).required)
    return agree / len(considered)


def beneficiaries_similarity(a: AidRequest, b: AidRequest) -> float:
    ta, tb = a.beneficiaries.total, b.beneficiaries.total
    if ta == 0 or tb == 0:
        return 0.5
    return 1 - abs(ta - tb) / max(ta, tb)


def time_similarity(a: AidRequest, b: AidRequest) -> float:
    hours = abs((a.created_at - b.created_at).total_seconds()) / 3600.0
    return max(0.0, 1 - hours / TIME_WINDOW_H)


def score_duplicate(
    a: AidRequest,
    b: AidRequest,
    radius_m: float = 500.0,
) -> Tuple[float, Dict[str, float], float]:
    """
    Returns (weighted score, component scores, distance in meters).
    Every component is symmetric in (a, b).
    """
    if a.location is not None and b.location is not None:
        distance = haversine_m(a.location, b.location)
        location = max(0.0, 1 - distance / radius_m) if radius_m > 0 else 0.0
    else:
        distance = float("inf")
        location = 0.0

    components = {
        "location": location,
        "time": time_similarity(a, b),
        "text": text_similarity(a.description, b.description),
        "needs": needs_similarity(a, b),
        "beneficiaries": beneficiaries_similarity(a, b),
    }
    score = sum(WEIGHTS[k] * v for k, v in components.items())
    return score, components, distance


async def find_duplicates(
    repo,
    threshold: Optional[float] = None,
    max_distance_m: Optional[float] = None,
    cfg: Optional[Settings] = None,
) -> List[DuplicatePair]:
    cfg = cfg or settings
    threshold = cfg.duplicate_threshold if threshold is None else threshold
    radius = cfg.duplicate_radius_m if max_distance_m is None else max_distance_m

    candidates = await repo.find_unresolved_requests(
        DUPLICATE_SCAN_STATES, limit=cfg.duplicate_candidate_limit
    )

    seen = set()
    pairs: List[DuplicatePair] = []
    for req in candidates:
        if req.location is None:
            continue
        nearby = await repo.near_requests(
            req.location,
            radius,
            exclude_id=req.id,
            statuses=DUPLICATE_SCAN_STATES,
            limit=cfg.duplicate_neighbor_limit,
        )
        for other in nearby:
            key = frozenset((req.id, other.id))
            if key in seen:
                continue
            seen.add(key)

            score, components, distance = score_duplicate(req, other, radius)
            if score >= threshold:
                pairs.append(DuplicatePair(
                    score=round(score, 4),
                    distance_m=round(distance, 1),
                    components=components,
                    request_1=req,
                    request_2=other,
                ))

    pairs.sort(key=lambda p: p.score, reverse=True)
    logger.info("duplicate scan: %d candidates, %d pairs >= %.2f", len(candidates), len(pairs), threshold)
    return pairs[: cfg.duplicate_result_limit]


async def _load_pair(repo, id_1: str, id_2: str) -> Tuple[AidRequest, AidRequest]:
    r1 = await repo.get_request(id_1)
    r2 = await repo.get_request(id_2)
    if r1 is None or r2 is None:
        raise NotFoundError("One or both requests not found")
    return r1, r2


def _with_notes(text: str, notes: Optional[str]) -> str:
    return f"{text}. {notes}" if notes else text


async def merge_duplicates(
    repo,
    keep_id: str,
    discard_id: str,
    notes: Optional[str] = None,
    performed_by: Optional[str] = None,
    events=None,
    cfg: Optional[Settings] = None,
) -> dict:
    """
    Close `discard_id` as a duplicate of `keep_id`. The kept request's
    status is left as-is; both timelines get an entry.
    """
    cfg = cfg or settings
    keep, discard = await _load_pair(repo, keep_id, discard_id)
    if keep.id == discard.id:
        raise InvalidRequestError("Cannot merge a request into itself")

    score, _, _ = score_duplicate(keep, discard, cfg.duplicate_radius_m)

    discard.is_duplicate = True
    discard.merged_into = keep.id
    discard.duplicate_score = round(score, 4)
    discard.status = "closed"
    discard.timeline.append(TimelineEntry(
        action="Marked as duplicate",
        details=_with_notes(f"Merged into request {keep.label()}", notes),
        performed_by=performed_by,
    ))
    keep.timeline.append(TimelineEntry(
        action="Duplicate merged",
        details=_with_notes(f"Request {discard.label()} merged into this request", notes),
        performed_by=performed_by,
    ))
    await repo.save_request(discard)
    await repo.save_request(keep)

    logger.info("merged duplicate %s into %s (score %.3f)", discard.id, keep.id, score)
    if events is not None:
        await events.emit("duplicate:resolved", {
            "action": "merge",
            "kept_id": keep.id,
            "discarded_id": discard.id,
            "score": discard.duplicate_score,
        })
    return {"action": "merge", "kept_id": keep.id, "discarded_id": discard.id, "score": discard.duplicate_score}


async def mark_not_duplicate(
    repo,
    id_1: str,
    id_2: str,
    notes: Optional[str] = None,
    performed_by: Optional[str] = None,
) -> dict:
    r1, r2 = await _load_pair(repo, id_1, id_2)
    for this, other in ((r1, r2), (r2, r1)):
        this.timeline.append(TimelineEntry(
            action="Duplicate review",
            details=_with_notes(f"Reviewed against {other.label()}: not a duplicate", notes),
            performed_by=performed_by,
        ))
        await repo.save_request(this)
    return {"action": "not-duplicate", "request_ids": [r1.id, r2.id]}


async def resolve_duplicate(
    repo,
    request_1_id: str,
    request_2_id: str,
    action: str,
    keep_id: Optional[str] = None,
    notes: Optional[str] = None,
    performed_by: Optional[str] = None,
    events=None,
    cfg: Optional[Settings] = None,
) -> dict:
    if action == "merge":
        keep_id = keep_id or request_1_id
        if keep_id not in (request_1_id, request_2_id):
            raise InvalidRequestError("keep_id must be one of the two requests")
        discard_id = request_2_id if keep_id == request_1_id else request_1_id
        return await merge_duplicates(repo, keep_id, discard_id, notes, performed_by, events, cfg)
    if action == "not-duplicate":
        return await mark_not_duplicate(repo, request_1_id, request_2_id, notes, performed_by)
    raise InvalidRequestError(f"Unknown action: {action}")
