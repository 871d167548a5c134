# reliefdispatch/services/matching.py
"""
Candidate scoring.

Two paths:
  - offers: pre-listed stock of one category near the request
  - organizations: fallback when no offer fits (or the request names no category)

Both are fail-soft: a candidate that blows up while scoring is logged and
skipped, and a failed lookup yields no candidates instead of an exception.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from reliefdispatch.core.config import MatchingWeights, Settings, settings
from reliefdispatch.core.states import LIVE_OFFER_STATES
from reliefdispatch.schemas import AidRequest, BlockedRoute, Offer, Organization, utcnow
from reliefdispatch.services.geo import any_blockage, haversine_km

logger = logging.getLogger(__name__)


@dataclass
class OfferCandidate:
    offer: Offer
    organization: Optional[Organization]
    score: float
    distance_km: float


@dataclass
class OrganizationCandidate:
    organization: Organization
    score: float
    breakdown: Dict[str, float] = field(default_factory=dict)
    capabilities: Set[str] = field(default_factory=set)


def _response_points(minutes: float, weight: float) -> float:
    return max(0.0, weight - minutes / 60.0 * weight)


# --------------------------
# Offers
# --------------------------
def score_offer(
    offer: Offer,
    organization: Optional[Organization],
    request: AidRequest,
    distance_km: float,
    weights: Optional[MatchingWeights] = None,
) -> float:
    w = weights or settings.matching
    score = max(0.0, w.offer_distance - distance_km * w.offer_distance_per_km)

    if offer.total_quantity > 0:
        score += offer.available_quantity / offer.total_quantity * w.offer_quantity

    if organization is not None:
        if organization.rating:
            score += organization.rating / 5.0 * w.offer_rating
        if organization.average_response_time:
            score += _response_points(organization.average_response_time, w.response)

    score += w.priority_boost.get(request.priority, 0.0) * w.offer_priority_factor

    if offer.is_verified:
        score += w.verified_offer_bonus
    return score


async def find_best_offers(
    repo,
    request: AidRequest,
    category: str,
    quantity: float = 1,
    cfg: Optional[Settings] = None,
) -> List[OfferCandidate]:
    """
    Active offers of `category` with at least `quantity` left, best first.
    Equal scores keep the store's closest-first order.
    """
    cfg = cfg or settings
    if request.location is None:
        return []

    try:
        offers = await repo.near_offers(
            request.location,
            category,
            min_quantity=quantity,
            radius_m=cfg.search_radius_m,
            limit=cfg.offer_candidate_limit,
        )
        orgs = await repo.get_organizations({o.organization_id for o in offers})
    except Exception as exc:
        logger.error("offer lookup failed for request %s (%s): %s", request.id, category, exc)
        return []

    ranked: List[OfferCandidate] = []
    for offer in offers:
        try:
            distance = haversine_km(request.location, offer.location)
            org = orgs.get(offer.organization_id)
            ranked.append(OfferCandidate(
                offer=offer,
                organization=org,
                score=score_offer(offer, org, request, distance, cfg.matching),
                distance_km=distance,
            ))
        except Exception as exc:
            logger.warning("skipping offer %s: %s", offer.id, exc)

    ranked.sort(key=lambda c: c.score, reverse=True)
    return ranked


# --------------------------
# Organizations
# --------------------------
def derive_capabilities(offers: Iterable[Offer]) -> Set[str]:
    """Categories an organization can serve right now (active offers with stock left)."""
    return {o.category for o in offers if o.status == "active" and o.available_quantity > 0}


def capacity_ratio(offers: Iterable[Offer]) -> float:
    """
    Available / total across every live offer of the organization, whatever
    its category. A food-only request still counts the org's water stock.
    """
    live = [o for o in offers if o.status in LIVE_OFFER_STATES]
    total = sum(o.total_quantity for o in live)
    if total <= 0:
        return 0.0
    return sum(o.available_quantity for o in live) / total


def score_organization(
    org: Organization,
    request: AidRequest,
    capabilities: Set[str],
    capacity: float,
    blocked_routes: Iterable[BlockedRoute] = (),
    weights: Optional[MatchingWeights] = None,
) -> Tuple[float, Dict[str, float]]:
    w = weights or settings.matching
    breakdown: Dict[str, float] = {}

    required = request.required_categories()
    if required:
        matched = sum(1 for cat in required if cat in capabilities)
        breakdown["capability"] = matched / len(required) * w.capability
    else:
        breakdown["capability"] = w.capability / 2

    breakdown["capacity"] = capacity * w.capacity

    if org.max_active_assignments > 0:
        breakdown["load"] = (1 - org.active_assignments / org.max_active_assignments) * w.load
    else:
        breakdown["load"] = 0.0

    breakdown["rating"] = org.rating / 5.0 * w.rating
    minutes = org.average_response_time or w.default_response_minutes
    breakdown["response"] = _response_points(minutes, w.response)
    breakdown["priority"] = w.priority_boost.get(request.priority, 0.0)

    if request.priority in ("sos", "critical") and "rescue" in capabilities:
        breakdown["rescue"] = w.rescue_boost
    if org.is_online:
        breakdown["online"] = w.online_boost
    if org.available_24x7:
        breakdown["24x7"] = w.twenty_four_seven

    if org.location is not None and request.location is not None:
        if any_blockage(org.location, request.location, blocked_routes):
            breakdown["route_blocked"] = -w.route_block_penalty

    return sum(breakdown.values()), breakdown


async def rank_organizations(
    repo,
    request: AidRequest,
    cfg: Optional[Settings] = None,
) -> List[OrganizationCandidate]:
    cfg = cfg or settings
    if request.location is None:
        return []

    try:
        orgs = await repo.near_organizations(
            request.location,
            radius_m=cfg.search_radius_m,
            limit=cfg.organization_candidate_limit,
        )
        offers = await repo.offers_for_organizations([o.id for o in orgs], LIVE_OFFER_STATES)
        routes = await repo.active_blocked_routes(utcnow())
    except Exception as exc:
        logger.error("organization lookup failed for request %s: %s", request.id, exc)
        return []

    by_org: Dict[str, List[Offer]] = {}
    for offer in offers:
        by_org.setdefault(offer.organization_id, []).append(offer)

    ranked: List[OrganizationCandidate] = []
    for org in orgs:
        try:
            own = by_org.get(org.id, [])
            caps = derive_capabilities(own)
            score, breakdown = score_organization(
                org, request, caps, capacity_ratio(own), routes, cfg.matching
            )
            ranked.append(OrganizationCandidate(org, score, breakdown, caps))
        except Exception as exc:
            logger.warning("skipping organization %s: %s", org.id, exc)

    # stable: equal scores keep the store order
    ranked.sort(key=lambda c: c.score, reverse=True)
    return ranked


async def find_best_organization(
    repo,
    request: AidRequest,
    cfg: Optional[Settings] = None,
) -> Optional[OrganizationCandidate]:
    ranked = await rank_organizations(repo, request, cfg)
    return ranked[0] if ranked else None
