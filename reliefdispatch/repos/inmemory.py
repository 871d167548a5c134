# reliefdispatch/repos/inmemory.py
import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from reliefdispatch.schemas import (
    AidRequest, Assignment, BlockedRoute, GeoPoint, Offer, Organization,
)
from reliefdispatch.services.geo import haversine_m


def _id() -> str:
    return uuid.uuid4().hex


def _copy(model):
    return model.model_copy(deep=True) if model is not None else None


def _nearest(items, point: GeoPoint, radius_m: float, limit: int):
    hits = []
    for it in items:
        if it.location is None:
            continue
        d = haversine_m(point, it.location)
        if d <= radius_m:
            hits.append((d, it))
    hits.sort(key=lambda x: x[0])
    return [_copy(it) for _, it in hits[:limit]]


class InMemoryRepo:
    """
    Dict-backed store with the same async surface as MongoRepo.
    Everything handed out is a deep copy, so callers must save() to persist.
    """

    def __init__(self):
        self.requests: Dict[str, AidRequest] = {}
        self.offers: Dict[str, Offer] = {}
        self.organizations: Dict[str, Organization] = {}
        self.assignments: Dict[str, Assignment] = {}
        self.blocked_routes: Dict[str, BlockedRoute] = {}
        self.events: List[dict] = []
        self.webhooks: List[dict] = []
        self.outbox: List[dict] = []

    # Requests
    async def insert_request(self, req: AidRequest) -> AidRequest:
        self.requests[req.id] = _copy(req)
        return req

    async def get_request(self, request_id: str) -> Optional[AidRequest]:
        return _copy(self.requests.get(request_id))

    async def save_request(self, req: AidRequest) -> None:
        self.requests[req.id] = _copy(req)

    async def attach_assignment(self, request_id: str, assignment_id: str) -> Optional[AidRequest]:
        req = self.requests.get(request_id)
        if req is None:
            return None
        req.assignments.append(assignment_id)
        if req.status == "new":
            req.status = "assigned"
        return _copy(req)

    async def detach_assignment(self, request_id: str, assignment_id: str) -> Optional[AidRequest]:
        req = self.requests.get(request_id)
        if req is None:
            return None
        req.assignments = [a for a in req.assignments if a != assignment_id]
        if not req.assignments and req.status in ("assigned", "in-progress"):
            req.status = "triaged"
        return _copy(req)

    async def find_requests(
        self,
        statuses: Iterable[str],
        unassigned_only: bool = False,
        limit: Optional[int] = None,
    ) -> List[AidRequest]:
        """Oldest first."""
        statuses = set(statuses)
        found = [
            r for r in self.requests.values()
            if r.status in statuses and not (unassigned_only and r.assignments)
        ]
        found.sort(key=lambda r: r.created_at)
        if limit:
            found = found[:limit]
        return [_copy(r) for r in found]

    async def find_unresolved_requests(self, statuses: Iterable[str], limit: int) -> List[AidRequest]:
        """Newest first, skipping anything already marked or merged as a duplicate."""
        statuses = set(statuses)
        found = [
            r for r in self.requests.values()
            if r.status in statuses and not r.is_duplicate and r.merged_into is None
        ]
        found.sort(key=lambda r: r.created_at, reverse=True)
        return [_copy(r) for r in found[:limit]]

    async def near_requests(
        self,
        point: GeoPoint,
        radius_m: float,
        exclude_id: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
        limit: int = 10,
    ) -> List[AidRequest]:
        statuses = set(statuses) if statuses is not None else None
        pool = [
            r for r in self.requests.values()
            if r.id != exclude_id
            and not r.is_duplicate and r.merged_into is None
            and (statuses is None or r.status in statuses)
        ]
        return _nearest(pool, point, radius_m, limit)

    # Offers
    async def insert_offer(self, offer: Offer) -> Offer:
        self.offers[offer.id] = _copy(offer)
        return offer

    async def get_offer(self, offer_id: str) -> Optional[Offer]:
        return _copy(self.offers.get(offer_id))

    async def near_offers(
        self,
        point: GeoPoint,
        category: str,
        min_quantity: float,
        radius_m: float,
        limit: int,
    ) -> List[Offer]:
        pool = [
            o for o in self.offers.values()
            if o.category == category and o.status == "active" and o.available_quantity >= min_quantity
        ]
        return _nearest(pool, point, radius_m, limit)

    async def offers_for_organizations(self, org_ids: Iterable[str], statuses: Iterable[str]) -> List[Offer]:
        org_ids, statuses = set(org_ids), set(statuses)
        return [_copy(o) for o in self.offers.values() if o.organization_id in org_ids and o.status in statuses]

    async def allocate_offer(self, offer_id: str, quantity: float) -> Optional[Offer]:
        offer = self.offers.get(offer_id)
        if offer is None or offer.status != "active":
            return None
        if not offer.allocate(quantity):
            return None
        return _copy(offer)

    async def release_offer(self, offer_id: str, quantity: float) -> Optional[Offer]:
        offer = self.offers.get(offer_id)
        if offer is None:
            return None
        offer.release(quantity)
        return _copy(offer)

    # Organizations
    async def insert_organization(self, org: Organization) -> Organization:
        self.organizations[org.id] = _copy(org)
        return org

    async def get_organization(self, org_id: str) -> Optional[Organization]:
        return _copy(self.organizations.get(org_id))

    async def get_organizations(self, org_ids: Iterable[str]) -> Dict[str, Organization]:
        return {i: _copy(self.organizations[i]) for i in set(org_ids) if i in self.organizations}

    async def near_organizations(self, point: GeoPoint, radius_m: float, limit: int) -> List[Organization]:
        pool = [o for o in self.organizations.values() if o.is_active and o.is_verified]
        return _nearest(pool, point, radius_m, limit)

    async def adjust_organization_load(self, org_id: str, delta: int) -> None:
        org = self.organizations.get(org_id)
        if org is not None:
            org.active_assignments = max(0, org.active_assignments + delta)

    # Assignments
    async def insert_assignment(self, assignment: Assignment) -> Assignment:
        self.assignments[assignment.id] = _copy(assignment)
        return assignment

    async def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        return _copy(self.assignments.get(assignment_id))

    async def save_assignment(self, assignment: Assignment) -> None:
        self.assignments[assignment.id] = _copy(assignment)

    # Blocked routes
    async def insert_blocked_route(self, route: BlockedRoute) -> BlockedRoute:
        self.blocked_routes[route.id] = _copy(route)
        return route

    async def active_blocked_routes(self, now: datetime) -> List[BlockedRoute]:
        live = []
        for route in self.blocked_routes.values():
            if route.active and route.expires_at is not None and route.expires_at <= now:
                route.active = False
            if route.is_live(now):
                live.append(_copy(route))
        return live

    # Events / webhook outbox
    async def insert_event(self, evt: dict) -> None:
        self.events.append({"_id": _id(), **evt})

    async def list_webhooks(self, org_id: str) -> List[dict]:
        return [h for h in self.webhooks if h.get("org_id") == org_id and h.get("enabled")]

    async def insert_outbox(self, rec: dict) -> None:
        self.outbox.append({"_id": _id(), **rec})
