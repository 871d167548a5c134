# reliefdispatch/repos/mongo.py
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Type, TypeVar

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from reliefdispatch.schemas import (
    AidRequest, Assignment, BlockedRoute, GeoPoint, Offer, Organization,
)

M = TypeVar("M", bound=BaseModel)


def _to_doc(model: BaseModel) -> dict:
    """Model -> Mongo document: string `_id`, plus GeoJSON `geo` for 2dsphere queries."""
    doc = model.model_dump(exclude={"id"})
    doc["_id"] = model.id
    loc = getattr(model, "location", None)
    if isinstance(loc, GeoPoint):
        doc["geo"] = loc.as_geojson()
    return doc


def _from_doc(cls: Type[M], doc: Optional[dict]) -> Optional[M]:
    if doc is None:
        return None
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    doc.pop("geo", None)
    return cls.model_validate(doc)


def _near(point: GeoPoint, radius_m: float) -> dict:
    return {"$near": {"$geometry": point.as_geojson(), "$maxDistance": radius_m}}


class MongoRepo:
    """Motor-backed store. Collections: requests, offers, organizations, assignments, blocked_routes."""

    def __init__(self, db):
        self.db = db

    async def _find(self, cls: Type[M], col, query: dict, sort=None, limit: int = 0) -> List[M]:
        cur = col.find(query)
        if sort:
            cur = cur.sort(sort)
        if limit:
            cur = cur.limit(limit)
        return [_from_doc(cls, d) async for d in cur]

    # Requests
    async def insert_request(self, req: AidRequest) -> AidRequest:
        await self.db.requests.insert_one(_to_doc(req))
        return req

    async def get_request(self, request_id: str) -> Optional[AidRequest]:
        return _from_doc(AidRequest, await self.db.requests.find_one({"_id": request_id}))

    async def save_request(self, req: AidRequest) -> None:
        await self.db.requests.replace_one({"_id": req.id}, _to_doc(req), upsert=True)

    async def attach_assignment(self, request_id: str, assignment_id: str) -> Optional[AidRequest]:
        doc = await self.db.requests.find_one_and_update(
            {"_id": request_id},
            [
                {"$set": {
                    "assignments": {"$concatArrays": [{"$ifNull": ["$assignments", []]}, [assignment_id]]},
                    "status": {"$cond": [{"$eq": ["$status", "new"]}, "assigned", "$status"]},
                }},
            ],
            return_document=ReturnDocument.AFTER,
        )
        return _from_doc(AidRequest, doc)

    async def detach_assignment(self, request_id: str, assignment_id: str) -> Optional[AidRequest]:
        doc = await self.db.requests.find_one_and_update(
            {"_id": request_id},
            {"$pull": {"assignments": assignment_id}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            return None
        if not doc.get("assignments") and doc.get("status") in ("assigned", "in-progress"):
            doc = await self.db.requests.find_one_and_update(
                {"_id": request_id, "assignments": {"$size": 0}},
                {"$set": {"status": "triaged"}},
                return_document=ReturnDocument.AFTER,
            ) or doc
        return _from_doc(AidRequest, doc)

    async def find_requests(
        self,
        statuses: Iterable[str],
        unassigned_only: bool = False,
        limit: Optional[int] = None,
    ) -> List[AidRequest]:
        q: dict = {"status": {"$in": list(statuses)}}
        if unassigned_only:
            q["assignments"] = {"$size": 0}
        return await self._find(AidRequest, self.db.requests, q, [("created_at", ASCENDING)], limit or 0)

    async def find_unresolved_requests(self, statuses: Iterable[str], limit: int) -> List[AidRequest]:
        q = {
            "status": {"$in": list(statuses)},
            "is_duplicate": {"$ne": True},
            "merged_into": None,
        }
        return await self._find(AidRequest, self.db.requests, q, [("created_at", DESCENDING)], limit)

    async def near_requests(
        self,
        point: GeoPoint,
        radius_m: float,
        exclude_id: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
        limit: int = 10,
    ) -> List[AidRequest]:
        q: dict = {
            "geo": _near(point, radius_m),
            "is_duplicate": {"$ne": True},
            "merged_into": None,
        }
        if exclude_id:
            q["_id"] = {"$ne": exclude_id}
        if statuses is not None:
            q["status"] = {"$in": list(statuses)}
        return await self._find(AidRequest, self.db.requests, q, limit=limit)

    # Offers
    async def insert_offer(self, offer: Offer) -> Offer:
        await self.db.offers.insert_one(_to_doc(offer))
        return offer

    async def get_offer(self, offer_id: str) -> Optional[Offer]:
        return _from_doc(Offer, await self.db.offers.find_one({"_id": offer_id}))

    async def near_offers(
        self,
        point: GeoPoint,
        category: str,
        min_quantity: float,
        radius_m: float,
        limit: int,
    ) -> List[Offer]:
        q = {
            "geo": _near(point, radius_m),
            "category": category,
            "status": "active",
            "available_quantity": {"$gte": min_quantity},
        }
        return await self._find(Offer, self.db.offers, q, limit=limit)

    async def offers_for_organizations(self, org_ids: Iterable[str], statuses: Iterable[str]) -> List[Offer]:
        q = {"organization_id": {"$in": list(org_ids)}, "status": {"$in": list(statuses)}}
        return await self._find(Offer, self.db.offers, q)

    async def allocate_offer(self, offer_id: str, quantity: float) -> Optional[Offer]:
        """
        Conditional decrement: matches only when enough stock is left, so two
        writers can never drive available_quantity below zero.
        """
        if quantity <= 0:
            raise ValueError("quantity must be > 0")
        doc = await self.db.offers.find_one_and_update(
            {"_id": offer_id, "status": "active", "available_quantity": {"$gte": quantity}},
            [
                {"$set": {
                    "available_quantity": {"$subtract": ["$available_quantity", quantity]},
                    "stats.total_allocated": {"$add": ["$stats.total_allocated", quantity]},
                }},
                {"$set": {
                    "status": {"$cond": [{"$lte": ["$available_quantity", 0]}, "exhausted", "$status"]},
                }},
            ],
            return_document=ReturnDocument.AFTER,
        )
        return _from_doc(Offer, doc)

    async def release_offer(self, offer_id: str, quantity: float) -> Optional[Offer]:
        if quantity <= 0:
            raise ValueError("quantity must be > 0")
        doc = await self.db.offers.find_one_and_update(
            {
                "_id": offer_id,
                "$expr": {"$lte": [{"$add": ["$available_quantity", quantity]}, "$total_quantity"]},
            },
            [
                {"$set": {
                    "available_quantity": {"$add": ["$available_quantity", quantity]},
                    "stats.total_allocated": {"$max": [0, {"$subtract": ["$stats.total_allocated", quantity]}]},
                }},
                {"$set": {
                    "status": {"$cond": [
                        {"$and": [{"$eq": ["$status", "exhausted"]}, {"$gt": ["$available_quantity", 0]}]},
                        "active",
                        "$status",
                    ]},
                }},
            ],
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            if await self.db.offers.count_documents({"_id": offer_id}, limit=1):
                raise ValueError("release would exceed total_quantity")
            return None
        return _from_doc(Offer, doc)

    # Organizations
    async def insert_organization(self, org: Organization) -> Organization:
        await self.db.organizations.insert_one(_to_doc(org))
        return org

    async def get_organization(self, org_id: str) -> Optional[Organization]:
        return _from_doc(Organization, await self.db.organizations.find_one({"_id": org_id}))

    async def get_organizations(self, org_ids: Iterable[str]) -> Dict[str, Organization]:
        found = await self._find(Organization, self.db.organizations, {"_id": {"$in": list(org_ids)}})
        return {o.id: o for o in found}

    async def near_organizations(self, point: GeoPoint, radius_m: float, limit: int) -> List[Organization]:
        q = {"geo": _near(point, radius_m), "is_active": True, "is_verified": True}
        return await self._find(Organization, self.db.organizations, q, limit=limit)

    async def adjust_organization_load(self, org_id: str, delta: int) -> None:
        await self.db.organizations.update_one(
            {"_id": org_id},
            [{"$set": {"active_assignments": {"$max": [0, {"$add": ["$active_assignments", delta]}]}}}],
        )

    # Assignments
    async def insert_assignment(self, assignment: Assignment) -> Assignment:
        await self.db.assignments.insert_one(_to_doc(assignment))
        return assignment

    async def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        return _from_doc(Assignment, await self.db.assignments.find_one({"_id": assignment_id}))

    async def save_assignment(self, assignment: Assignment) -> None:
        await self.db.assignments.replace_one({"_id": assignment.id}, _to_doc(assignment), upsert=True)

    # Blocked routes
    async def insert_blocked_route(self, route: BlockedRoute) -> BlockedRoute:
        await self.db.blocked_routes.insert_one(_to_doc(route))
        return route

    async def active_blocked_routes(self, now: datetime) -> List[BlockedRoute]:
        # expired routes are switched off as a side effect of reading
        await self.db.blocked_routes.update_many(
            {"active": True, "expires_at": {"$ne": None, "$lte": now}},
            {"$set": {"active": False}},
        )
        q = {"active": True, "$or": [{"expires_at": None}, {"expires_at": {"$gt": now}}]}
        return await self._find(BlockedRoute, self.db.blocked_routes, q)

    # Events / webhook outbox
    async def insert_event(self, evt: dict) -> None:
        await self.db.events.insert_one(dict(evt))

    async def list_webhooks(self, org_id: str) -> List[dict]:
        return [h async for h in self.db.webhooks.find({"org_id": org_id, "enabled": True})]

    async def insert_outbox(self, rec: dict) -> None:
        await self.db.outbox.insert_one(dict(rec))
