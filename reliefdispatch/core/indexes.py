# reliefdispatch/core/indexes.py
from pymongo import ASCENDING, DESCENDING, GEOSPHERE


async def ensure_index(col, keys, name: str, **kwargs):
    existing = [ix["name"] async for ix in col.list_indexes()]
    if name in existing:
        return
    await col.create_index(keys, name=name, **kwargs)


async def ensure_indexes(db):
    # Requests
    await ensure_index(db.requests, [("geo", GEOSPHERE)], "geo_2dsphere")
    await ensure_index(db.requests, [("status", ASCENDING), ("created_at", ASCENDING)], "status_1_created_at_1")
    await ensure_index(db.requests, [("created_at", DESCENDING)], "created_at_-1")
    # Offers
    await ensure_index(db.offers, [("geo", GEOSPHERE)], "geo_2dsphere")
    await ensure_index(db.offers, [("organization_id", ASCENDING), ("status", ASCENDING)], "organization_id_1_status_1")
    await ensure_index(db.offers, [("category", ASCENDING), ("status", ASCENDING)], "category_1_status_1")
    # Organizations
    await ensure_index(db.organizations, [("geo", GEOSPHERE)], "geo_2dsphere")
    # Assignments
    await ensure_index(db.assignments, [("request_id", ASCENDING)], "request_id_1")
    await ensure_index(db.assignments, [("organization_id", ASCENDING), ("status", ASCENDING)], "organization_id_1_status_1")
    # Blocked routes / events
    await ensure_index(db.blocked_routes, [("active", ASCENDING), ("expires_at", ASCENDING)], "active_1_expires_at_1")
    await ensure_index(db.events, [("org_id", ASCENDING), ("created_at", DESCENDING)], "org_id_1_created_at_-1")
    await ensure_index(db.outbox, [("status", ASCENDING), ("next_try_at", ASCENDING)], "status_1_next_try_at_1")
