# Seeds a small demo data set. Run with RELIEF_USE_MONGO=1 to write to MongoDB.
import asyncio

from reliefdispatch.deps import get_repo
from reliefdispatch.schemas import (
    AidRequest, BlockedRoute, GeoPoint, NeedSpec, Offer, Organization,
)
from reliefdispatch.services.urgency import check_sos_status


async def main():
    repo = get_repo()

    ngo = await repo.insert_organization(Organization(
        name="Coastal Relief Trust",
        location=GeoPoint(lat=13.0827, lng=80.2707),
        rating=4.5,
        average_response_time=20,
        is_online=True,
        is_verified=True,
    ))
    await repo.insert_offer(Offer(
        organization_id=ngo.id,
        title="Drinking water cans",
        category="water",
        total_quantity=200,
        available_quantity=200,
        unit="litres",
        location=GeoPoint(lat=13.0850, lng=80.2750),
        is_verified=True,
    ))
    await repo.insert_blocked_route(BlockedRoute(
        name="Adyar bridge",
        reason="flooding",
        coordinates=[GeoPoint(lat=13.0067, lng=80.2570), GeoPoint(lat=13.0120, lng=80.2600)],
        severity="high",
    ))

    req = AidRequest(
        ticket_number="DEMO-001",
        location=GeoPoint(lat=13.0900, lng=80.2800),
        needs={"water": NeedSpec(required=True, quantity=40)},
        description="Water rising, we are trapped on the roof, please help",
    )
    check_sos_status(req)
    await repo.insert_request(req)
    print(f"Seeded: org {ngo.id}, request {req.id} (priority {req.priority})")


if __name__ == "__main__":
    asyncio.run(main())
