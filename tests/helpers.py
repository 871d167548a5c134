# tests/helpers.py
from reliefdispatch.schemas import (
    AidRequest, GeoPoint, NeedSpec, Offer, Organization,
)

# Chennai, roughly
CENTER = GeoPoint(lat=13.0827, lng=80.2707)


def point(dlat: float = 0.0, dlng: float = 0.0) -> GeoPoint:
    return GeoPoint(lat=CENTER.lat + dlat, lng=CENTER.lng + dlng)


def needs(*categories, quantity=None, urgency=None) -> dict:
    return {c: NeedSpec(required=True, quantity=quantity, urgency=urgency) for c in categories}


def make_request(**kw) -> AidRequest:
    kw.setdefault("location", CENTER)
    return AidRequest(**kw)


def make_org(**kw) -> Organization:
    kw.setdefault("name", "Relief NGO")
    kw.setdefault("location", CENTER)
    kw.setdefault("is_verified", True)
    return Organization(**kw)


def make_offer(org: Organization, category: str = "food", total: float = 100, available=None, **kw) -> Offer:
    kw.setdefault("location", org.location or CENTER)
    return Offer(
        organization_id=org.id,
        category=category,
        total_quantity=total,
        available_quantity=total if available is None else available,
        **kw,
    )


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
