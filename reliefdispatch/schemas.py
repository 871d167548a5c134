from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, Field, computed_field, model_validator

Priority = Literal["low", "medium", "high", "critical", "sos"]
Urgency = Literal["low", "medium", "high", "critical"]
RequestStatus = Literal["new", "triaged", "assigned", "in-progress", "fulfilled", "closed", "cancelled"]
OfferStatus = Literal["active", "paused", "exhausted", "expired", "cancelled"]
OfferCategory = Literal[
    "rescue", "food", "water", "medical", "shelter",
    "transport", "baby_supplies", "sanitation", "power",
]
AssignmentStatus = Literal[
    "new", "accepted", "rejected", "en-route", "arrived",
    "in-progress", "completed", "failed", "cancelled",
]
AssignmentMethod = Literal["auto", "manual", "offer-match"]
Severity = Literal["low", "medium", "high", "critical"]


def new_id() -> str:
    return str(ObjectId())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --------------------------
# Shared Submodels
# --------------------------
class GeoPoint(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)

    def as_geojson(self) -> dict:
        return {"type": "Point", "coordinates": [self.lng, self.lat]}

    def is_null_island(self) -> bool:
        return self.lat == 0.0 and self.lng == 0.0


class NeedSpec(BaseModel):
    required: bool = False
    quantity: Optional[float] = None
    urgency: Optional[Urgency] = None
    details: Optional[str] = None


class Beneficiaries(BaseModel):
    adults: int = 1
    children: int = 0
    elderly: int = 0
    infants: int = 0

    @computed_field
    @property
    def total(self) -> int:
        return self.adults + self.children + self.elderly + self.infants


class SpecialNeeds(BaseModel):
    medical_conditions: List[str] = Field(default_factory=list)
    disabilities: List[str] = Field(default_factory=list)
    pregnant: bool = False


class DeviceInfo(BaseModel):
    battery_level: Optional[float] = None
    signal_strength: Optional[str] = None
    network_type: Optional[str] = None


class RequestMessage(BaseModel):
    message: str = ""
    sender_role: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class TimelineEntry(BaseModel):
    action: str
    details: str = ""
    performed_by: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class SosIndicators(BaseModel):
    keywords: List[str] = Field(default_factory=list)
    trapped: bool = False
    medical_emergency: bool = False
    repeated_calls: int = 0
    low_battery: bool = False
    poor_signal: bool = False


# --------------------------
# Requests
# --------------------------
class AidRequest(BaseModel):
    id: str = Field(default_factory=new_id)
    ticket_number: Optional[str] = None
    location: Optional[GeoPoint] = None
    address: Optional[str] = None
    needs: Dict[str, NeedSpec] = Field(default_factory=dict)
    beneficiaries: Beneficiaries = Field(default_factory=Beneficiaries)
    special_needs: SpecialNeeds = Field(default_factory=SpecialNeeds)
    description: str = ""
    language: str = "en"
    messages: List[RequestMessage] = Field(default_factory=list)
    device_info: Optional[DeviceInfo] = None

    priority: Priority = "medium"
    self_declared_urgency: Urgency = "medium"
    sos_detected: bool = False
    sos_indicators: SosIndicators = Field(default_factory=SosIndicators)

    status: RequestStatus = "new"
    is_duplicate: bool = False
    merged_into: Optional[str] = None
    duplicate_score: Optional[float] = None

    assignments: List[str] = Field(default_factory=list)
    timeline: List[TimelineEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    def required_categories(self) -> List[str]:
        return [name for name, need in self.needs.items() if need.required]

    def need(self, category: str) -> NeedSpec:
        return self.needs.get(category) or NeedSpec()

    def label(self) -> str:
        return f"#{self.ticket_number}" if self.ticket_number else self.id


# --------------------------
# Offers & Organizations
# --------------------------
class OfferStats(BaseModel):
    total_allocated: float = 0.0
    total_fulfilled: float = 0.0
    people_helped: int = 0


class Offer(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    title: str = ""
    category: OfferCategory
    total_quantity: float = Field(ge=0)
    available_quantity: float = Field(ge=0)
    unit: str = "units"
    location: GeoPoint
    coverage_radius_m: float = 10_000.0
    status: OfferStatus = "active"
    is_verified: bool = False
    stats: OfferStats = Field(default_factory=OfferStats)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _quantity_bounds(self):
        if self.available_quantity > self.total_quantity:
            raise ValueError("available_quantity cannot exceed total_quantity")
        return self

    def allocate(self, quantity: float) -> bool:
        """
        Take `quantity` out of this offer.
        Returns False (and leaves the offer untouched) when not enough is left.
        """
        if quantity <= 0:
            raise ValueError("quantity must be > 0")
        if self.available_quantity < quantity:
            return False
        self.available_quantity -= quantity
        self.stats.total_allocated += quantity
        if self.available_quantity == 0:
            self.status = "exhausted"
        return True

    def release(self, quantity: float) -> None:
        """
        Give back `quantity` from a cancelled/declined allocation.
        """
        if quantity <= 0:
            raise ValueError("quantity must be > 0")
        if self.available_quantity + quantity > self.total_quantity:
            raise ValueError("release would exceed total_quantity")
        self.available_quantity += quantity
        self.stats.total_allocated = max(0.0, self.stats.total_allocated - quantity)
        if self.status == "exhausted" and self.available_quantity > 0:
            self.status = "active"


class Organization(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    location: Optional[GeoPoint] = None
    active_assignments: int = 0
    max_active_assignments: int = 50
    rating: float = Field(default=5.0, ge=0, le=5)
    average_response_time: float = 0.0  # minutes
    is_online: bool = False
    available_24x7: bool = False
    is_active: bool = True
    is_verified: bool = False
    created_at: datetime = Field(default_factory=utcnow)


# --------------------------
# Assignments & Routes
# --------------------------
class Assignment(BaseModel):
    id: str = Field(default_factory=new_id)
    request_id: str
    offer_id: Optional[str] = None
    organization_id: str
    category: str
    quantity: Optional[float] = None
    status: AssignmentStatus = "new"
    priority: Priority = "medium"
    method: AssignmentMethod = "auto"
    delivery_location: Optional[GeoPoint] = None
    pickup_location: Optional[GeoPoint] = None
    created_at: datetime = Field(default_factory=utcnow)
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None


class BlockedRoute(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    reason: Optional[str] = None
    coordinates: List[GeoPoint] = Field(min_length=2)
    severity: Severity = "medium"
    active: bool = True
    expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    def is_live(self, now: datetime) -> bool:
        if not self.active:
            return False
        return self.expires_at is None or self.expires_at > now


# --------------------------
# Results
# --------------------------
class MatchResult(BaseModel):
    success: bool
    assignments: List[Assignment] = Field(default_factory=list)
    message: str = ""
    unmet: List[str] = Field(default_factory=list)
    retryable: bool = True


class BackfillResult(BaseModel):
    success: bool
    scanned: int = 0
    enqueued: int = 0
    error: Optional[str] = None


class DuplicatePair(BaseModel):
    score: float
    distance_m: float
    components: Dict[str, float]
    request_1: AidRequest
    request_2: AidRequest


class QueueEntryOut(BaseModel):
    request_id: str
    priority: Optional[str] = None
    order: float
    attempts: int
    delayed_for_s: float = 0.0


# --------------------------
# API bodies
# --------------------------
class EnqueueIn(BaseModel):
    priority: Optional[Priority] = None


class BackfillIn(BaseModel):
    statuses: List[RequestStatus] = Field(default_factory=lambda: ["new", "triaged"])
    limit: int = Field(default=500, ge=1, le=5000)


class CancelIn(BaseModel):
    reason: Optional[str] = None


class ResolveDuplicateIn(BaseModel):
    request_1_id: str
    request_2_id: str
    action: Literal["merge", "not-duplicate"]
    keep_id: Optional[str] = None
    notes: Optional[str] = None
    performed_by: Optional[str] = None
