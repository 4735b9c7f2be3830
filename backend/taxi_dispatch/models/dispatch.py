"""Domain models for rides, drivers, and dispatch mutations.

Documents are persisted with camelCase keys (``driverId``, ``pickedUpAt``)
so the stored shape matches what dispatcher and driver clients read; Python
code uses the snake_case attribute names.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentModel(BaseModel):
    """Base for models stored as camelCase documents."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class RideStatus(str, Enum):
    """Lifecycle status for a ride."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_RIDE_STATUSES = frozenset({RideStatus.COMPLETED.value, RideStatus.CANCELLED.value})

# Field stamped by the mutator when a ride enters the status.
RIDE_STATUS_TIMESTAMPS = {
    RideStatus.ASSIGNED.value: "assignedAt",
    RideStatus.IN_PROGRESS.value: "pickedUpAt",
    RideStatus.COMPLETED.value: "droppedOffAt",
    RideStatus.CANCELLED.value: "cancelledAt",
}


class DriverStatus(str, Enum):
    """Availability status for a driver."""

    AVAILABLE = "available"
    ON_SHIFT = "on-shift"
    ON_RIDE = "on-ride"
    OFF_SHIFT = "off-shift"
    OFFLINE = "offline"


class EntityType(str, Enum):
    """Entity kinds a mutation request can target."""

    RIDE = "ride"
    DRIVER = "driver"


class Coordinates(BaseModel):
    x: float = 0.0
    y: float = 0.0


class Location(DocumentModel):
    name: str
    coords: Optional[Coordinates] = None


class PaymentDetails(DocumentModel):
    """How a fare was settled; any part may be left out."""

    cash: Optional[float] = Field(default=None, ge=0)
    card: Optional[float] = Field(default=None, ge=0)
    check: Optional[float] = Field(default=None, ge=0)
    tip: Optional[float] = Field(default=None, ge=0)


class Ride(DocumentModel):
    """Persisted ride document."""

    id: str
    status: RideStatus = RideStatus.PENDING
    pickup: Location
    dropoff: Optional[Location] = None
    passenger_phone: Optional[str] = None
    passenger_count: int = Field(default=1, ge=1)
    scheduled_time: Optional[datetime] = None
    moving_fee: bool = False
    driver_id: Optional[str] = None
    notes: Optional[str] = None
    total_fare: float = Field(default=0.0, ge=0)
    payment_details: Optional[PaymentDetails] = None
    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    assigned_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    dropped_off_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class Driver(DocumentModel):
    """Persisted driver document."""

    id: str
    name: str
    phone_number: Optional[str] = None
    rating: float = Field(default=5.0, ge=0, le=5)
    status: DriverStatus = DriverStatus.AVAILABLE
    location: Coordinates = Field(default_factory=Coordinates)
    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class RideCreateRequest(DocumentModel):
    """Payload to log a new ride."""

    pickup: Location
    dropoff: Optional[Location] = None
    passenger_phone: Optional[str] = None
    passenger_count: int = Field(default=1, ge=1)
    scheduled_time: Optional[datetime] = None
    moving_fee: bool = False
    notes: Optional[str] = None
    total_fare: float = Field(default=0.0, ge=0)


class RideAssignRequest(DocumentModel):
    driver_id: str
    expected_version: Optional[int] = Field(default=None, ge=1)


class RideStatusRequest(DocumentModel):
    status: RideStatus
    expected_version: Optional[int] = Field(default=None, ge=1)


class RideUpdateRequest(DocumentModel):
    """Partial edit of a ride's booking details; status and driver go through their own routes."""

    pickup: Optional[Location] = None
    dropoff: Optional[Location] = None
    passenger_phone: Optional[str] = None
    passenger_count: Optional[int] = Field(default=None, ge=1)
    scheduled_time: Optional[datetime] = None
    moving_fee: Optional[bool] = None
    notes: Optional[str] = None
    expected_version: Optional[int] = Field(default=None, ge=1)


class RideFareRequest(DocumentModel):
    total_fare: float = Field(ge=0)
    payment_details: PaymentDetails = Field(default_factory=PaymentDetails)
    expected_version: Optional[int] = Field(default=None, ge=1)


class RideVersionRequest(DocumentModel):
    """Body for unassign/cancel, which only need an optional version guard."""

    expected_version: Optional[int] = Field(default=None, ge=1)


class DriverCreateRequest(DocumentModel):
    name: str = Field(min_length=1)
    phone_number: Optional[str] = None
    rating: float = Field(default=5.0, ge=0, le=5)
    status: DriverStatus = DriverStatus.AVAILABLE
    location: Coordinates = Field(default_factory=Coordinates)


class DriverLocationUpdate(DocumentModel):
    x: float
    y: float
    status: Optional[DriverStatus] = None


class MutationRequest(DocumentModel):
    """A validated change for exactly one ride or driver document."""

    entity_type: EntityType
    id: str
    changes: Dict[str, Any]
    expected_version: Optional[int] = Field(default=None, ge=1)


class ResolutionOutcome(str, Enum):
    """How a resolved command ends."""

    MUTATION = "mutation"
    NOOP = "noop"
    INFORMATIONAL = "informational"


class Resolution(DocumentModel):
    """Resolver verdict: mutations to apply, or a message with nothing to do."""

    outcome: ResolutionOutcome
    mutations: List[MutationRequest] = Field(default_factory=list)
    message: str = ""
    reasoning: Optional[str] = None


class InvitationRequest(DocumentModel):
    email: EmailStr
    display_name: Optional[str] = None
    role: str = "driver"
