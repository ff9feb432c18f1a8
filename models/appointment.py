"""Appointment models for bookings made against a resource."""

import math
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AppointmentStatus(str, Enum):
    """Persisted appointment status."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


class BookingState(str, Enum):
    """In-flight state of a booking request inside the scheduling engine."""

    REQUESTED = "requested"
    RESERVED = "reserved"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    REJECTED = "rejected"


# Statuses that hold slot capacity once persisted
OCCUPYING_STATUSES = frozenset({AppointmentStatus.CONFIRMED, AppointmentStatus.COMPLETED})

# Administrative transitions allowed from each status
ALLOWED_TRANSITIONS = {
    AppointmentStatus.PENDING: frozenset(
        {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.CONFIRMED: frozenset(
        {
            AppointmentStatus.CANCELLED,
            AppointmentStatus.COMPLETED,
            AppointmentStatus.NO_SHOW,
        }
    ),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
}


class Appointment(BaseModel):
    """Appointment model."""

    id: Optional[str] = None
    resource_id: str = Field(..., description="Barbershop or staff member ID")
    user_id: str = Field(..., description="Requesting user ID")
    service_type: str
    start_time: datetime = Field(..., description="Slot-aligned start, timezone-aware")
    duration_minutes: int = Field(..., ge=1, description="Copied from the service at booking time")
    slot_minutes: int = Field(..., ge=1, description="Resource slot grid at booking time")
    status: AppointmentStatus = AppointmentStatus.PENDING
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    notes: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    reservation_id: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "resource_id": "lux-barber",
                "user_id": "user-123",
                "service_type": "Haircut",
                "start_time": "2026-01-15T10:00:00-03:00",
                "duration_minutes": 30,
                "slot_minutes": 30,
                "status": "confirmed",
                "price": 45.0,
            }
        }
    )

    @field_validator("start_time")
    @classmethod
    def _require_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None or value.utcoffset() is None:
            raise ValueError("start_time must be timezone-aware")
        return value

    @property
    def slots_span(self) -> int:
        """Number of grid slots this appointment occupies."""
        return max(1, math.ceil(self.duration_minutes / self.slot_minutes))

    @property
    def end_time(self) -> datetime:
        return self.start_time + timedelta(minutes=self.slots_span * self.slot_minutes)

    @property
    def hold_id(self) -> str:
        """ID of the availability hold backing this appointment."""
        return self.reservation_id or f"appointment-{self.id}"

    @property
    def occupies_slots(self) -> bool:
        return self.status in OCCUPYING_STATUSES

    @property
    def is_active(self) -> bool:
        """Anything not cancelled is shown as active to the user."""
        return self.status != AppointmentStatus.CANCELLED

    @property
    def can_be_cancelled(self) -> bool:
        return self.status == AppointmentStatus.CONFIRMED

    @property
    def is_completed(self) -> bool:
        return self.status == AppointmentStatus.COMPLETED

    def can_transition_to(self, new_status: AppointmentStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS[self.status]
