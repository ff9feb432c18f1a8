"""Reservation models used by the in-memory availability index."""

from datetime import datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel, Field


class ReservationHandle(BaseModel):
    """
    In-memory claim on a contiguous span of slots for one resource.

    A handle starts out speculative (with an expiry) and becomes permanent
    once confirmed after the appointment is persisted.
    """

    id: str
    resource_id: str
    slot_start: datetime
    slots_span: int = Field(..., ge=1)
    slot_minutes: int = Field(..., ge=1)
    expires_at: Optional[datetime] = None
    confirmed: bool = False
    released: bool = False
    confirmed_sequence: Optional[int] = Field(
        default=None, description="Index sequence number at confirmation"
    )

    @property
    def slot_starts(self) -> List[datetime]:
        step = timedelta(minutes=self.slot_minutes)
        return [self.slot_start + step * i for i in range(self.slots_span)]

    @property
    def end_time(self) -> datetime:
        return self.slot_start + timedelta(minutes=self.slot_minutes * self.slots_span)

    def is_expired(self, now: datetime) -> bool:
        """Only unconfirmed, unreleased handles can expire."""
        if self.confirmed or self.released or self.expires_at is None:
            return False
        return now >= self.expires_at


class SlotReservation(BaseModel):
    """Occupancy counter for one (resource, slot start) pair."""

    resource_id: str
    slot_start: datetime
    count: int = Field(default=0, ge=0)
    capacity: int = Field(..., ge=1)


class Occupancy(BaseModel):
    """Read-only occupancy snapshot; capacity is None for untouched slots."""

    count: int = 0
    capacity: Optional[int] = None

    @property
    def is_full(self) -> bool:
        return self.capacity is not None and self.count >= self.capacity


class SlotAvailability(BaseModel):
    """Bookable slot with its remaining capacity, for display."""

    slot_start: datetime
    remaining_capacity: int = Field(..., ge=0)

    @property
    def is_available(self) -> bool:
        return self.remaining_capacity > 0
