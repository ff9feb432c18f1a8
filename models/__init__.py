"""Pydantic models for data validation and serialization."""

from .appointment import (
    ALLOWED_TRANSITIONS,
    OCCUPYING_STATUSES,
    Appointment,
    AppointmentStatus,
    BookingState,
)
from .reservation import Occupancy, ReservationHandle, SlotAvailability, SlotReservation
from .resource import OperatingHours, Resource, ServiceType

__all__ = [
    "ALLOWED_TRANSITIONS",
    "OCCUPYING_STATUSES",
    "Appointment",
    "AppointmentStatus",
    "BookingState",
    "Occupancy",
    "ReservationHandle",
    "SlotAvailability",
    "SlotReservation",
    "OperatingHours",
    "Resource",
    "ServiceType",
]
