"""
Custom exception classes for better error handling.
Provides specific error types instead of generic exceptions.
"""

from datetime import datetime
from typing import Optional


class DatabaseError(Exception):
    """Base exception for database operations."""

    pass


class StoreError(DatabaseError):
    """Raised when the appointment store fails; the cause is not interpreted."""

    pass


class SchedulingError(Exception):
    """Base exception for booking and scheduling operations."""

    pass


class InvalidSlotError(SchedulingError):
    """
    Raised when a requested time is off the slot grid, outside operating
    hours, or the service type is not offered by the resource.
    """

    pass


class CapacityExceededError(SchedulingError):
    """Raised when a slot span is already full at reservation time."""

    def __init__(
        self,
        resource_id: str,
        slot_start: datetime,
        message: Optional[str] = None,
    ):
        self.resource_id = resource_id
        self.slot_start = slot_start
        super().__init__(
            message
            or f"Slot {slot_start.isoformat()} is full for resource {resource_id}"
        )


class ResourceClosedError(SchedulingError):
    """Raised when a resource is inactive or does not exist."""

    pass


class InvalidScheduleError(ResourceClosedError):
    """Raised when a resource's operating hours are malformed (open >= close)."""

    pass


class PersistenceError(SchedulingError):
    """
    Raised when the store fails after a successful reservation.

    The in-memory reservation has already been released when this is raised,
    so the whole booking request can be retried.
    """

    pass


class NotFoundError(SchedulingError):
    """Raised when an appointment does not exist."""

    pass


class ForbiddenError(SchedulingError):
    """Raised when the acting user may not change an appointment."""

    pass


class InvalidTransitionError(SchedulingError):
    """Raised when an appointment status change is not allowed."""

    pass


class NotCancellableError(InvalidTransitionError):
    """Raised when an appointment is not confirmed or starts too soon to cancel."""

    pass


class ReservationExpiredError(SchedulingError):
    """Raised when confirming a reservation that expired or was released."""

    pass
