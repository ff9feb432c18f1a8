"""
Scheduling engine: the transactional boundary for booking.

A booking request moves REQUESTED -> RESERVED -> CONFIRMED, or ends in
REJECTED (validation or capacity) or EXPIRED (the hold lapsed before the
commit). Persisted appointments then move CONFIRMED -> CANCELLED,
COMPLETED or NO_SHOW through the explicit transition methods below; no
other code changes an appointment's status.
"""

import logging
from datetime import date, datetime, timedelta
from typing import FrozenSet, Iterable, List, Optional

from db.base import AppointmentStore, ResourceDirectory
from models.appointment import Appointment, AppointmentStatus, BookingState
from models.reservation import ReservationHandle, SlotAvailability
from models.resource import Resource, ServiceType
from scheduling.availability import AvailabilityIndex
from scheduling.calendar import SlotCalendar
from scheduling.clock import Clock
from utils.constants import RESERVATION_ID_DISPLAY_LENGTH
from utils.datetime_utils import is_aware
from utils.exceptions import (
    CapacityExceededError,
    ForbiddenError,
    InvalidSlotError,
    InvalidTransitionError,
    NotCancellableError,
    NotFoundError,
    PersistenceError,
    ReservationExpiredError,
    ResourceClosedError,
    StoreError,
)
from utils.validation import sanitize_notes, validate_service_name

logger = logging.getLogger(__name__)


class SchedulingEngine:
    """Validates, reserves and persists appointments."""

    def __init__(
        self,
        calendar: SlotCalendar,
        index: AvailabilityIndex,
        store: AppointmentStore,
        directory: ResourceDirectory,
        clock: Clock,
        cancellation_lead: timedelta = timedelta(0),
        admin_user_ids: Iterable[str] = (),
    ):
        if cancellation_lead < timedelta(0):
            raise ValueError("cancellation_lead cannot be negative")

        self.calendar = calendar
        self.index = index
        self.store = store
        self.directory = directory
        self.clock = clock
        self.cancellation_lead = cancellation_lead
        self.admin_user_ids: FrozenSet[str] = frozenset(admin_user_ids)

    # ========== Booking ==========

    async def request_booking(
        self,
        resource_id: str,
        user_id: str,
        service_type: str,
        requested_start: datetime,
        notes: Optional[str] = None,
    ) -> Appointment:
        """
        Book a service on a resource.

        Every validation happens before any state changes. Once the slots are
        reserved, a failed write releases them before PersistenceError is
        raised, so the whole call can be retried.

        Raises:
            ResourceClosedError: Resource missing, inactive or misconfigured
            InvalidSlotError: Off-grid, outside hours, in the past, or the
                service is not offered
            CapacityExceededError: Some slot in the span is full
            PersistenceError: The store failed after the reservation
        """
        self._log_state(BookingState.REQUESTED, resource_id, user_id, requested_start)

        try:
            resource = await self._get_open_resource(resource_id)
            service = await self._get_offered_service(resource, service_type)
            slots_span = self._validate_slot(resource, service, requested_start)
        except (ResourceClosedError, InvalidSlotError) as e:
            self._log_state(
                BookingState.REJECTED, resource_id, user_id, requested_start, str(e)
            )
            raise

        try:
            handle = self.index.try_reserve(
                resource.id,
                requested_start,
                slots_span,
                resource.capacity,
                resource.slot_minutes,
            )
        except CapacityExceededError:
            self._log_state(
                BookingState.REJECTED, resource_id, user_id, requested_start, "slot full"
            )
            raise

        self._log_state(BookingState.RESERVED, resource_id, user_id, requested_start)

        appointment = Appointment(
            resource_id=resource.id,
            user_id=user_id,
            service_type=service.name,
            start_time=requested_start,
            duration_minutes=service.duration_minutes,
            slot_minutes=resource.slot_minutes,
            status=AppointmentStatus.CONFIRMED,
            created_at=self.clock.now(),
            notes=sanitize_notes(notes),
            price=service.price,
            reservation_id=handle.id,
        )

        try:
            saved = await self.store.save(appointment)
        except StoreError as e:
            self.index.release(handle)
            logger.warning(
                f"Store write failed for {resource_id} at {requested_start.isoformat()}; "
                f"reservation {self._short(handle.id)} released: {e}"
            )
            raise PersistenceError(f"Could not save appointment: {e}") from e

        await self._commit_reservation(handle, saved, resource)

        self._log_state(
            BookingState.CONFIRMED,
            resource_id,
            user_id,
            requested_start,
            f"appointment {saved.id}",
        )
        return saved

    async def availability(self, resource_id: str, day: date) -> List[SlotAvailability]:
        """
        Slots of a resource on a local date with their remaining capacity.

        Raises:
            ResourceClosedError: Resource missing, inactive or misconfigured
        """
        resource = await self._get_open_resource(resource_id)
        slot_starts = list(self.calendar.slots_for(resource, day))
        occupancies = self.index.occupancies(resource.id, slot_starts)

        return [
            SlotAvailability(
                slot_start=start,
                remaining_capacity=max(0, resource.capacity - occupancy.count),
            )
            for start, occupancy in zip(slot_starts, occupancies)
        ]

    # ========== Status Transitions ==========

    async def cancel(self, appointment_id: str, acting_user_id: str) -> Appointment:
        """
        Cancel a confirmed future appointment.

        The slot is released before the status write. If that write fails
        the slot stays free while the store still says CONFIRMED; the
        reconciliation job repairs that drift.

        Raises:
            NotFoundError: No such appointment
            ForbiddenError: Acting user is neither the owner nor an admin
            NotCancellableError: Not confirmed, or inside the lead time
            PersistenceError: The status write failed
        """
        appointment = await self._get_appointment(appointment_id)

        if acting_user_id != appointment.user_id and not self.is_admin(acting_user_id):
            raise ForbiddenError(
                f"User {acting_user_id} cannot cancel appointment {appointment_id}"
            )

        if not appointment.can_be_cancelled:
            raise NotCancellableError(
                f"Appointment {appointment_id} is {AppointmentStatus(appointment.status).value}"
            )

        now = self.clock.now()
        if appointment.start_time - self.cancellation_lead <= now:
            raise NotCancellableError(
                f"Appointment {appointment_id} starts too soon to be cancelled"
            )

        self.index.release_by_id(appointment.hold_id)

        try:
            updated = await self.store.update_status(
                appointment_id, AppointmentStatus.CANCELLED
            )
        except StoreError as e:
            logger.warning(
                f"Slot freed for appointment {appointment_id} but the cancellation "
                f"was not stored; reconciliation will restore it: {e}"
            )
            raise PersistenceError(f"Could not cancel appointment: {e}") from e

        logger.info(f"Appointment {appointment_id} cancelled by {acting_user_id}")
        return self._with_status(appointment, updated, AppointmentStatus.CANCELLED, now)

    async def mark_completed(self, appointment_id: str) -> Appointment:
        """Administrative CONFIRMED -> COMPLETED; the slot stays consumed."""
        return await self._transition(appointment_id, AppointmentStatus.COMPLETED)

    async def mark_no_show(self, appointment_id: str) -> Appointment:
        """Administrative CONFIRMED -> NO_SHOW; the slot stays consumed."""
        return await self._transition(appointment_id, AppointmentStatus.NO_SHOW)

    def is_admin(self, user_id: str) -> bool:
        return user_id in self.admin_user_ids

    # ========== Queries ==========

    async def appointments_for_user(
        self, user_id: str, status: Optional[AppointmentStatus] = None
    ) -> List[Appointment]:
        appointments = await self.store.list_by_user(user_id)
        if status is None:
            return appointments
        return [a for a in appointments if a.status == status]

    async def active_appointments_for_user(self, user_id: str) -> List[Appointment]:
        """Appointments that are not cancelled."""
        appointments = await self.store.list_by_user(user_id)
        return [a for a in appointments if a.is_active]

    # ========== Index Maintenance ==========

    async def rebuild(self) -> int:
        """
        Load every resource's appointments into the availability index.

        Returns:
            Number of appointments replayed
        """
        resources = await self.directory.list_resources(active_only=False)
        appointments: List[Appointment] = []
        for resource in resources:
            appointments.extend(await self.store.list_by_resource(resource.id))

        self.index.rebuild_from(
            appointments, capacities={r.id: r.capacity for r in resources}
        )
        return len(appointments)

    async def reconcile(self, resource_id: str) -> List[datetime]:
        """
        Align one resource's in-memory occupancy with the store.

        Returns:
            Slot starts whose counts were corrected
        """
        resource = await self.directory.get_resource(resource_id)
        since = self.index.checkpoint()
        appointments = await self.store.list_by_resource(resource_id)
        changed = self.index.reconcile(
            resource_id,
            appointments,
            capacity=resource.capacity if resource is not None else None,
            since=since,
        )
        if changed:
            logger.warning(
                f"Reconciliation corrected {len(changed)} slot(s) for {resource_id}"
            )
        return changed

    def sweep_expired(self) -> int:
        return self.index.sweep_expired()

    # ========== Helper Methods ==========

    async def _get_open_resource(self, resource_id: str) -> Resource:
        resource = await self.directory.get_resource(resource_id)
        if resource is None:
            raise ResourceClosedError(f"Resource {resource_id} not found")
        if not resource.active:
            raise ResourceClosedError(f"Resource {resource_id} is not accepting bookings")
        return resource

    async def _get_offered_service(self, resource: Resource, name: str) -> ServiceType:
        if not validate_service_name(name) or not resource.offers(name):
            raise InvalidSlotError(f"{resource.name} does not offer '{name}'")

        service = await self.directory.get_service_type(resource.id, name)
        if service is None:
            raise InvalidSlotError(f"{resource.name} does not offer '{name}'")
        return service

    def _validate_slot(
        self, resource: Resource, service: ServiceType, requested_start: datetime
    ) -> int:
        """Check grid alignment, hours and lead; returns the slot span."""
        if not is_aware(requested_start):
            raise InvalidSlotError("Requested start must include a timezone")

        if not self.calendar.is_aligned(resource, requested_start):
            raise InvalidSlotError(
                f"{requested_start.isoformat()} is not on the "
                f"{resource.slot_minutes}-minute grid of {resource.name}"
            )

        slots_span = self.calendar.slots_needed(service, resource)
        if not self.calendar.fits_in_hours(resource, requested_start, slots_span):
            raise InvalidSlotError(
                f"{service.name} at {requested_start.isoformat()} is outside "
                f"the operating hours of {resource.name}"
            )

        if requested_start <= self.clock.now():
            raise InvalidSlotError(f"{requested_start.isoformat()} is in the past")

        return slots_span

    async def _commit_reservation(
        self, handle: ReservationHandle, saved: Appointment, resource: Resource
    ) -> None:
        """
        Confirm the hold behind a stored appointment.

        If the hold lapsed during a slow write it is taken again under the
        same ID. When the slot has been taken in the meantime the stored
        appointment is cancelled and the booking fails as full.
        """
        try:
            self.index.confirm(handle)
            return
        except ReservationExpiredError:
            self._log_state(
                BookingState.EXPIRED, saved.resource_id, saved.user_id, saved.start_time
            )

        try:
            retaken = self.index.try_reserve(
                resource.id,
                saved.start_time,
                saved.slots_span,
                resource.capacity,
                resource.slot_minutes,
                reservation_id=handle.id,
            )
        except CapacityExceededError:
            try:
                await self.store.update_status(saved.id, AppointmentStatus.CANCELLED)
            except StoreError as e:
                logger.error(
                    f"Appointment {saved.id} lost its slot and could not be "
                    f"cancelled: {e}"
                )
                raise PersistenceError(
                    f"Appointment {saved.id} lost its slot and could not be rolled back"
                ) from e
            raise

        self.index.confirm(retaken)

    async def _get_appointment(self, appointment_id: str) -> Appointment:
        appointment = await self.store.find_by_id(appointment_id)
        if appointment is None:
            raise NotFoundError(f"Appointment {appointment_id} not found")
        return appointment

    async def _transition(
        self, appointment_id: str, new_status: AppointmentStatus
    ) -> Appointment:
        appointment = await self._get_appointment(appointment_id)

        if appointment.status != AppointmentStatus.CONFIRMED or not appointment.can_transition_to(
            new_status
        ):
            raise InvalidTransitionError(
                f"Appointment {appointment_id} cannot go from "
                f"{AppointmentStatus(appointment.status).value} to {new_status.value}"
            )

        try:
            updated = await self.store.update_status(appointment_id, new_status)
        except StoreError as e:
            raise PersistenceError(
                f"Could not mark appointment {appointment_id} {new_status.value}: {e}"
            ) from e

        logger.info(f"Appointment {appointment_id} marked {new_status.value}")
        return self._with_status(appointment, updated, new_status, self.clock.now())

    @staticmethod
    def _with_status(
        original: Appointment,
        updated: Optional[Appointment],
        status: AppointmentStatus,
        at: datetime,
    ) -> Appointment:
        if updated is not None and updated.status == status:
            return updated
        return original.model_copy(update={"status": status, "updated_at": at})

    @staticmethod
    def _short(reservation_id: str) -> str:
        return reservation_id[:RESERVATION_ID_DISPLAY_LENGTH]

    @staticmethod
    def _log_state(
        state: BookingState,
        resource_id: str,
        user_id: str,
        start: datetime,
        detail: Optional[str] = None,
    ) -> None:
        when = start.isoformat() if isinstance(start, datetime) else start
        message = f"Booking {state.value}: resource={resource_id} user={user_id} start={when}"
        if detail:
            message += f" ({detail})"
        logger.info(message)
