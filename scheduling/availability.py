"""
In-memory availability index.

Tracks how many appointments hold each (resource, slot) pair and hands out
reservation handles. It is the only component allowed to answer "can this
span be booked" with a guarantee against concurrent bookings.

Locking is striped per (resource id, UTC date) over a fixed pool of locks.
An operation takes every lock its span touches in pool order, and never
performs I/O while holding them. The handle registry has its own small
lock, always taken after stripe locks and never held while acquiring one.

State here is process-local and rebuilt from the appointment store on
startup; the store remains the source of truth.
"""

import itertools
import logging
import threading
import uuid
from collections import OrderedDict, defaultdict
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from models.appointment import Appointment, AppointmentStatus
from models.reservation import Occupancy, ReservationHandle, SlotReservation
from scheduling.clock import Clock, SystemClock
from utils.constants import (
    DEFAULT_CAPACITY,
    DEFAULT_RESERVATION_TTL_SECONDS,
    RELEASE_HISTORY_LIMIT,
    STRIPE_LOCK_COUNT,
)
from utils.datetime_utils import is_aware
from utils.exceptions import CapacityExceededError, ReservationExpiredError

logger = logging.getLogger(__name__)

StripeKey = Tuple[str, date]
SlotKey = Tuple[str, datetime]


def _to_utc(value: datetime) -> datetime:
    return value.astimezone(timezone.utc)


class AvailabilityIndex:
    """Thread-safe slot occupancy bookkeeping with expiring reservations."""

    def __init__(
        self,
        clock: Optional[Clock] = None,
        reservation_ttl: timedelta = timedelta(seconds=DEFAULT_RESERVATION_TTL_SECONDS),
    ):
        if reservation_ttl <= timedelta(0):
            raise ValueError("reservation_ttl must be positive")

        self.clock = clock or SystemClock()
        self.reservation_ttl = reservation_ttl

        self._stripe_locks = [threading.Lock() for _ in range(STRIPE_LOCK_COUNT)]

        # Guarded by stripe locks
        self._slots: Dict[SlotKey, SlotReservation] = {}

        # Guarded by _handles_lock
        self._handles_lock = threading.Lock()
        self._handles: Dict[str, ReservationHandle] = {}
        self._pending_by_stripe: Dict[StripeKey, Set[str]] = defaultdict(set)
        self._capacities: Dict[str, int] = {}
        self._sequence = itertools.count(1)
        self._last_sequence = 0
        # handle id -> (resource id, sequence number of the release)
        self._released: "OrderedDict[str, Tuple[str, int]]" = OrderedDict()

    # ========== Public API ==========

    def try_reserve(
        self,
        resource_id: str,
        slot_start: datetime,
        slots_span: int,
        capacity: int,
        slot_minutes: int,
        reservation_id: Optional[str] = None,
    ) -> ReservationHandle:
        """
        Atomically hold every slot in [slot_start, slot_start + slots_span).

        Either every slot in the span has room and all of them are
        incremented, or nothing changes and CapacityExceededError is raised.
        The returned handle expires after the reservation TTL unless
        confirmed.

        Args:
            resource_id: Resource being booked
            slot_start: Aware start of the first slot
            slots_span: Number of consecutive slots
            capacity: Current per-slot capacity of the resource
            slot_minutes: Slot granularity of the resource
            reservation_id: Optional ID for the handle (re-reserving a
                persisted reservation keeps its ID)

        Raises:
            CapacityExceededError: If any slot in the span is full
            ValueError: If arguments are malformed
        """
        if slots_span < 1:
            raise ValueError("slots_span must be at least 1")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if slot_minutes < 1:
            raise ValueError("slot_minutes must be at least 1")
        if not is_aware(slot_start):
            raise ValueError("slot_start must be timezone-aware")

        handle = ReservationHandle(
            id=reservation_id or uuid.uuid4().hex,
            resource_id=resource_id,
            slot_start=_to_utc(slot_start),
            slots_span=slots_span,
            slot_minutes=slot_minutes,
        )
        keys = self._stripes_for(handle)
        now = self.clock.now()

        with self._locked(keys):
            self._purge_expired_locked(keys, now)

            # Check the whole span before touching anything
            for start in handle.slot_starts:
                slot = self._slots.get((resource_id, start))
                if slot is not None and slot.count >= capacity:
                    logger.debug(
                        f"Reservation rejected for {resource_id} at {start.isoformat()}: "
                        f"{slot.count}/{capacity} held"
                    )
                    raise CapacityExceededError(resource_id, start)

            for start in handle.slot_starts:
                slot = self._slots.get((resource_id, start))
                if slot is None:
                    slot = SlotReservation(
                        resource_id=resource_id, slot_start=start, capacity=capacity
                    )
                    self._slots[(resource_id, start)] = slot
                slot.capacity = capacity
                slot.count += 1

            handle.expires_at = now + self.reservation_ttl
            with self._handles_lock:
                self._capacities[resource_id] = capacity
                self._register_locked(handle)

        logger.debug(
            f"Reserved {slots_span} slot(s) for {resource_id} from "
            f"{handle.slot_start.isoformat()} (handle {handle.id})"
        )
        return handle

    def confirm(self, handle: ReservationHandle) -> ReservationHandle:
        """
        Make a speculative reservation permanent.

        Raises:
            ReservationExpiredError: If the handle expired or was released
        """
        keys = self._stripes_for(handle)
        now = self.clock.now()

        with self._locked(keys):
            current = self._lookup(handle.id)
            if current is None or current.released:
                raise ReservationExpiredError(f"Reservation {handle.id} is no longer held")
            if current.is_expired(now):
                self._release_locked(current)
                raise ReservationExpiredError(f"Reservation {handle.id} expired")
            if not current.confirmed:
                current.confirmed = True
                current.expires_at = None
                with self._handles_lock:
                    current.confirmed_sequence = self._next_sequence_locked()
                    self._unregister_pending_locked(current)

        return current

    def release(self, handle: ReservationHandle) -> bool:
        """
        Release the slots held by a handle.

        Idempotent: releasing an unknown or already released handle is a
        no-op.

        Returns:
            True if slots were actually freed
        """
        keys = self._stripes_for(handle)
        with self._locked(keys):
            current = self._lookup(handle.id)
            if current is None or current.released:
                return False
            self._release_locked(current)

        logger.debug(f"Released reservation {handle.id} for {handle.resource_id}")
        return True

    def release_by_id(self, reservation_id: str) -> bool:
        """Release a reservation by its ID; unknown IDs are a no-op."""
        handle = self._lookup(reservation_id)
        if handle is None:
            return False
        return self.release(handle)

    def get_handle(self, reservation_id: str) -> Optional[ReservationHandle]:
        return self._lookup(reservation_id)

    def checkpoint(self) -> int:
        """
        Mark the current point in the index's history.

        Take it before reading a store snapshot and pass it to reconcile():
        confirmations and releases that happen after the mark are not undone
        by that snapshot.
        """
        with self._handles_lock:
            return self._last_sequence

    def occupancy_of(self, resource_id: str, slot_start: datetime) -> Occupancy:
        """Occupancy snapshot for one slot; may be stale by the time it is read."""
        return self.occupancies(resource_id, [slot_start])[0]

    def occupancies(self, resource_id: str, slot_starts: Iterable[datetime]) -> List[Occupancy]:
        """Occupancy snapshots for several slots, taken under one set of locks."""
        starts = [_to_utc(start) for start in slot_starts]
        if not starts:
            return []

        keys = sorted({(resource_id, start.date()) for start in starts})
        now = self.clock.now()

        with self._locked(keys):
            self._purge_expired_locked(keys, now)
            default_capacity = self._capacities.get(resource_id)
            result = []
            for start in starts:
                slot = self._slots.get((resource_id, start))
                if slot is None:
                    result.append(Occupancy(count=0, capacity=default_capacity))
                else:
                    result.append(Occupancy(count=slot.count, capacity=slot.capacity))
            return result

    def sweep_expired(self) -> int:
        """
        Release every speculative reservation past its expiry, and drop
        holds whose slots have already ended.

        Returns:
            Number of expired reservations released
        """
        now = self.clock.now()
        with self._handles_lock:
            expired = [h for h in self._handles.values() if h.is_expired(now)]
            finished = [
                h
                for h in self._handles.values()
                if h.confirmed and h.end_time <= now
            ]

        released = 0
        for handle in expired:
            with self._locked(self._stripes_for(handle)):
                current = self._lookup(handle.id)
                if current is not None and current.is_expired(now):
                    self._release_locked(current)
                    released += 1

        pruned = 0
        for handle in finished:
            with self._locked(self._stripes_for(handle)):
                current = self._lookup(handle.id)
                if current is handle and not current.released:
                    self._release_locked(current, record=False)
                    pruned += 1

        if released:
            logger.info(f"Expired {released} unconfirmed reservation(s)")
        if pruned:
            logger.debug(f"Dropped {pruned} reservation(s) for slots already past")
        return released

    def rebuild_from(
        self,
        appointments: Iterable[Appointment],
        capacities: Optional[Mapping[str, int]] = None,
    ) -> None:
        """
        Reset the index and replay durable appointments.

        Confirmed and completed appointments that have not ended occupy
        their slots. Pending ones created within the reservation TTL hold
        their slots until that expiry. Cancelled and no-show appointments
        are ignored. Meant to be called before the index starts serving
        requests.
        """
        by_resource: Dict[str, List[Appointment]] = defaultdict(list)
        for appointment in appointments:
            by_resource[appointment.resource_id].append(appointment)

        self._slots.clear()
        with self._handles_lock:
            self._handles.clear()
            self._pending_by_stripe.clear()
            self._released.clear()
            self._capacities.clear()
            if capacities:
                self._capacities.update(capacities)

        for resource_id, resource_appointments in by_resource.items():
            self._load_resource(resource_id, resource_appointments, since=None)

        logger.info(
            f"Availability index rebuilt: {len(by_resource)} resource(s), "
            f"{len(self._handles)} reservation(s)"
        )

    def reconcile(
        self,
        resource_id: str,
        appointments: Iterable[Appointment],
        capacity: Optional[int] = None,
        since: Optional[int] = None,
    ) -> List[datetime]:
        """
        Replace one resource's confirmed holds with the durable records.

        Unexpired speculative holds that are not yet in the store survive.
        When since is a checkpoint() taken before the records were read,
        holds confirmed after it are kept and holds released after it are
        not restored, since the records cannot reflect either yet.

        Returns:
            Sorted slot starts whose counts changed
        """
        if capacity is not None:
            with self._handles_lock:
                self._capacities[resource_id] = capacity
        changed = self._load_resource(
            resource_id,
            [a for a in appointments if a.resource_id == resource_id],
            since=since if since is not None else self.checkpoint(),
        )

        if since is not None:
            with self._handles_lock:
                stale = [
                    handle_id
                    for handle_id, (owner, sequence) in self._released.items()
                    if owner == resource_id and sequence <= since
                ]
                for handle_id in stale:
                    del self._released[handle_id]
        return changed

    def known_resources(self) -> Set[str]:
        with self._handles_lock:
            known = set(self._capacities)
            known.update(h.resource_id for h in self._handles.values())
        return known

    # ========== Helper Methods ==========

    @contextmanager
    def _locked(self, keys: Iterable[StripeKey]) -> Iterator[None]:
        indexes = sorted({hash(key) % STRIPE_LOCK_COUNT for key in keys})
        locks = [self._stripe_locks[i] for i in indexes]
        for lock in locks:
            lock.acquire()
        try:
            yield
        finally:
            for lock in reversed(locks):
                lock.release()

    @staticmethod
    def _stripes_for(handle: ReservationHandle) -> List[StripeKey]:
        return sorted({(handle.resource_id, start.date()) for start in handle.slot_starts})

    def _lookup(self, reservation_id: str) -> Optional[ReservationHandle]:
        with self._handles_lock:
            return self._handles.get(reservation_id)

    def _next_sequence_locked(self) -> int:
        """Caller holds _handles_lock."""
        self._last_sequence = next(self._sequence)
        return self._last_sequence

    def _register_locked(self, handle: ReservationHandle) -> None:
        """Caller holds _handles_lock."""
        self._handles[handle.id] = handle
        self._released.pop(handle.id, None)
        if not handle.confirmed:
            for key in self._stripes_for(handle):
                self._pending_by_stripe[key].add(handle.id)

    def _unregister_pending_locked(self, handle: ReservationHandle) -> None:
        """Caller holds _handles_lock."""
        for key in self._stripes_for(handle):
            pending = self._pending_by_stripe.get(key)
            if pending is not None:
                pending.discard(handle.id)
                if not pending:
                    del self._pending_by_stripe[key]

    def _release_locked(self, handle: ReservationHandle, record: bool = True) -> None:
        """Caller holds every stripe of the handle, but not _handles_lock."""
        for start in handle.slot_starts:
            key = (handle.resource_id, start)
            slot = self._slots.get(key)
            if slot is None:
                continue
            slot.count = max(0, slot.count - 1)
            if slot.count == 0:
                del self._slots[key]

        handle.released = True
        with self._handles_lock:
            self._handles.pop(handle.id, None)
            self._unregister_pending_locked(handle)
            if record:
                self._released[handle.id] = (
                    handle.resource_id,
                    self._next_sequence_locked(),
                )
                self._released.move_to_end(handle.id)
                while len(self._released) > RELEASE_HISTORY_LIMIT:
                    self._released.popitem(last=False)

    def _purge_expired_locked(self, keys: List[StripeKey], now: datetime) -> None:
        """
        Lazily release expired holds touching the held stripes.

        Holds that also span stripes we do not hold are left for the sweep.
        """
        held = set(keys)
        with self._handles_lock:
            candidate_ids = set()
            for key in held:
                candidate_ids.update(self._pending_by_stripe.get(key, ()))
            expired = [
                self._handles[handle_id]
                for handle_id in candidate_ids
                if handle_id in self._handles and self._handles[handle_id].is_expired(now)
            ]

        for handle in expired:
            if set(self._stripes_for(handle)) <= held:
                self._release_locked(handle)
                logger.debug(f"Reservation {handle.id} expired before confirmation")

    def _handles_from(
        self, resource_id: str, appointments: Iterable[Appointment], now: datetime
    ) -> List[ReservationHandle]:
        handles = []
        for appointment in appointments:
            if appointment.end_time <= now:
                continue

            status = AppointmentStatus(appointment.status)
            if status in (AppointmentStatus.CONFIRMED, AppointmentStatus.COMPLETED):
                expires_at = None
                confirmed = True
            elif status == AppointmentStatus.PENDING and appointment.created_at is not None:
                expires_at = appointment.created_at + self.reservation_ttl
                if expires_at <= now:
                    continue
                confirmed = False
            else:
                continue

            handles.append(
                ReservationHandle(
                    id=appointment.hold_id,
                    resource_id=resource_id,
                    slot_start=_to_utc(appointment.start_time),
                    slots_span=appointment.slots_span,
                    slot_minutes=appointment.slot_minutes,
                    expires_at=expires_at,
                    confirmed=confirmed,
                )
            )
        return handles

    def _load_resource(
        self,
        resource_id: str,
        appointments: List[Appointment],
        since: Optional[int],
    ) -> List[datetime]:
        """
        Make the durable records the resource's holds.

        With since=None (rebuild) only the records count. Otherwise live
        pending holds survive, holds confirmed after since survive, and
        records whose hold was released after since are skipped.
        """
        now = self.clock.now()
        durable = self._handles_from(resource_id, appointments, now)

        with self._handles_lock:
            if since is not None:
                durable = [
                    h
                    for h in durable
                    if self._released.get(h.id, (resource_id, 0))[1] <= since
                ]
            existing = [h for h in self._handles.values() if h.resource_id == resource_id]
            capacity = self._capacities.get(resource_id, DEFAULT_CAPACITY)
        durable_ids = {h.id for h in durable}

        keys: Set[StripeKey] = set()
        for handle in existing + durable:
            keys.update(self._stripes_for(handle))
        keys.update(
            (slot_resource, start.date())
            for slot_resource, start in list(self._slots)
            if slot_resource == resource_id
        )

        with self._locked(keys):
            before = {
                start: slot.count
                for (slot_resource, start), slot in list(self._slots.items())
                if slot_resource == resource_id and (resource_id, start.date()) in keys
            }

            kept = []
            if since is not None:
                for h in existing:
                    if h.released or h.id in durable_ids:
                        continue
                    if not set(self._stripes_for(h)) <= keys:
                        continue
                    live_pending = not h.confirmed and not h.is_expired(now)
                    confirmed_later = (
                        h.confirmed
                        and h.confirmed_sequence is not None
                        and h.confirmed_sequence > since
                    )
                    if live_pending or confirmed_later:
                        kept.append(h)

            with self._handles_lock:
                for handle in existing:
                    if set(self._stripes_for(handle)) <= keys:
                        self._handles.pop(handle.id, None)
                        self._unregister_pending_locked(handle)
                for handle in durable + kept:
                    self._register_locked(handle)

            counts: Dict[datetime, int] = defaultdict(int)
            for handle in durable + kept:
                for start in handle.slot_starts:
                    counts[start] += 1

            for start in before:
                self._slots.pop((resource_id, start), None)
            for start, count in counts.items():
                self._slots[(resource_id, start)] = SlotReservation(
                    resource_id=resource_id,
                    slot_start=start,
                    count=count,
                    capacity=capacity,
                )

        changed = sorted(
            start
            for start in set(before) | set(counts)
            if before.get(start, 0) != counts.get(start, 0)
        )
        return changed
