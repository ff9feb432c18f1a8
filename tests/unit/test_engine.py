"""
Unit tests for the scheduling engine.
Uses the in-memory store and directory from conftest.
"""

import asyncio
from datetime import timedelta
from unittest.mock import patch

import pytest

from models.appointment import Appointment, AppointmentStatus
from scheduling.engine import SchedulingEngine
from utils.exceptions import (
    CapacityExceededError,
    ForbiddenError,
    InvalidScheduleError,
    InvalidSlotError,
    InvalidTransitionError,
    NotCancellableError,
    NotFoundError,
    PersistenceError,
    ResourceClosedError,
)


@pytest.mark.asyncio
async def test_request_booking_persists_confirmed(engine, store, at):
    """Test a valid request is stored as confirmed with its snapshots."""
    appointment = await engine.request_booking(
        "lux-barber", "user-1", "haircut", at(10, 0), notes="  Short on the sides \x07 "
    )

    assert appointment.id in store.appointments
    assert appointment.status == AppointmentStatus.CONFIRMED
    assert appointment.service_type == "Haircut"
    assert appointment.duration_minutes == 30
    assert appointment.slot_minutes == 30
    assert appointment.price == 45.0
    assert appointment.notes == "Short on the sides"
    assert appointment.reservation_id is not None


@pytest.mark.asyncio
async def test_request_booking_confirms_reservation(engine, index, clock, at):
    """Test the hold survives past the reservation TTL once booked."""
    appointment = await engine.request_booking("lux-barber", "user-1", "Haircut", at(10, 0))
    clock.advance(minutes=5)

    handle = index.get_handle(appointment.reservation_id)
    assert handle is not None and handle.confirmed
    assert index.occupancy_of("lux-barber", at(10, 0)).count == 1


@pytest.mark.asyncio
async def test_request_booking_unknown_resource(engine, at):
    """Test a missing resource is reported as closed."""
    with pytest.raises(ResourceClosedError):
        await engine.request_booking("nowhere", "user-1", "Haircut", at(10, 0))


@pytest.mark.asyncio
async def test_request_booking_inactive_resource(engine, directory, resource, at):
    """Test an inactive resource is reported as closed."""
    directory.resources[resource.id] = resource.model_copy(update={"active": False})

    with pytest.raises(ResourceClosedError):
        await engine.request_booking("lux-barber", "user-1", "Haircut", at(10, 0))


@pytest.mark.asyncio
async def test_request_booking_service_not_offered(engine, store, at):
    """Test an unknown service is an invalid slot and stores nothing."""
    with pytest.raises(InvalidSlotError):
        await engine.request_booking("lux-barber", "user-1", "Manicure", at(10, 0))

    assert store.save_calls == 0


@pytest.mark.asyncio
async def test_request_booking_off_grid(engine, at):
    """Test a start between grid lines is rejected."""
    with pytest.raises(InvalidSlotError):
        await engine.request_booking("lux-barber", "user-1", "Haircut", at(10, 15))


@pytest.mark.asyncio
async def test_request_booking_naive_start(engine, at):
    """Test a timestamp without timezone is rejected, not guessed."""
    with pytest.raises(InvalidSlotError):
        await engine.request_booking(
            "lux-barber", "user-1", "Haircut", at(10, 0).replace(tzinfo=None)
        )


@pytest.mark.asyncio
async def test_request_booking_span_past_closing(engine, index, at):
    """Test a two-slot service starting in the last slot is rejected."""
    with pytest.raises(InvalidSlotError):
        await engine.request_booking("lux-barber", "user-1", "Haircut & Beard", at(10, 30))

    assert index.occupancy_of("lux-barber", at(10, 30)).count == 0


@pytest.mark.asyncio
async def test_request_booking_in_the_past(engine, clock, at):
    """Test slots that already started cannot be booked."""
    clock.current = at(10, 30)

    with pytest.raises(InvalidSlotError):
        await engine.request_booking("lux-barber", "user-1", "Haircut", at(10, 0))


@pytest.mark.asyncio
async def test_request_booking_closed_day(engine, at):
    """Test Sunday has no hours and cannot be booked."""
    with pytest.raises(InvalidSlotError):
        await engine.request_booking("lux-barber", "user-1", "Haircut", at(10, 0, day=8))


@pytest.mark.asyncio
async def test_request_booking_malformed_hours(engine, directory, resource, at):
    """Test broken operating hours surface as a schedule error."""
    broken = resource.model_copy(
        update={
            "weekly_hours": {
                0: resource.weekly_hours[0].model_copy(
                    update={"open_time": resource.weekly_hours[0].close_time}
                )
            }
        }
    )
    directory.resources[resource.id] = broken

    with pytest.raises(InvalidScheduleError):
        await engine.request_booking("lux-barber", "user-1", "Haircut", at(10, 0))


@pytest.mark.asyncio
async def test_two_slot_service_blocks_both_slots(engine, at):
    """Test a 60-minute service occupies the whole span."""
    await engine.request_booking("lux-barber", "user-1", "Haircut & Beard", at(10, 0))

    with pytest.raises(CapacityExceededError):
        await engine.request_booking("lux-barber", "user-2", "Beard Trim", at(10, 30))


@pytest.mark.asyncio
async def test_persistence_failure_releases_reservation(engine, store, index, at):
    """Test a failed write leaves no phantom hold."""
    store.fail_saves = True

    with pytest.raises(PersistenceError):
        await engine.request_booking("lux-barber", "user-1", "Haircut", at(10, 0))

    assert index.occupancy_of("lux-barber", at(10, 0)).count == 0
    assert store.appointments == {}


@pytest.mark.asyncio
async def test_reservation_expiring_during_save_is_retaken(engine, store, index, clock, at):
    """Test a slow write that outlives the TTL keeps the slot when it is still free."""
    store.on_save = lambda _: clock.advance(seconds=45)

    appointment = await engine.request_booking("lux-barber", "user-1", "Haircut", at(10, 0))

    handle = index.get_handle(appointment.reservation_id)
    assert handle is not None and handle.confirmed
    assert index.occupancy_of("lux-barber", at(10, 0)).count == 1


@pytest.mark.asyncio
async def test_reservation_lost_during_save_rolls_back(engine, store, index, clock, at):
    """Test a slow write whose slot was taken meanwhile is cancelled in the store."""

    def steal_slot(_):
        clock.advance(seconds=45)
        index.confirm(index.try_reserve("lux-barber", at(10, 0), 1, 1, 30))

    store.on_save = steal_slot

    with pytest.raises(CapacityExceededError):
        await engine.request_booking("lux-barber", "user-1", "Haircut", at(10, 0))

    (stored,) = store.appointments.values()
    assert stored.status == AppointmentStatus.CANCELLED
    assert index.occupancy_of("lux-barber", at(10, 0)).count == 1


@pytest.mark.asyncio
async def test_cancel_by_owner(engine, store, index, at):
    """Test the owner can cancel and the slot is freed."""
    booked = await engine.request_booking("lux-barber", "user-1", "Haircut", at(10, 0))

    cancelled = await engine.cancel(booked.id, "user-1")

    assert cancelled.status == AppointmentStatus.CANCELLED
    assert store.appointments[booked.id].status == AppointmentStatus.CANCELLED
    assert index.occupancy_of("lux-barber", at(10, 0)).count == 0


@pytest.mark.asyncio
async def test_cancel_by_admin(engine, at):
    """Test an administrator can cancel someone else's booking."""
    booked = await engine.request_booking("lux-barber", "user-1", "Haircut", at(10, 0))

    cancelled = await engine.cancel(booked.id, "admin")

    assert cancelled.status == AppointmentStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_by_other_user_forbidden(engine, index, at):
    """Test another user cannot cancel and the slot stays held."""
    booked = await engine.request_booking("lux-barber", "user-1", "Haircut", at(10, 0))

    with pytest.raises(ForbiddenError):
        await engine.cancel(booked.id, "user-2")

    assert index.occupancy_of("lux-barber", at(10, 0)).count == 1


@pytest.mark.asyncio
async def test_cancel_missing(engine):
    """Test cancelling an unknown appointment."""
    with pytest.raises(NotFoundError):
        await engine.cancel("missing", "user-1")


@pytest.mark.asyncio
async def test_cancel_twice(engine, at):
    """Test a cancelled appointment cannot be cancelled again."""
    booked = await engine.request_booking("lux-barber", "user-1", "Haircut", at(10, 0))
    await engine.cancel(booked.id, "user-1")

    with pytest.raises(NotCancellableError):
        await engine.cancel(booked.id, "user-1")


@pytest.mark.asyncio
async def test_cancel_after_start(engine, clock, at):
    """Test appointments that already started cannot be cancelled."""
    booked = await engine.request_booking("lux-barber", "user-1", "Haircut", at(10, 0))
    clock.current = at(10, 0)

    with pytest.raises(NotCancellableError):
        await engine.cancel(booked.id, "user-1")


@pytest.mark.asyncio
async def test_cancel_inside_lead_time(calendar, index, store, directory, clock, at):
    """Test the configurable lead time blocks late cancellations."""
    engine = SchedulingEngine(
        calendar, index, store, directory, clock, cancellation_lead=timedelta(hours=2)
    )
    booked = await engine.request_booking("lux-barber", "user-1", "Haircut", at(10, 0))
    clock.current = at(8, 30)

    with pytest.raises(NotCancellableError):
        await engine.cancel(booked.id, "user-1")

    clock.current = at(7, 30)
    cancelled = await engine.cancel(booked.id, "user-1")
    assert cancelled.status == AppointmentStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_store_failure_frees_slot_and_reconciles(engine, store, index, at):
    """Test a failed status write is surfaced and later repaired."""
    booked = await engine.request_booking("lux-barber", "user-1", "Haircut", at(10, 0))
    store.fail_updates = True

    with pytest.raises(PersistenceError):
        await engine.cancel(booked.id, "user-1")

    assert index.occupancy_of("lux-barber", at(10, 0)).count == 0
    assert store.appointments[booked.id].status == AppointmentStatus.CONFIRMED

    changed = await engine.reconcile("lux-barber")

    assert len(changed) == 1
    assert index.occupancy_of("lux-barber", at(10, 0)).count == 1


@pytest.mark.asyncio
async def test_reconcile_keeps_booking_confirmed_during_store_read(engine, store, index, at):
    """Test a booking committed while reconcile awaits the store keeps its slot."""
    list_by_resource = store.list_by_resource

    async def slow_list_by_resource(resource_id):
        snapshot = await list_by_resource(resource_id)
        await asyncio.sleep(0.01)
        return snapshot

    store.list_by_resource = slow_list_by_resource

    changed, booked = await asyncio.gather(
        engine.reconcile("lux-barber"),
        engine.request_booking("lux-barber", "user-1", "Haircut", at(10, 0)),
    )

    assert changed == []
    assert booked.status == AppointmentStatus.CONFIRMED
    assert index.occupancy_of("lux-barber", at(10, 0)).count == 1

    with pytest.raises(CapacityExceededError):
        await engine.request_booking("lux-barber", "user-2", "Haircut", at(10, 0))


@pytest.mark.asyncio
async def test_reconcile_does_not_restore_slot_cancelled_during_store_read(
    engine, store, index, at
):
    """Test a cancellation landing during the store read stays cancelled."""
    booked = await engine.request_booking("lux-barber", "user-1", "Haircut", at(10, 0))
    list_by_resource = store.list_by_resource

    async def slow_list_by_resource(resource_id):
        snapshot = await list_by_resource(resource_id)
        await asyncio.sleep(0.01)
        return snapshot

    store.list_by_resource = slow_list_by_resource

    await asyncio.gather(engine.reconcile("lux-barber"), engine.cancel(booked.id, "user-1"))

    assert index.occupancy_of("lux-barber", at(10, 0)).count == 0


@pytest.mark.asyncio
async def test_cancel_rebuilt_appointment_without_reservation_id(engine, store, index, at):
    """Test cancelling a stored booking that has no reservation ID frees its slot."""
    store.appointments["ext-1"] = Appointment(
        id="ext-1",
        resource_id="lux-barber",
        user_id="user-1",
        service_type="Haircut",
        start_time=at(10, 0),
        duration_minutes=30,
        slot_minutes=30,
        status=AppointmentStatus.CONFIRMED,
    )
    await engine.rebuild()
    assert index.occupancy_of("lux-barber", at(10, 0)).count == 1

    await engine.cancel("ext-1", "user-1")

    assert index.occupancy_of("lux-barber", at(10, 0)).count == 0
    rebooked = await engine.request_booking("lux-barber", "user-2", "Haircut", at(10, 0))
    assert rebooked.status == AppointmentStatus.CONFIRMED


@pytest.mark.asyncio
async def test_mark_completed_keeps_slot(engine, store, index, at):
    """Test completion does not release the slot."""
    booked = await engine.request_booking("lux-barber", "user-1", "Haircut", at(10, 0))

    completed = await engine.mark_completed(booked.id)

    assert completed.status == AppointmentStatus.COMPLETED
    assert store.appointments[booked.id].status == AppointmentStatus.COMPLETED
    assert index.occupancy_of("lux-barber", at(10, 0)).count == 1


@pytest.mark.asyncio
async def test_mark_no_show(engine, store, at):
    """Test a confirmed appointment can be marked as no-show."""
    booked = await engine.request_booking("lux-barber", "user-1", "Haircut", at(10, 0))

    no_show = await engine.mark_no_show(booked.id)

    assert no_show.status == AppointmentStatus.NO_SHOW


@pytest.mark.asyncio
async def test_mark_completed_requires_confirmed(engine, at):
    """Test terminal appointments cannot change again."""
    booked = await engine.request_booking("lux-barber", "user-1", "Haircut", at(10, 0))
    await engine.cancel(booked.id, "user-1")

    with pytest.raises(InvalidTransitionError):
        await engine.mark_completed(booked.id)
    with pytest.raises(InvalidTransitionError):
        await engine.mark_no_show(booked.id)


@pytest.mark.asyncio
async def test_mark_completed_missing(engine):
    with pytest.raises(NotFoundError):
        await engine.mark_completed("missing")


@pytest.mark.asyncio
async def test_availability_reports_remaining(engine, at):
    """Test availability lists every slot with its remaining capacity."""
    await engine.request_booking("lux-barber", "user-1", "Haircut", at(10, 30))

    slots = await engine.availability("lux-barber", at(10, 0).date())

    assert [(s.slot_start, s.remaining_capacity) for s in slots] == [
        (at(10, 0), 1),
        (at(10, 30), 0),
    ]
    assert slots[0].is_available and not slots[1].is_available


@pytest.mark.asyncio
async def test_appointments_for_user(engine, at):
    """Test user listings and the active filter."""
    first = await engine.request_booking("lux-barber", "user-1", "Haircut", at(10, 0))
    await engine.request_booking("lux-barber", "user-1", "Haircut", at(10, 30))
    await engine.request_booking("lux-barber", "user-2", "Haircut", at(10, 0, day=3))
    await engine.cancel(first.id, "user-1")

    everything = await engine.appointments_for_user("user-1")
    cancelled = await engine.appointments_for_user("user-1", AppointmentStatus.CANCELLED)
    active = await engine.active_appointments_for_user("user-1")

    assert len(everything) == 2
    assert [a.id for a in cancelled] == [first.id]
    assert len(active) == 1 and active[0].start_time == at(10, 30)


@pytest.mark.asyncio
async def test_rebuild_loads_store(engine, store, index, at):
    """Test a fresh index is repopulated from stored appointments."""
    await engine.request_booking("lux-barber", "user-1", "Haircut", at(10, 0))
    index.rebuild_from([])
    assert index.occupancy_of("lux-barber", at(10, 0)).count == 0

    replayed = await engine.rebuild()

    assert replayed == 1
    occupancy = index.occupancy_of("lux-barber", at(10, 0))
    assert occupancy.count == 1
    assert occupancy.capacity == 1


@pytest.mark.asyncio
async def test_booking_logs_state_transitions(engine, at):
    """Test requested, reserved and confirmed states are logged."""
    with patch("scheduling.engine.logger") as mock_logger:
        await engine.request_booking("lux-barber", "user-1", "Haircut", at(10, 0))

    messages = [call.args[0] for call in mock_logger.info.call_args_list]
    assert any("Booking requested" in m for m in messages)
    assert any("Booking reserved" in m for m in messages)
    assert any("Booking confirmed" in m for m in messages)
