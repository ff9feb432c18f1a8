"""
Unit tests for the slot calendar.
"""

from datetime import date, datetime, time, timezone

import pytest

from models.resource import OperatingHours, ServiceType
from utils.exceptions import InvalidScheduleError


MONDAY = date(2026, 11, 2)
SUNDAY = date(2026, 11, 8)


def test_slots_for_open_day(calendar, resource, at):
    """Test slots cover the opening window on the grid."""
    slots = list(calendar.slots_for(resource, MONDAY))

    assert slots == [at(10, 0), at(10, 30)]


def test_slots_for_is_restartable(calendar, resource):
    """Test the sequence can be iterated more than once."""
    sequence = calendar.slots_for(resource, MONDAY)

    assert list(sequence) == list(sequence)
    assert len(sequence) == 2
    assert sequence


def test_slots_for_closed_day(calendar, resource):
    """Test a weekday without hours yields nothing."""
    sequence = calendar.slots_for(resource, SUNDAY)

    assert list(sequence) == []
    assert not sequence


def test_slots_for_drops_partial_last_slot(calendar, resource_factory, at):
    """Test a slot that would run past closing is not offered."""
    resource = resource_factory(
        weekly_hours={0: OperatingHours(open_time=time(9, 0), close_time=time(10, 45))}
    )

    slots = list(calendar.slots_for(resource, MONDAY))

    assert slots == [at(9, 0), at(9, 30), at(10, 0)]


def test_slots_for_malformed_hours(calendar, resource_factory):
    """Test open >= close raises InvalidScheduleError."""
    resource = resource_factory(
        weekly_hours={0: OperatingHours(open_time=time(18, 0), close_time=time(9, 0))}
    )

    with pytest.raises(InvalidScheduleError):
        calendar.slots_for(resource, MONDAY)


def test_slots_are_in_resource_timezone(calendar, resource):
    """Test slot starts are aware and expressed in the resource's zone."""
    first = next(iter(calendar.slots_for(resource, MONDAY)))

    assert first.astimezone(timezone.utc) == datetime(2026, 11, 2, 13, 0, tzinfo=timezone.utc)


def test_is_aligned(calendar, resource, at):
    """Test alignment against the grid anchored at opening time."""
    assert calendar.is_aligned(resource, at(10, 0))
    assert calendar.is_aligned(resource, at(10, 30))
    assert not calendar.is_aligned(resource, at(10, 15))


def test_is_aligned_other_timezone(calendar, resource):
    """Test the same instant expressed in UTC is still aligned."""
    assert calendar.is_aligned(resource, datetime(2026, 11, 2, 13, 30, tzinfo=timezone.utc))


def test_is_aligned_rejects_seconds_and_naive(calendar, resource, at):
    """Test seconds and naive datetimes are never aligned."""
    assert not calendar.is_aligned(resource, at(10, 0).replace(second=5))
    assert not calendar.is_aligned(resource, datetime(2026, 11, 2, 10, 0))


def test_is_aligned_anchor_follows_opening_time(calendar, resource_factory, at):
    """Test a 10:15 opening shifts the grid."""
    resource = resource_factory(
        weekly_hours={0: OperatingHours(open_time=time(10, 15), close_time=time(12, 0))}
    )

    assert calendar.is_aligned(resource, at(10, 45))
    assert not calendar.is_aligned(resource, at(10, 30))


def test_slots_needed(calendar, resource):
    """Test ceiling division with a minimum of one slot."""
    assert calendar.slots_needed(ServiceType(name="Haircut", duration_minutes=30), resource) == 1
    assert calendar.slots_needed(ServiceType(name="Trim", duration_minutes=15), resource) == 1
    assert calendar.slots_needed(ServiceType(name="Long", duration_minutes=31), resource) == 2
    assert calendar.slots_needed(ServiceType(name="Full", duration_minutes=60), resource) == 2


def test_fits_in_hours_closing_boundary(calendar, resource, at):
    """Test ending exactly at closing fits; one slot later does not."""
    assert calendar.fits_in_hours(resource, at(10, 30), 1)
    assert calendar.fits_in_hours(resource, at(10, 0), 2)
    assert not calendar.fits_in_hours(resource, at(10, 30), 2)
    assert not calendar.fits_in_hours(resource, at(11, 0), 1)


def test_fits_in_hours_before_opening_or_closed(calendar, resource, at):
    """Test starts before opening and on closed days do not fit."""
    assert not calendar.fits_in_hours(resource, at(9, 30), 1)
    assert not calendar.fits_in_hours(resource, at(10, 0, day=8), 1)


def test_invalid_timezone(calendar, resource_factory, at):
    """Test an unknown timezone is reported as a schedule error."""
    resource = resource_factory(timezone="Mars/Olympus_Mons")

    with pytest.raises(InvalidScheduleError):
        calendar.is_aligned(resource, at(10, 0))
