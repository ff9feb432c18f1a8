"""
Slot calendar: turns a resource's weekly operating hours and slot
granularity into bookable slot starts.

All grid arithmetic happens in the resource's local wall-clock time; the
resulting datetimes are timezone-aware in that zone.
"""

import math
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Iterator, Optional

from models.resource import OperatingHours, Resource, ServiceType
from scheduling.clock import Clock, SystemClock
from utils.datetime_utils import is_aware, local_datetime
from utils.exceptions import InvalidScheduleError


def _minute_of_day(value: time) -> int:
    return value.hour * 60 + value.minute


class SlotSequence:
    """Lazy, restartable sequence of slot starts for one resource and day."""

    def __init__(self, first: Optional[datetime], step: timedelta, count: int):
        self._first = first
        self._step = step
        self._count = count if first is not None else 0

    def __iter__(self) -> Iterator[datetime]:
        for i in range(self._count):
            yield self._first + self._step * i

    def __len__(self) -> int:
        return self._count

    def __bool__(self) -> bool:
        return self._count > 0

    def __repr__(self) -> str:
        return f"SlotSequence(first={self._first!r}, step={self._step!r}, count={self._count})"


class SlotCalendar:
    """Computes the slot grid of a resource from its operating hours."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()

    def slots_for(self, resource: Resource, day: date) -> SlotSequence:
        """
        Slot starts for a resource on a given local date.

        Only slots that end at or before closing time are produced. The
        sequence is empty when the resource is closed that weekday.

        Raises:
            InvalidScheduleError: If the day's hours are malformed
        """
        hours = self._checked_hours(resource, day.weekday())
        step = timedelta(minutes=resource.slot_minutes)
        if hours is None:
            return SlotSequence(None, step, 0)

        zone = self._zone(resource)
        window = _minute_of_day(hours.close_time) - _minute_of_day(hours.open_time)
        count = window // resource.slot_minutes
        return SlotSequence(local_datetime(day, hours.open_time, zone), step, count)

    def is_aligned(self, resource: Resource, instant: datetime) -> bool:
        """
        True iff instant falls exactly on the resource's slot grid.

        The grid is anchored at the day's opening time, or midnight when the
        resource is closed that day. Naive datetimes are never aligned.
        """
        if not is_aware(instant):
            return False

        local = instant.astimezone(self._zone(resource))
        if local.second or local.microsecond:
            return False

        hours = resource.hours_for(local.weekday())
        anchor = _minute_of_day(hours.open_time) if hours is not None else 0
        offset = _minute_of_day(local.time()) - anchor
        return offset % resource.slot_minutes == 0

    def fits_in_hours(self, resource: Resource, instant: datetime, slots_span: int) -> bool:
        """
        True iff [instant, instant + slots_span slots) lies inside that day's
        opening window. Ending exactly at closing time fits.

        Raises:
            InvalidScheduleError: If the day's hours are malformed
        """
        if not is_aware(instant):
            return False

        local = instant.astimezone(self._zone(resource))
        hours = self._checked_hours(resource, local.weekday())
        if hours is None:
            return False

        start = _minute_of_day(local.time())
        end = start + slots_span * resource.slot_minutes
        return (
            _minute_of_day(hours.open_time) <= start
            and end <= _minute_of_day(hours.close_time)
        )

    @staticmethod
    def slots_needed(service_type: ServiceType, resource: Resource) -> int:
        """Ceiling division of service duration by slot granularity; at least 1."""
        return max(1, math.ceil(service_type.duration_minutes / resource.slot_minutes))

    def _zone(self, resource: Resource) -> tzinfo:
        try:
            return self.clock.timezone_of(resource)
        except ValueError as e:
            raise InvalidScheduleError(
                f"Resource {resource.id} has an invalid timezone: {resource.timezone}"
            ) from e

    @staticmethod
    def _checked_hours(resource: Resource, weekday: int) -> Optional[OperatingHours]:
        hours = resource.hours_for(weekday)
        if hours is not None and not hours.is_well_formed:
            raise InvalidScheduleError(
                f"Resource {resource.id} has malformed hours on weekday {weekday}: "
                f"open {hours.open_time} is not before close {hours.close_time}"
            )
        return hours
