"""Appointment scheduling core: slot calendar, availability index and engine."""

from .availability import AvailabilityIndex
from .calendar import SlotCalendar, SlotSequence
from .clock import Clock, SystemClock
from .engine import SchedulingEngine

__all__ = [
    "AvailabilityIndex",
    "Clock",
    "SchedulingEngine",
    "SlotCalendar",
    "SlotSequence",
    "SystemClock",
]
