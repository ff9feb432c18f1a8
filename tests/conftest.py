"""
Pytest configuration and shared fixtures.

In-memory stand-ins for the Supabase store and directory let the engine be
exercised end to end without a network.
"""

import itertools
from datetime import datetime, time, timedelta
from typing import AsyncIterator, Dict, List, Optional
from unittest.mock import MagicMock, patch
from zoneinfo import ZoneInfo

import pytest

from models.appointment import Appointment, AppointmentStatus
from models.resource import OperatingHours, Resource, ServiceType
from scheduling.availability import AvailabilityIndex
from scheduling.calendar import SlotCalendar
from scheduling.engine import SchedulingEngine
from utils.datetime_utils import get_zone
from utils.exceptions import StoreError

SAO_PAULO = ZoneInfo("America/Sao_Paulo")


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime, default_timezone: str = "UTC"):
        self.current = now
        self.default_timezone = default_timezone

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)

    def timezone_of(self, resource: Resource):
        return get_zone(resource.timezone, default=self.default_timezone)


class InMemoryAppointmentStore:
    """Dict-backed appointment store with switchable failures."""

    def __init__(self):
        self.appointments: Dict[str, Appointment] = {}
        self.fail_saves = False
        self.fail_updates = False
        self.save_calls = 0
        self.on_save = None  # Optional hook run before a save completes
        self._ids = itertools.count(1)

    async def save(self, appointment: Appointment) -> Appointment:
        self.save_calls += 1
        if self.on_save is not None:
            self.on_save(appointment)
        if self.fail_saves:
            raise StoreError("simulated write failure")
        saved = appointment.model_copy(update={"id": f"appt-{next(self._ids)}"})
        self.appointments[saved.id] = saved
        return saved

    async def update_status(
        self, appointment_id: str, status: AppointmentStatus
    ) -> Appointment:
        if self.fail_updates:
            raise StoreError("simulated status write failure")
        if appointment_id not in self.appointments:
            raise StoreError(f"appointment {appointment_id} not found")
        updated = self.appointments[appointment_id].model_copy(update={"status": status})
        self.appointments[appointment_id] = updated
        return updated

    async def find_by_id(self, appointment_id: str) -> Optional[Appointment]:
        return self.appointments.get(appointment_id)

    async def list_by_resource(self, resource_id: str) -> List[Appointment]:
        return sorted(
            (a for a in self.appointments.values() if a.resource_id == resource_id),
            key=lambda a: a.start_time,
        )

    async def list_by_user(self, user_id: str) -> List[Appointment]:
        return sorted(
            (a for a in self.appointments.values() if a.user_id == user_id),
            key=lambda a: a.start_time,
            reverse=True,
        )

    async def stream_by_resource(self, resource_id: str) -> AsyncIterator[List[Appointment]]:
        yield await self.list_by_resource(resource_id)

    async def stream_by_user(self, user_id: str) -> AsyncIterator[List[Appointment]]:
        yield await self.list_by_user(user_id)


class InMemoryDirectory:
    """Dict-backed resource directory."""

    def __init__(self, *resources: Resource):
        self.resources = {r.id: r for r in resources}

    async def get_resource(self, resource_id: str) -> Optional[Resource]:
        return self.resources.get(resource_id)

    async def get_service_type(self, resource_id: str, name: str) -> Optional[ServiceType]:
        resource = self.resources.get(resource_id)
        return resource.find_service(name) if resource else None

    async def list_resources(self, active_only: bool = True) -> List[Resource]:
        return [r for r in self.resources.values() if r.active or not active_only]

    async def search_by_name(self, term: str) -> List[Resource]:
        term = term.strip().casefold()
        return [r for r in await self.list_resources() if term in r.name.casefold()]

    async def filter_by_service(self, service_name: str) -> List[Resource]:
        return [r for r in await self.list_resources() if r.offers(service_name)]


def local(hour: int, minute: int = 0, day: int = 2) -> datetime:
    """Wall-clock time in Sao Paulo in November 2026 (the 2nd is a Monday)."""
    return datetime(2026, 11, day, hour, minute, tzinfo=SAO_PAULO)


def make_resource(**overrides) -> Resource:
    """Lux Barber: 30-minute grid, capacity 1, open 10:00-11:00 Monday to Saturday."""
    data = dict(
        id="lux-barber",
        name="Lux Barber",
        services=[
            ServiceType(name="Haircut", duration_minutes=30, price=45.0),
            ServiceType(name="Beard Trim", duration_minutes=15, price=25.0),
            ServiceType(name="Haircut & Beard", duration_minutes=60, price=65.0),
        ],
        weekly_hours={
            weekday: OperatingHours(open_time=time(10, 0), close_time=time(11, 0))
            for weekday in range(6)
        },
        slot_minutes=30,
        capacity=1,
        timezone="America/Sao_Paulo",
    )
    data.update(overrides)
    return Resource(**data)


@pytest.fixture
def clock():
    """Fixed at noon UTC the day before the booking day."""
    return FixedClock(datetime(2026, 11, 1, 12, 0, tzinfo=ZoneInfo("UTC")))


@pytest.fixture
def resource():
    return make_resource()


@pytest.fixture
def store():
    return InMemoryAppointmentStore()


@pytest.fixture
def directory(resource):
    return InMemoryDirectory(resource)


@pytest.fixture
def calendar(clock):
    return SlotCalendar(clock)


@pytest.fixture
def index(clock):
    return AvailabilityIndex(clock, reservation_ttl=timedelta(seconds=30))


@pytest.fixture
def engine(calendar, index, store, directory, clock):
    return SchedulingEngine(
        calendar=calendar,
        index=index,
        store=store,
        directory=directory,
        clock=clock,
        admin_user_ids={"admin"},
    )


@pytest.fixture
def mock_settings():
    """Mock settings for scheduler jobs."""
    with patch("scheduler.jobs.settings") as mock_settings:
        mock_settings.supabase_url = "https://test.supabase.co"
        mock_settings.supabase_key = "test_key"
        mock_settings.sweep_interval_seconds = 15
        mock_settings.reconciliation_interval_minutes = 10
        mock_settings.environment = "test"
        yield mock_settings


@pytest.fixture
def mock_supabase_client():
    """Create a mock Supabase client."""
    mock_client = MagicMock()
    mock_table = MagicMock()
    mock_client.table.return_value = mock_table
    return mock_client, mock_table


@pytest.fixture
def at():
    """Build Sao Paulo wall-clock datetimes: at(10, 30) or at(10, day=3)."""
    return local


@pytest.fixture
def resource_factory():
    return make_resource
