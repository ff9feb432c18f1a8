"""Time sources for the scheduling core."""

from datetime import datetime, tzinfo
from typing import Protocol

from models.resource import Resource
from utils.datetime_utils import get_zone, utc_now


class Clock(Protocol):
    """Supplies the current instant and each resource's local timezone."""

    def now(self) -> datetime: ...

    def timezone_of(self, resource: Resource) -> tzinfo: ...


class SystemClock:
    """Wall clock; resources without a timezone fall back to the default zone."""

    def __init__(self, default_timezone: str = "UTC"):
        self.default_timezone = default_timezone
        # Validate eagerly so a bad setting fails at startup
        get_zone(default_timezone)

    def now(self) -> datetime:
        return utc_now()

    def timezone_of(self, resource: Resource) -> tzinfo:
        return get_zone(resource.timezone, default=self.default_timezone)
