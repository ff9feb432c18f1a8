"""Resource models for barbershops, staff members and their services."""

from datetime import datetime, time
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from utils.constants import DEFAULT_CAPACITY, DEFAULT_SLOT_MINUTES


class ServiceType(BaseModel):
    """Service offered by a resource."""

    name: str = Field(..., min_length=1)
    duration_minutes: int = Field(..., ge=1, description="Nominal duration in minutes")
    price: Optional[float] = Field(default=None, ge=0)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Haircut",
                "duration_minutes": 30,
                "price": 45.0,
            }
        }
    )


class OperatingHours(BaseModel):
    """Opening window for one weekday, in the resource's local time."""

    open_time: time
    close_time: time

    @property
    def is_well_formed(self) -> bool:
        return self.open_time < self.close_time


class Resource(BaseModel):
    """Bookable entity: a barbershop or a staff member within one."""

    id: str
    name: str
    services: List[ServiceType] = Field(default_factory=list)
    weekly_hours: Dict[int, OperatingHours] = Field(
        default_factory=dict,
        description="Opening hours keyed by weekday (0 = Monday); missing days are closed",
    )
    slot_minutes: int = Field(default=DEFAULT_SLOT_MINUTES, ge=1)
    capacity: int = Field(default=DEFAULT_CAPACITY, ge=1)
    timezone: Optional[str] = Field(default=None, description="IANA timezone name")
    active: bool = True
    address: Optional[str] = None
    phone: Optional[str] = None
    rating: float = Field(default=0.0, ge=0.0, le=5.0)
    created_at: Optional[datetime] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "lux-barber",
                "name": "Lux Barber",
                "services": [{"name": "Haircut", "duration_minutes": 30, "price": 45.0}],
                "weekly_hours": {"0": {"open_time": "10:00", "close_time": "18:00"}},
                "slot_minutes": 30,
                "capacity": 1,
                "timezone": "America/Sao_Paulo",
            }
        }
    )

    def hours_for(self, weekday: int) -> Optional[OperatingHours]:
        """Opening hours for a weekday, or None when closed."""
        return self.weekly_hours.get(weekday)

    def offers(self, service_name: str) -> bool:
        """Check whether the resource offers a service (case-insensitive)."""
        return self.find_service(service_name) is not None

    def find_service(self, service_name: str) -> Optional[ServiceType]:
        wanted = service_name.strip().casefold()
        for service in self.services:
            if service.name.casefold() == wanted:
                return service
        return None
