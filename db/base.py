"""
Collaborator contracts consumed by the scheduling engine.

Any backend (Supabase, an in-memory fake in tests) that provides these
methods can be injected into the engine.
"""

from typing import AsyncIterator, List, Optional, Protocol

from models.appointment import Appointment, AppointmentStatus
from models.resource import Resource, ServiceType


class AppointmentStore(Protocol):
    """
    Durable appointment records.

    Writes for one appointment ID are linearizable; status updates are
    last-writer-wins. Every failure is raised as StoreError.
    """

    async def save(self, appointment: Appointment) -> Appointment:
        """Persist a new appointment and return it with its assigned ID."""
        ...

    async def update_status(self, appointment_id: str, status: AppointmentStatus) -> Appointment: ...

    async def find_by_id(self, appointment_id: str) -> Optional[Appointment]: ...

    async def list_by_resource(self, resource_id: str) -> List[Appointment]: ...

    async def list_by_user(self, user_id: str) -> List[Appointment]: ...

    def stream_by_resource(self, resource_id: str) -> AsyncIterator[List[Appointment]]:
        """Live sequence of appointment-list snapshots for a resource."""
        ...

    def stream_by_user(self, user_id: str) -> AsyncIterator[List[Appointment]]: ...


class ResourceDirectory(Protocol):
    """Read-mostly reference data about resources and their services."""

    async def get_resource(self, resource_id: str) -> Optional[Resource]: ...

    async def get_service_type(self, resource_id: str, name: str) -> Optional[ServiceType]: ...

    async def list_resources(self, active_only: bool = True) -> List[Resource]: ...

    async def search_by_name(self, term: str) -> List[Resource]: ...

    async def filter_by_service(self, service_name: str) -> List[Resource]: ...


class FavoritesStore(Protocol):
    """Per-user favorite resources."""

    async def list_favorites(self, user_id: str) -> List[Resource]: ...

    async def toggle_favorite(self, user_id: str, resource_id: str) -> bool:
        """Flip a resource in or out of a user's favorites; True if now a favorite."""
        ...

    def stream_favorites(self, user_id: str) -> AsyncIterator[List[Resource]]: ...
