"""
Supabase database client for appointments, resources and service types.
Implements the AppointmentStore, ResourceDirectory and FavoritesStore contracts.

Row Level Security (RLS) Notes:
==============================
Supabase RLS policies should be configured in the Supabase dashboard to ensure:
1. Users can only read their own appointments (user_id match)
2. Resources and service types are readable by all authenticated users
3. Status changes go through the scheduling service (service_role key)

Example RLS Policies (SQL):
----------------------------
-- Appointments: users can only see their own bookings
CREATE POLICY "Users can view own appointments"
ON appointments FOR SELECT
USING (auth.uid()::text = user_id);

-- Resources: everyone can browse barbershops
CREATE POLICY "Anyone can view resources"
ON resources FOR SELECT
USING (true);
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

from supabase import Client as SupabaseClientType
from supabase import create_client

from models.appointment import Appointment, AppointmentStatus
from models.resource import Resource, ServiceType
from utils.constants import (
    APPOINTMENTS_TABLE,
    FAVORITES_TABLE,
    RESOURCES_TABLE,
    SERVICE_TYPES_TABLE,
)
from utils.datetime_utils import parse_iso_datetime, to_iso_string, utc_now
from utils.exceptions import StoreError

logger = logging.getLogger(__name__)

RESOURCE_SELECT = f"*, {SERVICE_TYPES_TABLE}(name, duration_minutes, price)"


class SupabaseClient:
    """
    Supabase database client wrapper.

    Uses service_role key which bypasses RLS for admin operations.
    Resource lookups are cached in memory since reference data changes rarely;
    appointments are never cached.
    """

    def __init__(
        self,
        url: str,
        key: str,
        cache_ttl: timedelta = timedelta(minutes=5),
        poll_interval: float = 5.0,
    ):
        """
        Initialize Supabase client.

        Args:
            url: Supabase project URL
            key: Supabase service key
            cache_ttl: How long resource lookups stay cached
            poll_interval: Seconds between polls for live streams
        """
        self.client: SupabaseClientType = create_client(url, key)
        self.poll_interval = poll_interval

        # Format: {cache_key: (data, expiry_time)}
        self._cache: Dict[str, Tuple[Any, datetime]] = {}
        self._cache_ttl = cache_ttl

    # ========== Cache Helpers ==========

    def _get_from_cache(self, key: str) -> Optional[Any]:
        """Get value from cache if not expired."""
        if key not in self._cache:
            return None

        data, expiry = self._cache[key]
        if utc_now() > expiry:
            del self._cache[key]
            return None

        return data

    def _set_cache(self, key: str, value: Any) -> None:
        expiry = utc_now() + self._cache_ttl
        self._cache[key] = (value, expiry)

    def clear_cache(self, pattern: Optional[str] = None) -> None:
        """Clear cache entries matching pattern, or all if pattern is None."""
        if pattern is None:
            self._cache.clear()
        else:
            for k in [k for k in self._cache if pattern in k]:
                del self._cache[k]

    # ========== Appointment Operations ==========

    async def save(self, appointment: Appointment) -> Appointment:
        """Insert a new appointment; the database assigns its ID."""
        try:
            data = appointment.model_dump(mode="json", exclude={"id"}, exclude_none=True)
            data["start_time"] = to_iso_string(appointment.start_time)

            response = self.client.table(APPOINTMENTS_TABLE).insert(data).execute()

            if not response.data:
                raise ValueError("no data returned")

            return self._parse_appointment(response.data[0])
        except Exception as e:
            raise StoreError(f"Failed to save appointment: {e}") from e

    async def update_status(
        self, appointment_id: str, status: AppointmentStatus
    ) -> Appointment:
        """
        Update appointment status.

        Raises:
            StoreError: If the write fails or no appointment has that ID
        """
        try:
            update_data = {
                "status": AppointmentStatus(status).value,
                "updated_at": to_iso_string(utc_now()),
            }

            response = (
                self.client.table(APPOINTMENTS_TABLE)
                .update(update_data)
                .eq("id", appointment_id)
                .execute()
            )

            if not response.data:
                raise ValueError(f"appointment {appointment_id} not found")

            return self._parse_appointment(response.data[0])
        except Exception as e:
            raise StoreError(f"Failed to update appointment status: {e}") from e

    async def find_by_id(self, appointment_id: str) -> Optional[Appointment]:
        try:
            response = (
                self.client.table(APPOINTMENTS_TABLE)
                .select("*")
                .eq("id", appointment_id)
                .execute()
            )

            if response.data:
                return self._parse_appointment(response.data[0])
            return None
        except Exception as e:
            raise StoreError(f"Failed to get appointment: {e}") from e

    async def list_by_resource(self, resource_id: str) -> List[Appointment]:
        """All appointments of a resource, earliest first."""
        try:
            response = (
                self.client.table(APPOINTMENTS_TABLE)
                .select("*")
                .eq("resource_id", resource_id)
                .order("start_time", desc=False)
                .execute()
            )
            return [self._parse_appointment(item) for item in response.data]
        except Exception as e:
            raise StoreError(f"Failed to list appointments for resource: {e}") from e

    async def list_by_user(self, user_id: str) -> List[Appointment]:
        """All appointments of a user, latest first."""
        try:
            response = (
                self.client.table(APPOINTMENTS_TABLE)
                .select("*")
                .eq("user_id", user_id)
                .order("start_time", desc=True)
                .execute()
            )
            return [self._parse_appointment(item) for item in response.data]
        except Exception as e:
            raise StoreError(f"Failed to list appointments for user: {e}") from e

    def stream_by_resource(
        self, resource_id: str, poll_interval: Optional[float] = None
    ) -> AsyncIterator[List[Appointment]]:
        """
        Live snapshots of a resource's appointments.

        Yields the current list immediately, then again whenever it changes.
        """
        return self._poll_snapshots(
            lambda: self.list_by_resource(resource_id), poll_interval
        )

    def stream_by_user(
        self, user_id: str, poll_interval: Optional[float] = None
    ) -> AsyncIterator[List[Appointment]]:
        """Live snapshots of a user's appointments."""
        return self._poll_snapshots(lambda: self.list_by_user(user_id), poll_interval)

    async def _poll_snapshots(
        self,
        fetch: Callable[[], Awaitable[List[Any]]],
        poll_interval: Optional[float],
    ) -> AsyncIterator[List[Any]]:
        interval = self.poll_interval if poll_interval is None else poll_interval
        last: Optional[List[Any]] = None
        while True:
            snapshot = await fetch()
            if snapshot != last:
                last = snapshot
                yield snapshot
            await asyncio.sleep(interval)

    # ========== Resource Operations ==========

    async def get_resource(self, resource_id: str) -> Optional[Resource]:
        """Get a resource with its services; cached."""
        cache_key = f"resource:{resource_id}"

        cached = self._get_from_cache(cache_key)
        if cached is not None:
            return cached

        try:
            response = (
                self.client.table(RESOURCES_TABLE)
                .select(RESOURCE_SELECT)
                .eq("id", resource_id)
                .execute()
            )

            if response.data:
                resource = self._parse_resource(response.data[0])
                self._set_cache(cache_key, resource)
                return resource
            return None
        except Exception as e:
            raise StoreError(f"Failed to get resource: {e}") from e

    async def get_service_type(
        self, resource_id: str, name: str
    ) -> Optional[ServiceType]:
        resource = await self.get_resource(resource_id)
        if resource is None:
            return None
        return resource.find_service(name)

    async def list_resources(self, active_only: bool = True) -> List[Resource]:
        """List resources ordered by name."""
        try:
            query = self.client.table(RESOURCES_TABLE).select(RESOURCE_SELECT)
            if active_only:
                query = query.eq("active", True)
            response = query.order("name", desc=False).execute()

            resources = []
            for item in response.data:
                resource = self._parse_resource(item)
                self._set_cache(f"resource:{resource.id}", resource)
                resources.append(resource)
            return resources
        except Exception as e:
            raise StoreError(f"Failed to list resources: {e}") from e

    async def search_by_name(self, term: str) -> List[Resource]:
        """Active resources whose name contains term (case-insensitive)."""
        term = term.strip()
        if not term:
            return await self.list_resources()

        try:
            response = (
                self.client.table(RESOURCES_TABLE)
                .select(RESOURCE_SELECT)
                .eq("active", True)
                .ilike("name", f"%{term}%")
                .order("name", desc=False)
                .execute()
            )
            return [self._parse_resource(item) for item in response.data]
        except Exception as e:
            raise StoreError(f"Failed to search resources: {e}") from e

    async def filter_by_service(self, service_name: str) -> List[Resource]:
        """Active resources offering a service."""
        resources = await self.list_resources()
        return [r for r in resources if r.offers(service_name)]

    # ========== Favorite Operations ==========

    async def list_favorites(self, user_id: str) -> List[Resource]:
        """Resources a user marked as favorite, ordered by name."""
        try:
            response = (
                self.client.table(FAVORITES_TABLE)
                .select("resource_id")
                .eq("user_id", user_id)
                .execute()
            )
            resource_ids = [row["resource_id"] for row in response.data]
            if not resource_ids:
                return []

            response = (
                self.client.table(RESOURCES_TABLE)
                .select(RESOURCE_SELECT)
                .in_("id", resource_ids)
                .order("name", desc=False)
                .execute()
            )
            return [self._parse_resource(item) for item in response.data]
        except Exception as e:
            raise StoreError(f"Failed to list favorites: {e}") from e

    async def toggle_favorite(self, user_id: str, resource_id: str) -> bool:
        """
        Add or remove a resource from a user's favorites.

        Returns:
            True if the resource is now a favorite, False if it was removed
        """
        try:
            response = (
                self.client.table(FAVORITES_TABLE)
                .select("resource_id")
                .eq("user_id", user_id)
                .eq("resource_id", resource_id)
                .execute()
            )

            if response.data:
                self.client.table(FAVORITES_TABLE).delete().eq("user_id", user_id).eq(
                    "resource_id", resource_id
                ).execute()
                logger.info(f"User {user_id} removed favorite {resource_id}")
                return False

            self.client.table(FAVORITES_TABLE).insert(
                {"user_id": user_id, "resource_id": resource_id}
            ).execute()
            logger.info(f"User {user_id} added favorite {resource_id}")
            return True
        except Exception as e:
            raise StoreError(f"Failed to toggle favorite: {e}") from e

    def stream_favorites(
        self, user_id: str, poll_interval: Optional[float] = None
    ) -> AsyncIterator[List[Resource]]:
        """Live snapshots of a user's favorite resources."""
        return self._poll_snapshots(lambda: self.list_favorites(user_id), poll_interval)

    async def save_resource(self, resource: Resource) -> Resource:
        """Upsert a resource and replace its service list (admin operation)."""
        try:
            data = resource.model_dump(mode="json", exclude={"services"}, exclude_none=True)
            self.client.table(RESOURCES_TABLE).upsert(data).execute()

            self.client.table(SERVICE_TYPES_TABLE).delete().eq(
                "resource_id", resource.id
            ).execute()
            if resource.services:
                rows = [
                    {**service.model_dump(mode="json"), "resource_id": resource.id}
                    for service in resource.services
                ]
                self.client.table(SERVICE_TYPES_TABLE).insert(rows).execute()

            self.clear_cache(f"resource:{resource.id}")
            return resource
        except Exception as e:
            raise StoreError(f"Failed to save resource: {e}") from e

    # ========== Helper Methods ==========

    def _parse_appointment(self, item: dict) -> Appointment:
        """
        Parse appointment data from database response.

        Args:
            item: Raw appointment row

        Returns:
            Parsed Appointment object
        """
        item = item.copy()
        for field in ["start_time", "created_at", "updated_at"]:
            if item.get(field):
                item[field] = parse_iso_datetime(item[field])
        return Appointment(**item)

    def _parse_resource(self, item: dict) -> Resource:
        """Parse a resource row with its embedded service_types rows."""
        item = item.copy()
        item["services"] = item.pop(SERVICE_TYPES_TABLE, None) or item.get("services") or []
        if item.get("weekly_hours") is None:
            item["weekly_hours"] = {}
        if item.get("created_at"):
            item["created_at"] = parse_iso_datetime(item["created_at"])
        return Resource(**item)
