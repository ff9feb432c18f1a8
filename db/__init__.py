"""Database client and collaborator contracts."""

from .base import AppointmentStore, FavoritesStore, ResourceDirectory
from .supabase_client import SupabaseClient

__all__ = ["AppointmentStore", "FavoritesStore", "ResourceDirectory", "SupabaseClient"]
