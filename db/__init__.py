"""Database clients and operations."""

from typing import Optional

from config import settings

from .memory_store import InMemoryStore
from .store import AppointmentStore
from .supabase_client import SupabaseClient

# Global database client instance
_db_client: Optional[AppointmentStore] = None


def get_db_client() -> AppointmentStore:
    """Get or create the store selected by STORAGE_BACKEND."""
    global _db_client
    if _db_client is None:
        if settings.storage_backend == "memory":
            _db_client = InMemoryStore()
        else:
            _db_client = SupabaseClient()
    return _db_client


def reset_db_client() -> None:
    """Drop the cached store so the next call builds a fresh one."""
    global _db_client
    _db_client = None


__all__ = [
    "AppointmentStore",
    "InMemoryStore",
    "SupabaseClient",
    "get_db_client",
    "reset_db_client",
]
