# Persistence backends
from typing import Optional

from studiosign.config import Settings, get_settings
from studiosign.store.base import SigningStore, StoreUnavailable
from studiosign.store.memory import InMemoryStore

_store: Optional[SigningStore] = None


def create_store(settings: Settings) -> SigningStore:
    if settings.store_backend == "supabase":
        from studiosign.store.supabase import SupabaseStore
        return SupabaseStore(settings)
    if settings.store_backend == "memory":
        return InMemoryStore()
    raise ValueError(f"Unknown STORE_BACKEND: {settings.store_backend}")


def get_store() -> SigningStore:
    """Get the configured store singleton."""
    global _store
    if _store is None:
        _store = create_store(get_settings())
    return _store


__all__ = [
    "SigningStore",
    "StoreUnavailable",
    "InMemoryStore",
    "create_store",
    "get_store",
]
