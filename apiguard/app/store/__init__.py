"""Record stores.

Exports the store implementations and the process-wide store factory.
"""

import threading
from typing import Optional

from apiguard.app.core.config import settings
from apiguard.app.core.logging import get_logger
from apiguard.app.exceptions import ConfigurationError
from apiguard.app.store.base import Record, RecordStore, is_expired
from apiguard.app.store.fallback import FallbackStore
from apiguard.app.store.local import LocalStore
from apiguard.app.store.redis_store import RedisStore

logger = get_logger(__name__)

__all__ = [
    "Record",
    "RecordStore",
    "LocalStore",
    "RedisStore",
    "FallbackStore",
    "is_expired",
    "create_store",
    "get_store",
    "reset_store",
    "close_store",
]

# Global store instances, one per backend (singleton pattern)
_stores: dict[str, RecordStore] = {}
_store_lock = threading.Lock()


def create_store(backend: Optional[str] = None) -> RecordStore:
    """Build a store for ``backend`` (defaults to ``settings.storage_backend``)."""
    backend = (backend or settings.storage_backend).lower()
    if backend == "memory":
        return LocalStore()
    if backend == "redis":
        store: RecordStore = RedisStore()
        if settings.fallback_to_local:
            store = FallbackStore(store, LocalStore())
        return store
    raise ConfigurationError.unsupported("storage_backend", backend)


def get_store(backend: Optional[str] = None) -> RecordStore:
    """Get or create the process-wide store for ``backend``.

    Operations that name a backend share one store per backend; without one
    the configured default is used.
    """
    backend = (backend or settings.storage_backend).lower()
    with _store_lock:
        store = _stores.get(backend)
        if store is None:
            store = _stores[backend] = create_store(backend)
            logger.info(f"Using {store.storage_type} record store")
        return store


def reset_store() -> None:
    """Reset the global stores. Primarily useful for testing."""
    with _store_lock:
        _stores.clear()


async def close_store() -> None:
    """Close and forget every global store."""
    with _store_lock:
        stores = list(_stores.values())
        _stores.clear()
    for store in stores:
        await store.close()

