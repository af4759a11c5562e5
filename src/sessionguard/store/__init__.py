"""
Backing stores.

Exports the adapter interface, the three adapters and ``create_store``.
"""

from sessionguard.exceptions import ConfigurationError
from sessionguard.settings import Settings, StoreBackend, get_settings
from sessionguard.store.interfaces import StoreAdapter, bounded
from sessionguard.store.memory import MemoryStore


def create_store(settings: Settings | None = None) -> StoreAdapter:
    """Build the adapter selected by ``settings.store.backend``."""
    config = (settings or get_settings()).store

    if config.backend == StoreBackend.MEMORY:
        return MemoryStore(
            lock_blocking_timeout=config.lock_blocking_timeout_seconds,
            operation_timeout=config.operation_timeout_seconds,
        )

    if config.backend == StoreBackend.REDIS:
        from sessionguard.store.redis import RedisStore

        return RedisStore(
            config.redis_url,
            config.key_prefix,
            lock_timeout=config.lock_timeout_seconds,
            lock_blocking_timeout=config.lock_blocking_timeout_seconds,
            operation_timeout=config.operation_timeout_seconds,
        )

    if config.backend == StoreBackend.DATABASE:
        from sessionguard.store.database import DatabaseStore

        return DatabaseStore(
            config.database_url,
            lock_timeout=config.lock_timeout_seconds,
            lock_blocking_timeout=config.lock_blocking_timeout_seconds,
            operation_timeout=config.operation_timeout_seconds,
        )

    raise ConfigurationError(f"Unknown store backend: {config.backend}")


__all__ = [
    "StoreAdapter",
    "MemoryStore",
    "bounded",
    "create_store",
]
