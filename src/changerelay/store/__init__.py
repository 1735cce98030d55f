"""
Object store backends
"""

from changerelay.store.base import ObjectStore
from changerelay.store.filesystem_store import FilesystemObjectStore
from changerelay.store.memory_store import InMemoryObjectStore
from changerelay.store.redis_store import RedisObjectStore
from changerelay.store.sqlite_store import SQLiteObjectStore


def create_object_store(config) -> ObjectStore:
    """Build the backend selected by ``config.store_backend`` (not yet initialized)"""
    backend = config.store_backend
    if backend == "memory":
        return InMemoryObjectStore()
    if backend == "sqlite":
        return SQLiteObjectStore(config.sqlite_path)
    if backend == "redis":
        return RedisObjectStore(config.redis_url, key_prefix=config.key_prefix)
    if backend == "filesystem":
        return FilesystemObjectStore(config.filesystem_root)
    raise ValueError(f"Unknown store backend: {backend}")


__all__ = [
    "ObjectStore",
    "InMemoryObjectStore",
    "SQLiteObjectStore",
    "RedisObjectStore",
    "FilesystemObjectStore",
    "create_object_store",
]
