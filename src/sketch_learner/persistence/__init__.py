from __future__ import annotations

from .manager import LoadResult, PersistenceManager
from .store import FileStore, KeyValueStore, MemoryStore, RedisStore, make_store

__all__ = [
    "FileStore",
    "KeyValueStore",
    "LoadResult",
    "MemoryStore",
    "PersistenceManager",
    "RedisStore",
    "make_store",
]
