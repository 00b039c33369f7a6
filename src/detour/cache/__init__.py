"""Fix cache and the key/value stores it is persisted into."""

from .backends import MemoryStore, SQLiteStore
from .fix_cache import CACHE_SCHEMA_VERSION, FixCache, HostFix, LoadReport, ReferenceFix, prune

__all__ = [
    "CACHE_SCHEMA_VERSION",
    "FixCache",
    "HostFix",
    "LoadReport",
    "MemoryStore",
    "ReferenceFix",
    "SQLiteStore",
    "prune",
]
