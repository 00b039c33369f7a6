"""Key/value stores the fix cache and host statistics are persisted into."""

from .memory_store import MemoryStore
from .sqlite_store import SQLiteStore

__all__ = ["MemoryStore", "SQLiteStore"]
