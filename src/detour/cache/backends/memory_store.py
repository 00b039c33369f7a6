from __future__ import annotations

from typing import Dict, Optional


class MemoryStore:
    """Namespaced key -> JSON-string store kept in a dict.

    Brief:
      Used when no durable store is configured and by tests. Behaves like the
      sqlite store: values are opaque strings, missing keys read as None.

    Example:
      >>> store = MemoryStore()
      >>> store.set("detour:cache", "{}")
      >>> store.get("detour:cache")
      '{}'
    """

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})
        self.writes = 0

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = str(value)
        self.writes += 1

    def keys(self):
        return list(self._data)
