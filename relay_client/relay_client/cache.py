"""In-process query cache with key-prefix invalidation.

Keys are tuples of path segments, e.g. ``("orders", "list", "open")``.
Invalidating ``("orders", "list")`` evicts every key that starts with
those segments.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from typing import Any

CacheKey = tuple[Any, ...]


class QueryCache:
    """Thread-safe mapping of query keys to cached results."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[CacheKey, Any] = {}

    def get(self, key: Iterable[Any], default: Any = None) -> Any:
        with self._lock:
            return self._entries.get(tuple(key), default)

    def set(self, key: Iterable[Any], value: Any) -> None:
        with self._lock:
            self._entries[tuple(key)] = value

    def invalidate(self, prefix: Iterable[Any]) -> int:
        """Evict every key starting with *prefix*; returns the number evicted."""
        prefix = tuple(prefix)
        n = len(prefix)
        with self._lock:
            stale = [key for key in self._entries if key[:n] == prefix]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self) -> list[CacheKey]:
        with self._lock:
            return list(self._entries)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, (tuple, list)):
            return False
        with self._lock:
            return tuple(key) in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
