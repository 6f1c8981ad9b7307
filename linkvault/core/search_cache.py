"""Short-lived result cache for the search endpoints."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Hashable


class SearchCache:
    """TTL + LRU bounded in-memory cache. Thread-safe.

    Keys are built by ``make_key`` from owner, query, mode and filters.
    Entries older than ``ttl`` seconds are treated as missing; once
    ``max_size`` is reached the least recently used entry is evicted.
    """

    def __init__(self, ttl: float = 30.0, max_size: int = 256, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock
        self._entries: OrderedDict[Hashable, tuple[float, Any]] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def make_key(owner_id: str, query: str, mode: str, **filters: Any) -> tuple:
        normalized = " ".join(query.lower().split())
        return (owner_id, normalized, mode, tuple(sorted((k, repr(v)) for k, v in filters.items())))

    def get(self, key: Hashable) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            stored_at, value = entry
            if self._clock() - stored_at > self.ttl:
                del self._entries[key]
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return value

    def set(self, key: Hashable, value: Any) -> None:
        if self.max_size <= 0 or self.ttl <= 0:
            return
        with self._lock:
            self._entries[key] = (self._clock(), value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def invalidate_owner(self, owner_id: str) -> int:
        """Drop every entry for one owner (after their data changed)."""
        with self._lock:
            stale = [key for key in self._entries if isinstance(key, tuple) and key and key[0] == owner_id]
            for key in stale:
                del self._entries[key]
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "ttl": self.ttl,
                "hits": self.hits,
                "misses": self.misses,
            }
