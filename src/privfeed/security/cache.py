"""In-memory cache with per-entry expiry and size-bounded LRU eviction.

Holds derived key material (per-epoch CEKs) for a FollowerKeyStore. Entries
expire after ``ttl_seconds``; once ``max_entries`` is reached the least
recently used entry is evicted. The owner of the cache drops entries
explicitly when its key knowledge changes, there is no ambient global cache.
"""
from __future__ import annotations

import time
from collections import OrderedDict
from typing import Callable, Generic, Hashable, Optional, Tuple, TypeVar


K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class TTLCache(Generic[K, V]):
    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_entries: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.ttl_seconds = float(ttl_seconds)
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[K, Tuple[V, float]]" = OrderedDict()

    def get(self, key: K) -> Optional[V]:
        """Return the cached value, or None if missing or expired."""
        item = self._entries.get(key)
        if item is None:
            return None
        value, expires_at = item
        if self._clock() > expires_at:
            # auto-expire on read
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return value

    def put(self, key: K, value: V) -> None:
        self._entries[key] = (value, self._clock() + self.ttl_seconds)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        now = self._clock()
        return sum(1 for _, exp in self._entries.values() if exp >= now)
