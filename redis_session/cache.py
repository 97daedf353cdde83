"""In-process read cache with per-entry TTL and a bounded LRU capacity."""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="cache")

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    """Cached value with the monotonic time it was stored and its TTL in seconds."""
    data: T
    timestamp: float
    ttl: int

    def is_expired(self, now: float) -> bool:
        """Return True once more than `ttl` seconds have passed since `timestamp`."""
        return now - self.timestamp > self.ttl


class LocalCache:
    """Unsynchronized cache for a single event loop.

    Entries expire `ttl` seconds after being stored; reads do not refresh them.
    When `max_entries` is reached the least recently used entry is evicted.
    """

    def __init__(self, default_ttl: int = 3600, max_entries: int = 10_000) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._entries: OrderedDict[str, CacheEntry[Any]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def set(self, key: str, data: Any, ttl: Optional[int] = None) -> None:
        """Store `data` under `key`; a missing or zero ttl falls back to the default."""
        self._entries[key] = CacheEntry(data=data, timestamp=time.monotonic(), ttl=ttl or self.default_ttl)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted least recently used cache entry %s", evicted)

    def get(self, key: str) -> Optional[Any]:
        """Return the cached data, or None when absent or expired (expired entries are dropped)."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(time.monotonic()):
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return entry.data

    def clear(self, pattern: Optional[str] = None) -> int:
        """Drop entries whose key contains `pattern`, or everything; return how many were dropped."""
        if not pattern:
            removed = len(self._entries)
            self._entries.clear()
            return removed
        doomed = [key for key in self._entries if pattern in key]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def cleanup(self) -> int:
        """Drop every expired entry and return how many were removed."""
        now = time.monotonic()
        doomed = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in doomed:
            del self._entries[key]
        if doomed:
            logger.debug("Swept %d expired cache entries", len(doomed))
        return len(doomed)
