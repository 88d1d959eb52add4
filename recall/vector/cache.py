"""
Process-local caches for embedding vectors and hypothetical documents.
Non-persistent; a restart starts cold.
"""

import threading
import time
from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple


def normalize_text(text: str) -> str:
    """Trim and unify line endings so equivalent inputs share a cache key."""
    return text.strip().replace("\r\n", "\n").replace("\r", "\n")


class TimedCache:
    """Bounded key/value cache with optional TTL and oldest-first eviction.

    Entries carry the timestamp of their last write. When a new key is added
    to a full cache, the single entry with the oldest timestamp is evicted
    first. Writing an existing key refreshes it in place.
    """

    def __init__(self, max_size: int, ttl_seconds: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def _key(self, key):
        return key

    def get(self, key) -> Optional[Any]:
        key = self._key(key)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, stored_at = entry
            if self.ttl_seconds is not None and self._clock() - stored_at > self.ttl_seconds:
                del self._entries[key]
                return None
            return value

    def put(self, key, value) -> None:
        key = self._key(key)
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_size:
                self._evict_oldest_locked()
            self._entries[key] = (value, self._clock())

    def evict_oldest(self) -> Optional[Hashable]:
        """Remove the entry with the oldest timestamp and return its key."""
        with self._lock:
            return self._evict_oldest_locked()

    def _evict_oldest_locked(self) -> Optional[Hashable]:
        if not self._entries:
            return None
        oldest = min(self._entries, key=lambda k: self._entries[k][1])
        del self._entries[oldest]
        return oldest

    def keys(self) -> List[Hashable]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key) -> bool:
        return self.get(key) is not None


class EmbeddingCache(TimedCache):
    """Text -> vector cache keyed by normalized source text."""

    def __init__(self, max_size: int = 1000, ttl_seconds: Optional[float] = 3600,
                 clock: Callable[[], float] = time.monotonic):
        super().__init__(max_size, ttl_seconds, clock)

    def _key(self, key):
        return normalize_text(key)


class HydeCache(TimedCache):
    """Query -> hypothetical document cache; keys ignore letter case."""

    def __init__(self, max_size: int = 50, ttl_seconds: Optional[float] = 3600,
                 clock: Callable[[], float] = time.monotonic):
        super().__init__(max_size, ttl_seconds, clock)

    def _key(self, key):
        return normalize_text(key).lower()
