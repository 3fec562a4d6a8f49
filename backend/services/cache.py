"""In-process TTL cache used by the report services."""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Optional, Tuple

logger = logging.getLogger(__name__)

ONE_WEEK_SECONDS = 7 * 24 * 60 * 60
DEFAULT_MAX_CACHE_SIZE = 500


@dataclass
class CacheEntry:
    value: Any
    last_updated: float


class TTLCache:
    """Key/value store with lazy expiry and an oldest-first size cap.

    Entries older than ``ttl_seconds`` are treated as missing and removed
    when read. When the store grows past ``max_size`` the entries with the
    oldest ``last_updated`` timestamps are evicted first.
    """

    def __init__(self, name: str, ttl_seconds: float = ONE_WEEK_SECONDS,
                 max_size: int = DEFAULT_MAX_CACHE_SIZE,
                 clock: Callable[[], float] = time.time):
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._entries = {}
        self._hits = 0
        self._misses = 0
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._entries)

    def __contains__(self, key):
        _, found = self.get(key)
        return found

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.last_updated > self.ttl_seconds

    def get(self, key: Hashable) -> Tuple[Optional[Any], bool]:
        """Return ``(value, True)`` for a live entry, else ``(None, False)``."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                logger.debug(f"{self.name} cache miss: {key}")
                return None, False

            if self._is_expired(entry, self._clock()):
                del self._entries[key]
                self._misses += 1
                logger.debug(f"{self.name} cache expired: {key}")
                return None, False

            self._hits += 1
            logger.debug(f"{self.name} cache hit: {key}")
            return entry.value, True

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = CacheEntry(value=value, last_updated=self._clock())
            if len(self._entries) > self.max_size:
                self._evict_oldest()

    def items(self) -> list:
        """Snapshot of live ``(key, value)`` pairs. Does not count as lookups."""
        with self._lock:
            now = self._clock()
            return [(key, entry.value) for key, entry in self._entries.items()
                    if not self._is_expired(entry, now)]

    def delete(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
        logger.info(f"{self.name} cache cleared")

    def cleanup(self) -> int:
        """Drop expired entries, then trim to ``max_size``.

        Returns the number of entries removed.
        """
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items()
                       if self._is_expired(entry, now)]
            for key in expired:
                del self._entries[key]
            removed = len(expired) + self._evict_oldest()

        if removed:
            logger.info(f"{self.name} cache cleanup removed {removed} entries")
        return removed

    def _evict_oldest(self) -> int:
        overflow = len(self._entries) - self.max_size
        if overflow <= 0:
            return 0

        oldest = sorted(self._entries.items(), key=lambda item: item[1].last_updated)
        for key, _ in oldest[:overflow]:
            del self._entries[key]
        logger.debug(f"{self.name} cache evicted {overflow} oldest entries")
        return overflow

    def stats(self) -> dict:
        with self._lock:
            timestamps = [entry.last_updated for entry in self._entries.values()]
            lookups = self._hits + self._misses
            return {
                "count": len(self._entries),
                "hitRate": round(self._hits / lookups, 3) if lookups else 0.0,
                "oldest": min(timestamps) if timestamps else None,
                "newest": max(timestamps) if timestamps else None,
                "maxSize": self.max_size,
                "ttlSeconds": self.ttl_seconds,
            }
