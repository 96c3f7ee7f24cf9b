"""
Connection validation cache.

Remembers successful WebDAV probes per configuration so repeated backups
do not repeat the HEAD/PROPFIND handshake. Entries expire after a TTL and,
once the cache fills up, the least recently accessed ones are evicted.

One instance is created at startup and shared by every client.
"""
import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from cloudmark.constants import (
    VALIDATION_CACHE_CAPACITY,
    VALIDATION_CACHE_GC_TARGET,
    VALIDATION_CACHE_GC_THRESHOLD,
    VALIDATION_CACHE_TTL_SECONDS,
)

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    result: Dict[str, Any]
    timestamp: float
    last_accessed: float = field(default=0.0)


def config_key(url: str, username: str, password: str) -> str:
    """Cache key for a WebDAV configuration."""
    return hashlib.sha256(f"{url}:{username}:{password}".encode("utf-8")).hexdigest()


class ValidationCache:
    """
    TTL + LRU cache of probe results.

    Garbage collection runs opportunistically on writes: when the cache
    reaches ``gc_threshold`` of capacity, expired entries are purged first,
    then least recently accessed entries until size is at ``gc_target``.
    """

    def __init__(self, ttl_seconds: float = VALIDATION_CACHE_TTL_SECONDS,
                 capacity: int = VALIDATION_CACHE_CAPACITY,
                 gc_threshold: float = VALIDATION_CACHE_GC_THRESHOLD,
                 gc_target: float = VALIDATION_CACHE_GC_TARGET,
                 clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self.capacity = capacity
        self.gc_threshold = gc_threshold
        self.gc_target = gc_target
        self.clock = clock
        self.entries: Dict[str, CacheEntry] = {}

        self.stats_counters = {
            'hits': 0,
            'misses': 0,
            'evictions': 0,
        }

    def __len__(self) -> int:
        return len(self.entries)

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.timestamp > self.ttl_seconds

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return a copy of the cached result, or None if missing/expired."""
        entry = self.entries.get(key)
        now = self.clock()
        if entry is None:
            self.stats_counters['misses'] += 1
            return None
        if self._is_expired(entry, now):
            del self.entries[key]
            self.stats_counters['misses'] += 1
            return None
        entry.last_accessed = now
        self.stats_counters['hits'] += 1
        return dict(entry.result)

    def set(self, key: str, result: Dict[str, Any]):
        """Cache a result, running garbage collection first if needed."""
        self.maybe_collect_garbage()
        now = self.clock()
        self.entries[key] = CacheEntry(result=dict(result), timestamp=now, last_accessed=now)

    def invalidate(self, key: str):
        self.entries.pop(key, None)

    def clear(self):
        self.entries.clear()
        logger.info("Cleared all validation cache entries")

    def maybe_collect_garbage(self) -> int:
        """
        Purge expired, then LRU entries once size crosses the threshold.

        Returns:
            Number of entries removed
        """
        before = len(self.entries)
        if before < self.capacity * self.gc_threshold:
            return 0

        now = self.clock()
        for key in [k for k, e in self.entries.items() if self._is_expired(e, now)]:
            del self.entries[key]

        target = int(self.capacity * self.gc_target)
        if len(self.entries) > target:
            by_access = sorted(self.entries.items(), key=lambda item: item[1].last_accessed)
            for key, _ in by_access[:len(self.entries) - target]:
                del self.entries[key]

        cleaned = before - len(self.entries)
        if cleaned:
            self.stats_counters['evictions'] += cleaned
            logger.debug(f"Validation cache GC removed {cleaned} entries, {len(self.entries)} left")
        return cleaned

    def collect_garbage(self, force: bool = False) -> Tuple[int, int]:
        """
        Remove expired entries (or every entry when forced).

        Returns:
            (cleaned, remaining)
        """
        now = self.clock()
        before = len(self.entries)
        for key in [k for k, e in self.entries.items() if force or self._is_expired(e, now)]:
            del self.entries[key]
        cleaned = before - len(self.entries)
        logger.info(f"Validation cache cleanup{' (forced)' if force else ''}: "
                    f"removed {cleaned}, {len(self.entries)} left")
        return cleaned, len(self.entries)

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        now = self.clock()
        expired = sum(1 for e in self.entries.values() if self._is_expired(e, now))
        return {
            **self.stats_counters,
            'entries': len(self.entries),
            'valid': len(self.entries) - expired,
            'expired': expired,
            'capacity': self.capacity,
            'usage_percent': round(len(self.entries) / self.capacity * 100, 1) if self.capacity else 0.0,
            'ttl_seconds': self.ttl_seconds,
        }
