"""
Bounded in-memory TTL cache.

Used by the frequency tracker (status lookups) and the trigger evaluator
(per-question trigger lists) to avoid re-reading rows that change rarely.
Staleness up to the TTL is accepted; write paths must call ``invalidate``
for the key they changed.

Thread Safety:
    All operations are protected by an RLock so concurrent read paths can
    share one cache instance.

Usage:
    from datetime import timedelta
    from src.lib.ttl_cache import TTLCache

    cache = TTLCache(ttl=timedelta(minutes=5), max_entries=1000)
    triggers = cache.get(question_id)
    if triggers is None:
        triggers = repository.list_enabled_triggers(question_id)
        cache.set(question_id, triggers)
"""

from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import RLock
from typing import Any, Callable, Dict, Generic, Hashable, Optional, TypeVar
import logging

logger = logging.getLogger(__name__)

V = TypeVar("V")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock: timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


@dataclass
class CacheEntry(Generic[V]):
    """Single cache entry with its absolute expiry."""
    value: V
    expires_at: datetime


class TTLCache(Generic[V]):
    """Thread-safe key -> (value, expiry) cache with LRU eviction."""

    def __init__(
        self,
        ttl: timedelta,
        max_entries: Optional[int] = 1024,
        clock: Optional[Clock] = None,
        name: str = "cache",
    ):
        """Initialize the cache.

        Args:
            ttl: Lifetime of each entry
            max_entries: Upper bound on stored entries (None for unbounded)
            clock: Callable returning the current time, injectable for tests
            name: Label used in log lines and stats
        """
        if ttl <= timedelta(0):
            raise ValueError("ttl must be positive")
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be at least 1")

        self.ttl = ttl
        self.max_entries = max_entries
        self.name = name
        self._clock = clock or utc_now
        self._entries: "OrderedDict[Hashable, CacheEntry[V]]" = OrderedDict()
        self._lock = RLock()
        self._hits = 0
        self._misses = 0

    def get(self, key: Hashable) -> Optional[V]:
        """Return the cached value, or None when missing or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            if self._clock() >= entry.expires_at:
                del self._entries[key]
                self._misses += 1
                logger.debug(f"[{self.name}] Cache EXPIRED for {key}")
                return None

            self._entries.move_to_end(key)
            self._hits += 1
            return entry.value

    def set(self, key: Hashable, value: V) -> None:
        """Store a value, evicting the least recently used entry when full."""
        with self._lock:
            self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + self.ttl)
            self._entries.move_to_end(key)

            if self.max_entries is not None:
                while len(self._entries) > self.max_entries:
                    evicted, _ = self._entries.popitem(last=False)
                    logger.debug(f"[{self.name}] Evicted {evicted}")

    def invalidate(self, key: Hashable) -> bool:
        """Drop a key. Returns True when an entry was removed."""
        with self._lock:
            if key in self._entries:
                del self._entries[key]
                return True
            return False

    def clear(self) -> int:
        """Remove all entries. Returns number of entries removed."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def cleanup_expired(self) -> int:
        """Remove all expired entries. Returns number of entries removed."""
        with self._lock:
            now = self._clock()
            expired_keys = [
                key for key, entry in self._entries.items()
                if now >= entry.expires_at
            ]
            for key in expired_keys:
                del self._entries[key]
            return len(expired_keys)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and self._clock() < entry.expires_at

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        with self._lock:
            now = self._clock()
            total = len(self._entries)
            expired = sum(1 for entry in self._entries.values() if now >= entry.expires_at)
            return {
                "name": self.name,
                "total_entries": total,
                "active_entries": total - expired,
                "expired_entries": expired,
                "cache_hits": self._hits,
                "cache_misses": self._misses,
                "ttl_seconds": self.ttl.total_seconds(),
                "max_entries": self.max_entries,
            }
