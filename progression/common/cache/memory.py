"""
Memory Cache Backend Module

In-memory cache backend with thread safety, TTL expiry and LRU eviction.
"""

import threading
from collections import OrderedDict
from typing import Any, Dict, Optional, TypeVar

from progression.common.clock import Clock, get_clock
from progression.common.logger import app_logger

from .base import CacheBackend, CacheResult
from .entry import CacheEntry

logger = app_logger.getChild("cache.memory")

K = TypeVar('K')
V = TypeVar('V')


class MemoryCacheBackend(CacheBackend[K, V]):
    """
    In-memory cache backend implementation.

    Features:
    - Thread-safe operations
    - LRU eviction when reaching maximum size
    - Lazy expiry driven by an injectable clock
    - Hit, miss, eviction and expiration statistics
    """

    def __init__(
        self,
        max_size: int = 10000,
        default_ttl: Optional[float] = None,
        name: str = "memory",
        clock: Optional[Clock] = None
    ):
        """
        Initialize the memory cache backend.

        Args:
            max_size: Maximum number of entries to store
            default_ttl: TTL applied when ``set`` is called without one
            name: Name for this cache backend
            clock: Time source for expiry
        """
        self._cache: "OrderedDict[K, CacheEntry[V]]" = OrderedDict()
        self._lock = threading.RLock()
        self._max_size = max_size
        self._default_ttl = default_ttl
        self._name = name
        self._clock = clock or get_clock()

        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    @property
    def name(self) -> str:
        """Get the name of this cache backend."""
        return self._name

    def get(self, key: K) -> CacheResult[V]:
        with self._lock:
            entry = self._cache.get(key)

            if entry is None:
                self._misses += 1
                return CacheResult(success=False, source=self.name, error="Key not found")

            if entry.is_expired():
                del self._cache[key]
                self._expirations += 1
                self._misses += 1
                return CacheResult(success=False, source=self.name, error="Entry expired")

            entry.access()
            self._cache.move_to_end(key)
            self._hits += 1

            return CacheResult(
                success=True,
                value=entry.value,
                hit=True,
                ttl=entry.get_ttl(),
                source=self.name
            )

    def set(self, key: K, value: V, ttl: Optional[float] = None) -> CacheResult[V]:
        effective_ttl = self._default_ttl if ttl is None else ttl
        with self._lock:
            if key not in self._cache and len(self._cache) >= self._max_size:
                self._evict_entries()

            self._cache[key] = CacheEntry(value, ttl=effective_ttl, clock=self._clock)
            self._cache.move_to_end(key)

            return CacheResult(success=True, value=value, ttl=effective_ttl, source=self.name)

    def delete(self, key: K) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def has(self, key: K) -> bool:
        """
        Check if a key exists in the cache.

        Returns:
            True if the key exists and has not expired
        """
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return False
            if entry.is_expired():
                del self._cache[key]
                self._expirations += 1
                return False
            return True

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def cleanup_expired(self) -> int:
        """
        Remove expired entries.

        Returns:
            Number of entries removed
        """
        with self._lock:
            now = self._clock.timestamp()
            expired_keys = [key for key, entry in self._cache.items() if entry.is_expired(now)]
            for key in expired_keys:
                del self._cache[key]
            self._expirations += len(expired_keys)
        if expired_keys:
            logger.debug(f"{self.name}: removed {len(expired_keys)} expired entries")
        return len(expired_keys)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                'backend': self.name,
                'size': len(self._cache),
                'max_size': self._max_size,
                'hits': self._hits,
                'misses': self._misses,
                'hit_rate': self._hits / total if total > 0 else 0,
                'evictions': self._evictions,
                'expirations': self._expirations
            }

    def _evict_entries(self) -> None:
        """Evict least recently used entries until there is room for one more."""
        while len(self._cache) >= self._max_size:
            self._cache.popitem(last=False)
            self._evictions += 1

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)
