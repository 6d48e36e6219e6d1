"""
Caching layer.

Synchronous cache backends with TTL and LRU eviction, used for short-lived
derived data such as per-user performance rollups.
"""

from progression.common.exceptions import CacheError
from progression.common.cache.base import CacheBackend, CacheResult
from progression.common.cache.entry import CacheEntry
from progression.common.cache.memory import MemoryCacheBackend

__all__ = [
    'CacheBackend',
    'CacheResult',
    'CacheEntry',
    'CacheError',
    'MemoryCacheBackend',
]
