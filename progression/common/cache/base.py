"""
Base Cache Module

Core interfaces and result types for the caching layer used to keep
dashboard reads of derived metrics cheap.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Generic, Optional, TypeVar

K = TypeVar('K')
V = TypeVar('V')


@dataclass
class CacheResult(Generic[V]):
    """
    Result of a cache operation.

    Attributes:
        success: Whether the operation was successful
        value: The value retrieved or stored
        hit: Whether the value was found in cache (for get operations)
        ttl: Remaining time-to-live in seconds
        source: Name of the backend that served the request
        error: Optional error message if the operation failed
    """
    success: bool
    value: Optional[V] = None
    hit: bool = False
    ttl: Optional[float] = None
    source: Optional[str] = None
    error: Optional[str] = None


class CacheBackend(Generic[K, V], ABC):
    """
    Abstract interface for cache backends.

    Backends are synchronous and must be safe to call from several threads.
    Implementations raise ``CacheError`` when the backing store itself is
    unavailable; a plain miss is reported through ``CacheResult``.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Get the name of this cache backend."""
        pass

    @abstractmethod
    def get(self, key: K) -> CacheResult[V]:
        """
        Retrieve a value from the cache.

        Args:
            key: The cache key

        Returns:
            A CacheResult, with ``hit`` set when the key was present and fresh
        """
        pass

    @abstractmethod
    def set(self, key: K, value: V, ttl: Optional[float] = None) -> CacheResult[V]:
        """
        Store a value.

        Args:
            key: The cache key
            value: The value to cache
            ttl: Time-to-live in seconds, or None for the backend default

        Returns:
            CacheResult indicating success/failure
        """
        pass

    @abstractmethod
    def delete(self, key: K) -> bool:
        """
        Delete a value from the cache.

        Returns:
            True if the key was found and deleted
        """
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove every entry."""
        pass

    @abstractmethod
    def get_stats(self) -> Dict[str, Any]:
        """Return hit/miss/eviction statistics."""
        pass
