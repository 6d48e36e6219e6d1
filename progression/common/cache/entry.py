"""
Cache Entry Module

A cached value together with its expiry and access bookkeeping.
"""

from typing import Generic, Optional, TypeVar

from progression.common.clock import Clock, get_clock

V = TypeVar('V')


class CacheEntry(Generic[V]):
    """
    Represents a cached value with metadata.

    Attributes:
        value: The cached value
        created_at: When the entry was created (epoch seconds from the clock)
        expires_at: When the entry expires, or None for no expiration
        access_count: Number of times the entry has been read
        last_accessed: When the entry was last read
    """

    def __init__(self, value: V, ttl: Optional[float] = None, clock: Optional[Clock] = None):
        """
        Initialize a cache entry with a value and optional TTL.

        Args:
            value: The value to cache
            ttl: Time-to-live in seconds, or None for no expiration
            clock: Time source (defaults to the system clock)
        """
        self._clock = clock or get_clock()
        self.value = value
        self.created_at = self._clock.timestamp()
        self.expires_at = None if ttl is None else self.created_at + ttl
        self.access_count = 0
        self.last_accessed = self.created_at

    def is_expired(self, now: Optional[float] = None) -> bool:
        """
        Check if the entry has expired.

        Args:
            now: Current epoch time, read from the clock when omitted

        Returns:
            True if the entry has expired
        """
        if self.expires_at is None:
            return False
        current = self._clock.timestamp() if now is None else now
        return current >= self.expires_at

    def access(self) -> None:
        """Record a read of this entry."""
        self.access_count += 1
        self.last_accessed = self._clock.timestamp()

    def get_ttl(self) -> Optional[float]:
        """
        Get the remaining TTL in seconds.

        Returns:
            Remaining TTL, or None if the entry never expires
        """
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - self._clock.timestamp())
