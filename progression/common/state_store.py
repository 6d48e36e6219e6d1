"""
Partitioned State Store

Keyed mutable state guarded by sharded re-entrant locks. A key always maps
to the same shard, so all operations on one user's state are serialized while
users on other shards proceed in parallel. There is no global mutex.
"""

import threading
import zlib
from contextlib import contextmanager
from typing import Callable, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar

from progression.common.logger import app_logger

logger = app_logger.getChild("common.state_store")

K = TypeVar('K')
V = TypeVar('V')


class _Shard(Generic[K, V]):
    __slots__ = ("lock", "items")

    def __init__(self):
        self.lock = threading.RLock()
        self.items: Dict[K, V] = {}


class StateStore(Generic[K, V]):
    """
    In-memory keyed state with one lock per shard.

    Values are mutable objects owned by the store. Callers mutate them only
    inside ``locked(key)``, which holds the key's shard lock for the duration
    of the block.

    Example:
        store = StateStore(lambda user_id: StreakState(user_id=user_id))
        with store.locked("user-1") as state:
            state.current_streak += 1
    """

    def __init__(self, factory: Callable[[K], V], shards: int = 64, name: str = "state"):
        """
        Initialize the store.

        Args:
            factory: Builds the initial value for a key on first use
            shards: Number of lock shards
            name: Name used in log messages
        """
        if shards < 1:
            raise ValueError("shards must be at least 1")
        self._factory = factory
        self._shards: List[_Shard[K, V]] = [_Shard() for _ in range(shards)]
        self.name = name

    def _shard(self, key: K) -> _Shard[K, V]:
        # crc32 keeps shard assignment stable across processes, unlike hash()
        digest = zlib.crc32(repr(key).encode("utf-8"))
        return self._shards[digest % len(self._shards)]

    def lock_for(self, key: K) -> threading.RLock:
        """Return the lock guarding ``key``."""
        return self._shard(key).lock

    @contextmanager
    def locked(self, key: K, create: bool = True) -> Iterator[Optional[V]]:
        """
        Hold the key's shard lock and yield its value.

        Args:
            key: State key
            create: Build the value with the factory when absent; when False
                the block receives None for a missing key

        Yields:
            The stored value, or None
        """
        shard = self._shard(key)
        with shard.lock:
            value = shard.items.get(key)
            if value is None and create:
                value = self._factory(key)
                shard.items[key] = value
                logger.debug(f"{self.name}: created state for {key!r}")
            yield value

    def get(self, key: K) -> Optional[V]:
        """Get the value for ``key`` without creating it."""
        shard = self._shard(key)
        with shard.lock:
            return shard.items.get(key)

    def get_or_create(self, key: K) -> V:
        """Get the value for ``key``, building it on first use."""
        with self.locked(key) as value:
            return value

    def put(self, key: K, value: V) -> None:
        """Replace the value for ``key``."""
        shard = self._shard(key)
        with shard.lock:
            shard.items[key] = value

    def delete(self, key: K) -> bool:
        """
        Remove ``key``.

        Returns:
            True if the key existed
        """
        shard = self._shard(key)
        with shard.lock:
            return shard.items.pop(key, None) is not None

    def keys(self) -> List[K]:
        """Snapshot of all keys, taken shard by shard."""
        result: List[K] = []
        for shard in self._shards:
            with shard.lock:
                result.extend(shard.items.keys())
        return result

    def items(self) -> List[Tuple[K, V]]:
        """Snapshot of all (key, value) pairs, taken shard by shard."""
        result: List[Tuple[K, V]] = []
        for shard in self._shards:
            with shard.lock:
                result.extend(shard.items.items())
        return result

    def clear(self) -> None:
        """Remove every key."""
        for shard in self._shards:
            with shard.lock:
                shard.items.clear()

    def __contains__(self, key: K) -> bool:
        shard = self._shard(key)
        with shard.lock:
            return key in shard.items

    def __len__(self) -> int:
        return sum(len(shard.items) for shard in self._shards)
