"""
Storage Collaborator Interfaces

Per-user keyed load/save of progression state with optimistic versioning,
and strictly serialized per-category leaderboard persistence.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from progression.gamification.models import LeaderboardEntry


@dataclass
class VersionedState:
    """
    A user's stored state and the version it was saved at.

    ``data`` holds the ``performance``, ``difficulty`` and ``streak``
    snapshots produced by the components. Version 0 means never saved.
    """
    user_id: str
    version: int
    data: Dict[str, Any] = field(default_factory=dict)


class StateRepository(ABC):
    """
    Versioned per-user state store.

    Implementations must raise ``ConflictError`` from ``save`` when the stored
    version differs from ``expected_version`` and ``StorageUnavailableError``
    when the backend cannot be reached.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Get the name of this repository."""
        pass

    @abstractmethod
    def load(self, user_id: str) -> Optional[VersionedState]:
        """
        Load a user's state.

        Args:
            user_id: User identifier

        Returns:
            The stored state, or None if the user has never been saved
        """
        pass

    @abstractmethod
    def save(self, user_id: str, data: Dict[str, Any], expected_version: int) -> int:
        """
        Save a user's state if nobody saved since ``expected_version``.

        Args:
            user_id: User identifier
            data: State payload
            expected_version: Version the caller loaded (0 for a new user)

        Returns:
            The new version
        """
        pass

    @abstractmethod
    def delete(self, user_id: str) -> bool:
        """Remove a user's state, returning True if it existed."""
        pass

    @abstractmethod
    def user_ids(self) -> List[str]:
        """Every stored user id."""
        pass


class LeaderboardRepository(ABC):
    """
    Persistent leaderboard entries.

    Writes for one category are serialized; a write older than the stored
    entry for the same user is refused.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Get the name of this repository."""
        pass

    @abstractmethod
    def save_entry(self, entry: LeaderboardEntry) -> bool:
        """
        Store an entry unless a newer one exists for the same user.

        Returns:
            True if the entry was written
        """
        pass

    @abstractmethod
    def load_entries(self, category_id: str) -> List[LeaderboardEntry]:
        """Every stored entry of a category, best first."""
        pass

    @abstractmethod
    def category_ids(self) -> List[str]:
        """Categories with stored entries."""
        pass
