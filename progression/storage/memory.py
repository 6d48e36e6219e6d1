"""
In-memory storage collaborators, used by default and in tests.
"""

import copy
import threading
from collections import defaultdict
from typing import Any, Dict, List, Optional

from progression.common.exceptions import ConflictError
from progression.common.logger import app_logger
from progression.gamification.leaderboard import rank_key
from progression.gamification.models import LeaderboardEntry
from progression.storage.base import LeaderboardRepository, StateRepository, VersionedState

logger = app_logger.getChild("storage.memory")


class MemoryStateRepository(StateRepository):
    """Versioned state held in a dict; payloads are deep-copied in and out."""

    def __init__(self, name: str = "memory"):
        self._name = name
        self._states: Dict[str, VersionedState] = {}
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._name

    def load(self, user_id: str) -> Optional[VersionedState]:
        with self._lock:
            state = self._states.get(user_id)
            if state is None:
                return None
            return VersionedState(user_id, state.version, copy.deepcopy(state.data))

    def save(self, user_id: str, data: Dict[str, Any], expected_version: int) -> int:
        with self._lock:
            current = self._states.get(user_id)
            actual_version = current.version if current else 0
            if actual_version != expected_version:
                raise ConflictError("UserState", user_id, expected_version, actual_version)
            version = actual_version + 1
            self._states[user_id] = VersionedState(user_id, version, copy.deepcopy(data))
            return version

    def delete(self, user_id: str) -> bool:
        with self._lock:
            return self._states.pop(user_id, None) is not None

    def user_ids(self) -> List[str]:
        with self._lock:
            return list(self._states)


class MemoryLeaderboardRepository(LeaderboardRepository):
    """Leaderboard entries held per category, one lock per category."""

    def __init__(self, name: str = "memory"):
        self._name = name
        self._entries: Dict[str, Dict[str, LeaderboardEntry]] = defaultdict(dict)
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._registry_lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._name

    def _lock_for(self, category_id: str) -> threading.Lock:
        with self._registry_lock:
            return self._locks[category_id]

    def save_entry(self, entry: LeaderboardEntry) -> bool:
        with self._lock_for(entry.category_id):
            with self._registry_lock:
                entries = self._entries[entry.category_id]
            current = entries.get(entry.user_id)
            if current is not None and entry.updated_at < current.updated_at:
                return False
            entries[entry.user_id] = LeaderboardEntry(
                user_id=entry.user_id,
                category_id=entry.category_id,
                score=entry.score,
                updated_at=entry.updated_at,
            )
            return True

    def load_entries(self, category_id: str) -> List[LeaderboardEntry]:
        with self._lock_for(category_id):
            with self._registry_lock:
                entries = list(self._entries.get(category_id, {}).values())
        return sorted(entries, key=rank_key)

    def category_ids(self) -> List[str]:
        with self._registry_lock:
            return [category_id for category_id, entries in self._entries.items() if entries]
