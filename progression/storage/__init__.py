"""
Storage Package

Versioned per-user state and leaderboard persistence. The Redis
implementations live in ``progression.storage.redis``.
"""

from progression.storage.base import LeaderboardRepository, StateRepository, VersionedState
from progression.storage.memory import MemoryLeaderboardRepository, MemoryStateRepository

__all__ = [
    'LeaderboardRepository',
    'MemoryLeaderboardRepository',
    'MemoryStateRepository',
    'StateRepository',
    'VersionedState',
]
