"""
Gamification Package

Login streaks with reward multipliers, milestones and recovery, and
concurrent leaderboard rankings.
"""

from progression.gamification.leaderboard import LeaderboardRanker
from progression.gamification.models import LeaderboardCategory, LeaderboardEntry, StreakState
from progression.gamification.streaks import StreakEngine

__all__ = [
    'LeaderboardCategory',
    'LeaderboardEntry',
    'LeaderboardRanker',
    'StreakEngine',
    'StreakState',
]
