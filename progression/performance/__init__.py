"""
Performance Package

Attempt ingestion, rolling per-concept statistics, weak-area identification
and the adaptive difficulty loop.
"""

from progression.performance.aggregator import PerformanceAggregator
from progression.performance.difficulty import DifficultyController, RecentPerformance
from progression.performance.events import AttemptEvent
from progression.performance.ingestor import AttemptIngestor
from progression.performance.models import AttemptRecord, ChallengeType, PerformanceMetrics, WeakArea
from progression.performance.weak_areas import WeakAreaIdentifier

__all__ = [
    'AttemptEvent',
    'AttemptIngestor',
    'AttemptRecord',
    'ChallengeType',
    'DifficultyController',
    'PerformanceAggregator',
    'PerformanceMetrics',
    'RecentPerformance',
    'WeakArea',
    'WeakAreaIdentifier',
]
