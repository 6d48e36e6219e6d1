"""
Recommendations Package

Prioritized next actions and personalized learning paths.
"""

from progression.recommendations.composer import RecommendationComposer
from progression.recommendations.models import LearningPath, LearningPathNode, Recommendation

__all__ = ['LearningPath', 'LearningPathNode', 'Recommendation', 'RecommendationComposer']
