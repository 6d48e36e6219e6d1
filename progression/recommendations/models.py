"""
Recommendation Models

Prioritized actions and personalized learning paths handed to dashboards.
"""

import enum
import datetime
from dataclasses import dataclass, field
from typing import List, Optional

from progression.common.serialization import SerializableMixin
from progression.performance.difficulty import DifficultyAdjustment


class RecommendationType(enum.Enum):
    """Kinds of recommended action."""
    CHALLENGE = "challenge"
    REALM = "realm"
    CONCEPT_REVIEW = "concept_review"
    DIFFICULTY_ADJUSTMENT = "difficulty_adjustment"


@dataclass
class Recommendation(SerializableMixin):
    """One suggested next action, ranked by ``priority`` (higher first)."""
    id: str
    type: RecommendationType
    title: str
    description: str
    priority: int
    estimated_time: int
    expected_benefit: str
    challenge_id: Optional[str] = None
    realm_id: Optional[str] = None
    concepts: List[str] = field(default_factory=list)

    __serializable_fields__ = [
        "id", "type", "title", "description", "priority", "estimated_time",
        "expected_benefit", "challenge_id", "realm_id", "concepts"
    ]


@dataclass
class LearningPathNode(SerializableMixin):
    """A challenge to play next, at the user's recommended difficulty."""
    challenge_id: str
    challenge_type: str
    realm_id: str
    difficulty: int
    concepts: List[str]
    prerequisites: List[str]
    estimated_time: int
    priority: int

    __serializable_fields__ = [
        "challenge_id", "challenge_type", "realm_id", "difficulty", "concepts",
        "prerequisites", "estimated_time", "priority"
    ]


@dataclass
class LearningPath(SerializableMixin):
    """
    Ordered challenges taking a user from their current level towards a target.

    Attributes:
        user_id: User identifier
        current_level: Level derived from accuracy, volume, realms and streak
        target_level: Level the user asked for
        path: Nodes, highest priority first
        estimated_completion_time: Sum of node estimates in minutes
        adaptation_history: Recent difficulty changes, oldest first
        last_updated: When the path was generated
    """
    user_id: str
    current_level: int
    target_level: int
    path: List[LearningPathNode]
    estimated_completion_time: int
    adaptation_history: List[DifficultyAdjustment]
    last_updated: datetime.datetime

    __serializable_fields__ = [
        "user_id", "current_level", "target_level", "path",
        "estimated_completion_time", "adaptation_history", "last_updated"
    ]
