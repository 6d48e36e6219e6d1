"""
Recommendation Composer

Thin combinator over the aggregator, weak-area identifier, difficulty
controller and streak engine. Produces a prioritized action list and a
personalized learning path. Reads only; no component state is created.
"""

import math
from typing import List, Optional, Sequence

from progression.common.clock import Clock, get_clock
from progression.common.exceptions import ValidationError
from progression.common.logger import app_logger
from progression.common.utils import mean
from progression.gamification.streaks import StreakEngine
from progression.performance.aggregator import PerformanceAggregator
from progression.performance.difficulty import DifficultyController
from progression.performance.models import REALMS, ChallengeType, ConceptSummary, PerformanceMetrics, Realm
from progression.performance.weak_areas import WeakAreaIdentifier
from progression.recommendations.models import (
    LearningPath,
    LearningPathNode,
    Recommendation,
    RecommendationType,
)

logger = app_logger.getChild("recommendations.composer")

# Realms a learning path walks through, in teaching order
LEARNING_PROGRESSION = ("mathmage-trials", "memory-labyrinth", "virtual-apprentice", "forest-of-isomers")

WEAK_AREA_LIMIT = 3
ADVANCEMENT_CANDIDATES = 2
ADVANCEMENT_ACCURACY = 0.85
ADVANCEMENT_PRIORITY = 6
ADVANCEMENT_MINUTES = 25
STREAK_PRIORITY = 8
STREAK_MINUTES = 10
REALM_COMPLETE_PERCENTAGE = 80
BASE_CHALLENGE_MINUTES = 15
UNKNOWN_NODE_PRIORITY = 5


def estimate_minutes(difficulty: int) -> int:
    """Expected minutes for a challenge at ``difficulty``."""
    return round(BASE_CHALLENGE_MINUTES * (1 + (difficulty - 1) * 0.3))


def current_level(metrics: PerformanceMetrics, current_streak: int) -> int:
    """
    Overall player level from a weighted blend of accuracy (40), volume
    (30, saturating at 10 challenges), realms visited (5 each) and streak
    (25, saturating at a week).
    """
    score = (
        metrics.overall_accuracy * 40
        + min(metrics.total_challenges_completed / 10, 1) * 30
        + len(metrics.realm_progress) * 5
        + min(current_streak / 7, 1) * 25
    )
    return math.floor(score / 10) + 1


def node_priority(challenge_type: ChallengeType, concepts: Sequence[ConceptSummary]) -> int:
    """Path priority from the user's accuracy on the concepts a type exercises."""
    related = {name.casefold() for name in challenge_type.related_concepts}
    relevant = [summary.accuracy for summary in concepts if summary.concept.casefold() in related]
    if not relevant:
        return UNKNOWN_NODE_PRIORITY

    accuracy = mean(relevant)
    if accuracy < 0.5:
        return 10
    if accuracy < 0.7:
        return 7
    if accuracy < 0.85:
        return 5
    return 3


class RecommendationComposer:
    """Combines component snapshots into recommendations and learning paths."""

    def __init__(
        self,
        aggregator: PerformanceAggregator,
        weak_areas: WeakAreaIdentifier,
        difficulty: DifficultyController,
        streaks: StreakEngine,
        clock: Optional[Clock] = None
    ):
        self.aggregator = aggregator
        self.weak_areas = weak_areas
        self.difficulty = difficulty
        self.streaks = streaks
        self.clock = clock or get_clock()

    def generate_recommendations(self, user_id: str) -> List[Recommendation]:
        """
        Prioritized next actions for a user.

        Practice for the top three weak areas (priority 10/7/4 by weak-area
        priority), advancement on strong concepts above 85% accuracy
        (priority 6) and a short streak-keeping challenge while a streak is
        active (priority 8).

        Args:
            user_id: User identifier

        Returns:
            Recommendations, highest priority first
        """
        metrics = self.aggregator.get_performance_metrics(user_id)
        streak = self.streaks.get_state(user_id).current_streak
        recommendations: List[Recommendation] = []

        for area in self.weak_areas.identify_weak_areas(user_id)[:WEAK_AREA_LIMIT]:
            challenge_type = ChallengeType.from_value(area.challenge_type) or ChallengeType.EQUATION_BALANCE
            level = self.difficulty.get_current_difficulty(user_id, challenge_type)
            recommendations.append(Recommendation(
                id=f"weak-area-{area.concept}",
                type=RecommendationType.CHALLENGE,
                title=f"Practice {area.concept}",
                description=f"Focus on {area.concept} at difficulty {level}",
                priority=area.priority.weight,
                estimated_time=estimate_minutes(level),
                expected_benefit=f"Improve {area.concept} accuracy by 15-25%",
                challenge_id=f"{challenge_type.value}-{level}",
                realm_id=area.realm_id,
                concepts=[area.concept],
            ))

        for concept in metrics.strongest_concepts[:ADVANCEMENT_CANDIDATES]:
            if concept.accuracy > ADVANCEMENT_ACCURACY:
                recommendations.append(Recommendation(
                    id=f"advance-{concept.concept}",
                    type=RecommendationType.CHALLENGE,
                    title=f"Advanced {concept.concept}",
                    description=f"Take on harder {concept.concept} challenges",
                    priority=ADVANCEMENT_PRIORITY,
                    estimated_time=ADVANCEMENT_MINUTES,
                    expected_benefit="Master advanced concepts and earn bonus XP",
                    concepts=[concept.concept],
                ))

        if streak > 0:
            level = self.difficulty.get_current_difficulty(user_id, ChallengeType.MEMORY_MATCH)
            recommendations.append(Recommendation(
                id="streak-maintenance",
                type=RecommendationType.CHALLENGE,
                title="Maintain Your Streak",
                description=f"Quick difficulty {level} challenge to keep your streak",
                priority=STREAK_PRIORITY,
                estimated_time=STREAK_MINUTES,
                expected_benefit=f"Maintain {streak}-day streak",
                challenge_id=f"{ChallengeType.MEMORY_MATCH.value}-{level}",
            ))

        recommendations.sort(key=lambda recommendation: -recommendation.priority)
        logger.debug(f"Composed {len(recommendations)} recommendations for user {user_id}")
        return recommendations

    def generate_personalized_learning_path(self, user_id: str, target_level: int) -> LearningPath:
        """
        Learning path through the realms the user has not yet mastered.

        Every realm below 80% completion contributes one node per challenge
        type at the user's current difficulty for that type.

        Args:
            user_id: User identifier
            target_level: Level the user is working towards

        Returns:
            The learning path

        Raises:
            ValidationError: if ``target_level`` is below 1
        """
        if target_level < 1:
            raise ValidationError("invalid learning path request", {"target_level": "must be at least 1"})

        metrics = self.aggregator.get_performance_metrics(user_id)
        concepts = self.aggregator.get_concept_performance(user_id)
        streak = self.streaks.get_state(user_id).current_streak
        progress = {item.realm_id: item for item in metrics.realm_progress}

        path: List[LearningPathNode] = []
        for realm_id in LEARNING_PROGRESSION:
            realm = REALMS[realm_id]
            realm_progress = progress.get(realm_id)
            if realm_progress is not None and realm_progress.completion_percentage >= REALM_COMPLETE_PERCENTAGE:
                continue
            path.extend(self._realm_nodes(user_id, realm, concepts))

        # Stable sort keeps realm order among equal keys
        path.sort(key=lambda node: (-node.priority, len(node.prerequisites)))

        learning_path = LearningPath(
            user_id=user_id,
            current_level=current_level(metrics, streak),
            target_level=target_level,
            path=path,
            estimated_completion_time=sum(node.estimated_time for node in path),
            adaptation_history=self.difficulty.get_adjustment_history(user_id),
            last_updated=self.clock.now(),
        )
        logger.debug(
            f"Learning path for user {user_id}: {len(path)} nodes, "
            f"level {learning_path.current_level} -> {target_level}"
        )
        return learning_path

    def _realm_nodes(self, user_id: str, realm: Realm, concepts: Sequence[ConceptSummary]) -> List[LearningPathNode]:
        nodes = []
        for challenge_type in realm.challenge_types:
            level = self.difficulty.get_current_difficulty(user_id, challenge_type)
            nodes.append(LearningPathNode(
                challenge_id=f"{challenge_type.value}-{level}",
                challenge_type=challenge_type.value,
                realm_id=realm.realm_id,
                difficulty=level,
                concepts=list(realm.concepts),
                prerequisites=list(realm.prerequisites),
                estimated_time=estimate_minutes(level),
                priority=node_priority(challenge_type, concepts),
            ))
        return nodes
