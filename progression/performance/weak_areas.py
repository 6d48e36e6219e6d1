"""
Weak Area Identification

Turns aggregated concept statistics into a ranked list of weak areas with
static remediation advice.
"""

import datetime
from typing import Dict, List, Optional, Tuple

from progression.common.clock import Clock, get_clock
from progression.common.config import PerformanceConfig, get_config
from progression.common.logger import app_logger
from progression.performance.aggregator import PerformanceAggregator
from progression.performance.models import ConceptPerformance, Priority, Trend, WeakArea

logger = app_logger.getChild("performance.weak_areas")

HIGH_PRIORITY_ACCURACY = 0.4
MEDIUM_PRIORITY_ACCURACY = 0.6

# Keyword -> concept category; first match wins
_CATEGORY_KEYWORDS: Tuple[Tuple[str, str], ...] = (
    ("stoichiometr", "calculation"),
    ("molar", "calculation"),
    ("equation", "calculation"),
    ("concentration", "calculation"),
    ("data", "calculation"),
    ("graph", "calculation"),
    ("gas", "identification"),
    ("ion", "identification"),
    ("flame", "identification"),
    ("precipit", "identification"),
    ("organic", "nomenclature"),
    ("iupac", "nomenclature"),
    ("isomer", "nomenclature"),
    ("naming", "nomenclature"),
    ("lab", "procedure"),
    ("safety", "procedure"),
    ("titration", "procedure"),
)

RECOMMENDED_ACTIONS: Dict[str, List[str]] = {
    "calculation": [
        "Work through a balanced example step by step before attempting new problems",
        "Write the mole ratio explicitly for every calculation",
        "Check units at each step of the calculation",
    ],
    "identification": [
        "Review the table of characteristic tests and observations",
        "Practice matching observations to ions and gases with flashcards",
    ],
    "nomenclature": [
        "Revisit the IUPAC rules for the longest chain and substituent order",
        "Name simple structures first, then add functional groups",
    ],
    "procedure": [
        "Rehearse the procedure order before timed attempts",
        "Review the safety precautions for each step",
    ],
    "general": [
        "Review fundamental concepts",
        "Practice with easier difficulty levels",
        "Use hints more strategically",
    ],
}


def concept_category(concept: str) -> str:
    """Static category for a concept name."""
    folded = concept.casefold()
    for keyword, category in _CATEGORY_KEYWORDS:
        if keyword in folded:
            return category
    return "general"


def _ranking_key(area: WeakArea) -> Tuple[float, float]:
    recency = area.last_attempt_at.timestamp() if area.last_attempt_at else float("-inf")
    return area.accuracy, -recency


class WeakAreaIdentifier:
    """
    Ranks a user's weak concepts.

    A concept is considered only with at least ``min_sample_size`` attempts
    and accuracy below ``weak_threshold``. Priority is HIGH below 0.4
    accuracy or on a declining trend, MEDIUM below 0.6 and LOW otherwise.
    LOW areas are reported only when attempted within ``recent_days``.
    """

    def __init__(
        self,
        aggregator: PerformanceAggregator,
        config: Optional[PerformanceConfig] = None,
        clock: Optional[Clock] = None
    ):
        self.aggregator = aggregator
        self.config = config or get_config().performance
        self.clock = clock or get_clock()

    def identify_weak_areas(self, user_id: str) -> List[WeakArea]:
        """
        Weak areas for a user, weakest first.

        Ties in accuracy are broken by the most recent attempt first.

        Args:
            user_id: User identifier

        Returns:
            Snapshot list of weak areas; empty for an unknown user
        """
        now = self.clock.now()
        weak_areas = []
        for concept in self.aggregator.concept_states(user_id):
            area = self._evaluate(concept, now)
            if area is not None:
                weak_areas.append(area)

        weak_areas.sort(key=_ranking_key)
        logger.debug(f"Identified {len(weak_areas)} weak areas for user {user_id}")
        return weak_areas

    def _evaluate(self, concept: ConceptPerformance, now: datetime.datetime) -> Optional[WeakArea]:
        if concept.attempts < self.config.min_sample_size:
            return None
        accuracy = concept.accuracy
        if accuracy >= self.config.weak_threshold:
            return None

        priority = self.priority_for(accuracy, concept.trend)
        if priority is Priority.LOW and not self._recently_attempted(concept, now):
            return None

        challenge_type, realm_id = concept.weakest_pair()
        return WeakArea(
            concept=concept.concept,
            challenge_type=challenge_type,
            realm_id=realm_id,
            accuracy=accuracy,
            average_attempts=concept.average_attempts,
            priority=priority,
            recommended_actions=list(RECOMMENDED_ACTIONS[concept_category(concept.concept)]),
            trend=concept.trend,
            last_attempt_at=concept.last_attempt_at,
        )

    @staticmethod
    def priority_for(accuracy: float, trend: Trend) -> Priority:
        """Priority for a qualifying concept."""
        if accuracy < HIGH_PRIORITY_ACCURACY or trend is Trend.DECLINING:
            return Priority.HIGH
        if accuracy < MEDIUM_PRIORITY_ACCURACY:
            return Priority.MEDIUM
        return Priority.LOW

    def _recently_attempted(self, concept: ConceptPerformance, now: datetime.datetime) -> bool:
        if concept.last_attempt_at is None:
            return False
        return now - concept.last_attempt_at <= datetime.timedelta(days=self.config.recent_days)
