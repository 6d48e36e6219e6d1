"""
Tests for recommendations and personalized learning paths.
"""

import datetime
import unittest

from progression.common.clock import ManualClock
from progression.common.config import AppConfig
from progression.common.exceptions import ValidationError
from progression.performance.models import ChallengeType, ConceptSummary, PerformanceMetrics, RealmProgress, Trend
from progression.recommendations.composer import current_level, estimate_minutes, node_priority
from progression.recommendations.models import RecommendationType
from progression.service import ProgressionService

START = datetime.datetime(2024, 1, 1, 9, 0, 0)


def summary(concept, accuracy):
    return ConceptSummary(
        concept=concept, accuracy=accuracy, attempts=5, average_time=30.0,
        trend=Trend.STABLE, confidence_level=0.5
    )


class TestComposerHelpers(unittest.TestCase):
    """Test the pure scoring helpers."""

    def test_estimate_minutes(self):
        self.assertEqual(estimate_minutes(1), 15)
        self.assertEqual(estimate_minutes(5), 33)

    def test_current_level(self):
        self.assertEqual(current_level(PerformanceMetrics(user_id="u"), 0), 1)
        metrics = PerformanceMetrics(
            user_id="u", overall_accuracy=1.0, total_challenges_completed=10,
            realm_progress=[RealmProgress("mathmage-trials", "The Mathmage Trials", 5, 20.0, 80.0, 300.0)]
        )
        self.assertEqual(current_level(metrics, 7), 11)

    def test_node_priority(self):
        concepts = [summary("Stoichiometry", 0.4), summary("Gas Tests", 0.9)]
        self.assertEqual(node_priority(ChallengeType.STOICHIOMETRY, concepts), 10)
        self.assertEqual(node_priority(ChallengeType.GAS_TEST, concepts), 3)
        self.assertEqual(node_priority(ChallengeType.ORGANIC_NAMING, concepts), 5)
        self.assertEqual(node_priority(ChallengeType.EQUATION_BALANCE, [summary("stoichiometry", 0.6)]), 7)


class TestRecommendationComposer(unittest.TestCase):
    """Test recommendations composed from live component state."""

    def setUp(self):
        self.clock = ManualClock(START)
        self.service = ProgressionService(config=AppConfig(), clock=self.clock)
        self.composer = self.service.composer

    def attempt(self, concept, challenge_type, is_correct, challenge_id=None, realm_id=None):
        self.clock.advance(minutes=1)
        self.service.record_attempt({
            "user_id": "user-1",
            "challenge_id": challenge_id or f"{challenge_type}-1",
            "challenge_type": challenge_type,
            "concepts": [concept],
            "is_correct": is_correct,
            "score": 90 if is_correct else 10,
            "time_elapsed_sec": 40,
            "realm_id": realm_id,
        })

    def test_new_user_has_no_recommendations(self):
        self.assertEqual(self.composer.generate_recommendations("user-1"), [])

    def test_weak_area_and_streak(self):
        for _ in range(3):
            self.attempt("Stoichiometry", "stoichiometry", False)
        self.service.record_login("user-1", START)

        recommendations = self.composer.generate_recommendations("user-1")
        self.assertEqual([r.id for r in recommendations], ["weak-area-Stoichiometry", "streak-maintenance"])

        practice, streak = recommendations
        self.assertEqual(practice.priority, 10)
        self.assertEqual(practice.challenge_id, "stoichiometry-1")
        self.assertEqual(practice.estimated_time, 15)
        self.assertIs(practice.type, RecommendationType.CHALLENGE)
        self.assertEqual(streak.priority, 8)
        self.assertEqual(streak.expected_benefit, "Maintain 1-day streak")

    def test_strong_concept_recommends_advancement(self):
        for _ in range(5):
            self.attempt("Chemical Equations", "equation_balance", True)

        recommendations = self.composer.generate_recommendations("user-1")
        self.assertEqual([r.id for r in recommendations], ["advance-Chemical Equations"])
        self.assertEqual(recommendations[0].priority, 6)

    def test_recommendation_reads_create_no_state(self):
        for _ in range(3):
            self.attempt("Stoichiometry", "stoichiometry", False)
        before = self.service.difficulty.get_levels("user-1")
        self.composer.generate_recommendations("user-1")
        self.composer.generate_personalized_learning_path("user-1", 5)
        self.assertEqual(self.service.difficulty.get_levels("user-1"), before)

    def test_learning_path_for_new_user(self):
        path = self.composer.generate_personalized_learning_path("user-1", 5)

        self.assertEqual(path.current_level, 1)
        self.assertEqual(path.target_level, 5)
        self.assertEqual(len(path.path), 6)
        self.assertEqual(path.estimated_completion_time, 90)
        self.assertEqual(path.path[0].realm_id, "mathmage-trials")
        self.assertTrue(all(node.priority == 5 for node in path.path))
        self.assertEqual(path.last_updated, START)

    def test_learning_path_puts_weak_concepts_first(self):
        self.attempt("Lab Techniques", "lab_procedure", False)
        self.attempt("Lab Techniques", "lab_procedure", False)

        path = self.composer.generate_personalized_learning_path("user-1", 5)
        self.assertEqual(path.path[0].challenge_type, "lab_procedure")
        self.assertEqual(path.path[0].priority, 10)

    def test_learning_path_skips_completed_realms(self):
        for index in range(20):
            self.attempt("Stoichiometry", "stoichiometry", True,
                         challenge_id=f"stoich-{index}", realm_id="mathmage-trials")

        path = self.composer.generate_personalized_learning_path("user-1", 5)
        self.assertNotIn("mathmage-trials", {node.realm_id for node in path.path})
        self.assertEqual(len(path.path), 4)
        self.assertEqual(path.adaptation_history[-1].challenge_type, "stoichiometry")

    def test_learning_path_uses_current_difficulty(self):
        for _ in range(3):
            self.attempt("Chemical Equations", "equation_balance", True)

        path = self.composer.generate_personalized_learning_path("user-1", 5)
        node = next(node for node in path.path if node.challenge_type == "equation_balance")
        self.assertEqual(node.difficulty, 2)
        self.assertEqual(node.challenge_id, "equation_balance-2")

    def test_invalid_target_level(self):
        with self.assertRaises(ValidationError):
            self.composer.generate_personalized_learning_path("user-1", 0)
