"""
Tests for the progression service: idempotent ingestion, persistence with
optimistic versioning, degraded mode and per-user concurrency.
"""

import datetime
import unittest
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

from progression.common.clock import ManualClock
from progression.common.config import AppConfig, StorageConfig
from progression.common.exceptions import (
    ConflictError,
    DegradedModeWarning,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from progression.performance.difficulty import RecentPerformance
from progression.service import ProgressionService, create_progression_service, create_repositories
from progression.storage.base import StateRepository
from progression.storage.memory import MemoryLeaderboardRepository, MemoryStateRepository

START = datetime.datetime(2024, 1, 1, 9, 0, 0)


def make_event(attempt_id=None, user_id="user-1", is_correct=True, **overrides):
    event = {
        "attempt_id": attempt_id,
        "user_id": user_id,
        "challenge_id": "stoich-1",
        "challenge_type": "stoichiometry",
        "concepts": ["Stoichiometry"],
        "is_correct": is_correct,
        "score": 80.0,
        "time_elapsed_sec": 30.0,
    }
    event.update(overrides)
    return event


class OutageStateRepository(MemoryStateRepository):
    """In-memory repository that can be switched off."""

    def __init__(self):
        super().__init__()
        self.available = True

    def _check(self):
        if not self.available:
            raise StorageUnavailableError("connection refused")

    def load(self, user_id):
        self._check()
        return super().load(user_id)

    def save(self, user_id, data, expected_version):
        self._check()
        return super().save(user_id, data, expected_version)


class TestProgressionService(unittest.TestCase):
    """Test the service facade over in-memory storage."""

    def setUp(self):
        self.clock = ManualClock(START)
        self.config = AppConfig()
        self.state_repository = MemoryStateRepository()
        self.leaderboard_repository = MemoryLeaderboardRepository()
        self.service = self.build()

    def build(self, **overrides):
        kwargs = {
            "config": self.config,
            "clock": self.clock,
            "state_repository": self.state_repository,
            "leaderboard_repository": self.leaderboard_repository,
        }
        kwargs.update(overrides)
        return ProgressionService(**kwargs)

    def test_record_attempt(self):
        result = self.service.record_attempt(make_event("a-1"))
        self.assertFalse(result.duplicate)
        self.assertFalse(result.degraded)
        self.assertEqual(result.challenge_type, "stoichiometry")
        self.assertEqual(result.difficulty_level, 1)
        self.assertEqual(
            result.leaderboard_updates,
            ["challenge-masters", "overall-accuracy", "speed-demons", "streak-keepers", "weekly-champions"]
        )

        metrics = self.service.get_performance_metrics("user-1")
        self.assertEqual(metrics.total_challenges_completed, 1)
        self.assertFalse(metrics.stale)

    def test_replayed_attempt_is_noop(self):
        """Test that submitting the same attempt twice applies it once."""
        self.service.record_attempt(make_event("a-1"))
        result = self.service.record_attempt(make_event("a-1", is_correct=False))

        self.assertTrue(result.duplicate)
        metrics = self.service.get_performance_metrics("user-1")
        self.assertEqual(metrics.total_challenges_completed, 1)
        self.assertEqual(metrics.overall_accuracy, 1.0)
        self.assertEqual(self.state_repository.load("user-1").version, 1)

    def test_invalid_attempt_touches_nothing(self):
        with self.assertRaises(ValidationError):
            self.service.record_attempt(make_event("a-1", time_elapsed_sec=-3))

        self.assertEqual(self.service.known_users(), [])
        self.assertEqual(self.state_repository.user_ids(), [])
        self.assertEqual(self.service.record_attempt(make_event("a-1")).duplicate, False)

    def test_state_is_persisted_and_hydrated(self):
        for index in range(3):
            self.service.record_attempt(make_event(f"a-{index}"))
        self.service.record_login("user-1", START)

        stored = self.state_repository.load("user-1")
        self.assertEqual(stored.version, 4)
        self.assertEqual(set(stored.data), {"performance", "difficulty", "streak"})

        restarted = self.build()
        self.assertEqual(restarted.get_performance_metrics("user-1").total_challenges_completed, 3)
        self.assertEqual(restarted.get_recommended_difficulty("user-1", "stoichiometry"), 2)
        self.assertEqual(restarted.get_streak_stats("user-1").current_streak, 1)
        self.assertEqual(restarted.get_user_rank("user-1", "streak-keepers"), 1)

    def test_conflict_is_reapplied(self):
        """Test that a lost version race reloads and reapplies the attempt."""
        self.service.record_attempt(make_event("a-1"))

        other = self.build()
        other.record_attempt(make_event("a-2"))

        result = self.service.record_attempt(make_event("a-3"))
        self.assertFalse(result.duplicate)
        self.assertEqual(self.service.get_performance_metrics("user-1").total_challenges_completed, 3)
        self.assertEqual(self.state_repository.load("user-1").version, 3)

    def test_conflict_retries_exhausted(self):
        repository = MagicMock(spec=StateRepository)
        repository.load.return_value = None
        repository.save.side_effect = ConflictError("UserState", "user-1", 0, 1)
        service = self.build(state_repository=repository)

        with self.assertRaises(ConflictError):
            service.record_attempt(make_event("a-1"))
        self.assertEqual(repository.save.call_count, 1 + self.config.storage.max_conflict_retries)
        self.assertEqual(service.known_users(), [])

        with self.assertRaises(ConflictError):
            service.record_attempt(make_event("a-1"))

    def test_degraded_mode(self):
        """Test that unavailable storage keeps serving in-memory state, flagged stale."""
        repository = MagicMock(spec=StateRepository)
        repository.load.side_effect = StorageUnavailableError("connection refused")
        repository.save.side_effect = StorageUnavailableError("connection refused")
        service = self.build(state_repository=repository)

        with self.assertWarns(DegradedModeWarning):
            result = service.record_attempt(make_event("a-1"))
        self.assertTrue(result.degraded)
        self.assertTrue(service.is_degraded("user-1"))

        with self.assertWarns(DegradedModeWarning):
            metrics = service.get_performance_metrics("user-1")
        self.assertTrue(metrics.stale)
        self.assertEqual(metrics.total_challenges_completed, 1)

        repository.load.side_effect = None
        repository.load.return_value = None
        repository.save.side_effect = None
        repository.save.return_value = 1

        result = service.record_attempt(make_event("a-2"))
        self.assertFalse(result.degraded)
        self.assertFalse(service.is_degraded("user-1"))
        metrics = service.get_performance_metrics("user-1")
        self.assertFalse(metrics.stale)
        self.assertEqual(metrics.total_challenges_completed, 2)

    def test_outage_changes_merge_with_stored_state(self):
        """Test that work done while storage was down survives hydration from a stored record."""
        repository = OutageStateRepository()
        self.build(state_repository=repository).record_attempt(make_event("a-0"))

        service = self.build(state_repository=repository)
        repository.available = False
        with self.assertWarns(DegradedModeWarning):
            service.record_attempt(make_event("a-1"))
        with self.assertWarns(DegradedModeWarning):
            service.record_attempt(make_event("a-2", is_correct=False))
        with self.assertWarns(DegradedModeWarning):
            service.record_login("user-1", START)

        repository.available = True
        result = service.record_attempt(make_event("a-3"))
        self.assertFalse(result.degraded)

        metrics = service.get_performance_metrics("user-1")
        self.assertEqual(metrics.total_challenges_completed, 4)
        self.assertAlmostEqual(metrics.overall_accuracy, 0.75)
        self.assertEqual(service.get_streak_stats("user-1").current_streak, 1)

        stored = repository.load("user-1")
        self.assertEqual(stored.version, 2)
        self.assertEqual(stored.data["performance"]["total_attempts"], 4)
        self.assertEqual(stored.data["streak"]["current_streak"], 1)

        restarted = self.build(state_repository=repository)
        self.assertEqual(restarted.get_performance_metrics("user-1").total_challenges_completed, 4)

    def test_outage_after_hydration_survives_conflict(self):
        """Test that unsaved changes are replayed when another writer moved the version on."""
        repository = OutageStateRepository()
        service = self.build(state_repository=repository)
        service.record_attempt(make_event("a-1"))

        repository.available = False
        with self.assertWarns(DegradedModeWarning):
            service.record_attempt(make_event("a-2"))
        repository.available = True

        other = self.build(state_repository=repository)
        other.record_attempt(make_event("b-1"))

        service.record_attempt(make_event("a-3"))
        self.assertEqual(service.get_performance_metrics("user-1").total_challenges_completed, 4)
        self.assertEqual(repository.load("user-1").data["performance"]["total_attempts"], 4)

    def test_evict_idle_users(self):
        self.service.record_attempt(make_event("a-1"))
        self.service.record_login("user-1", START)
        self.clock.advance(minutes=10)
        self.service.record_attempt(make_event("b-1", user_id="user-2"))
        self.clock.advance(minutes=25)

        self.assertEqual(self.service.evict_idle(), 1)
        self.assertEqual(self.service.known_users(), ["user-2"])
        self.assertNotIn("user-1", self.service.streaks.known_users())

        self.assertEqual(self.service.get_performance_metrics("user-1").total_challenges_completed, 1)
        self.assertEqual(self.service.get_streak_stats("user-1").current_streak, 1)
        self.assertEqual(self.service.evict_idle(), 0)

    def test_eviction_disabled(self):
        self.service.record_attempt(make_event("a-1"))
        self.clock.advance(days=1)
        self.assertEqual(self.service.evict_idle(max_idle_seconds=0), 0)
        self.assertEqual(self.service.known_users(), ["user-1"])

    def test_unsaved_users_are_not_evicted(self):
        repository = OutageStateRepository()
        service = self.build(state_repository=repository)
        service.record_attempt(make_event("a-1"))

        repository.available = False
        with self.assertWarns(DegradedModeWarning):
            service.record_attempt(make_event("a-2"))
        self.clock.advance(hours=1)
        self.assertEqual(service.evict_idle(), 0)
        self.assertEqual(service.known_users(), ["user-1"])

        repository.available = True
        service.record_attempt(make_event("a-3"))
        self.clock.advance(hours=1)
        self.assertEqual(service.evict_idle(), 1)
        self.assertEqual(service.get_performance_metrics("user-1").total_challenges_completed, 3)

    def test_leaderboard_storage_unavailable(self):
        repository = MagicMock(spec=MemoryLeaderboardRepository)
        repository.category_ids.side_effect = StorageUnavailableError("connection refused")
        repository.save_entry.side_effect = StorageUnavailableError("connection refused")
        service = self.build(leaderboard_repository=repository)

        with self.assertWarns(DegradedModeWarning):
            service.record_attempt(make_event("a-1"))
        self.assertEqual(service.get_user_rank("user-1", "challenge-masters"), 1)

    def test_record_login(self):
        result = self.service.record_login("user-1", START)
        self.assertTrue(result.changed)
        self.assertEqual(result.current_streak, 1)

        result = self.service.record_login("user-1", START + datetime.timedelta(hours=3))
        self.assertFalse(result.changed)

        for offset in (1, 2):
            result = self.service.record_login("user-1", START + datetime.timedelta(days=offset))
        self.assertEqual(result.current_streak, 3)
        self.assertEqual(result.new_milestones, ["Getting Started"])
        self.assertEqual(self.service.get_leaderboard("streak-keepers")[0].score, 3.0)

    def test_login_defaults_to_clock(self):
        self.service.record_login("user-1")
        self.clock.advance(days=1)
        self.assertEqual(self.service.record_login("user-1").current_streak, 2)

    def test_aware_login_time(self):
        aware = datetime.datetime(2024, 1, 1, 9, 0, tzinfo=datetime.timezone.utc)
        self.assertEqual(self.service.record_login("user-1", aware).current_streak, 1)

    def test_recovery_and_reset(self):
        self.assertTrue(self.service.use_streak_recovery("user-1", "earned"))
        self.assertFalse(self.service.use_streak_recovery("user-1"))
        self.assertEqual(self.state_repository.load("user-1").data["streak"]["recoveries_available"], 0)

        self.service.record_login("user-1", START)
        self.service.reset_streak("user-1")
        self.assertEqual(self.service.get_streak_stats("user-1").current_streak, 0)
        self.assertEqual(self.service.get_leaderboard("streak-keepers")[0].score, 0.0)

    def test_streak_queries(self):
        for offset in range(7):
            self.service.record_login("user-1", START + datetime.timedelta(days=offset))

        self.assertEqual(len(self.service.get_current_bonus("user-1")), 4)
        self.assertEqual(len(self.service.get_streak_milestones("user-1")), 6)
        self.assertEqual(self.service.get_recovery_options("user-1")["available_recoveries"], 1)

    def test_difficulty_operations(self):
        self.assertEqual(self.service.get_recommended_difficulty("user-1", "gas_test"), 1)
        self.assertEqual(self.service.get_difficulty_levels("user-1"), {})

        result = self.service.adjust_difficulty_real_time(
            "user-1", "gas_test", RecentPerformance(accuracy=0.95, streak=4)
        )
        self.assertTrue(result.changed)
        self.assertEqual(self.service.get_difficulty_levels("user-1"), {"gas_test": 2})
        self.assertEqual(self.state_repository.load("user-1").version, 1)

    def test_weak_areas_and_recommendations(self):
        for index in range(3):
            self.clock.advance(minutes=1)
            self.service.record_attempt(make_event(f"a-{index}", is_correct=False))

        areas = self.service.identify_weak_areas("user-1")
        self.assertEqual([area.concept for area in areas], ["Stoichiometry"])
        self.assertEqual(self.service.generate_recommendations("user-1")[0].id, "weak-area-Stoichiometry")
        self.assertEqual(self.service.generate_personalized_learning_path("user-1", 3).target_level, 3)

    def test_leaderboard_queries(self):
        self.service.record_attempt(make_event("a-1", user_id="alice"))
        self.service.record_attempt(make_event("a-2", user_id="bob", is_correct=False))

        board = self.service.get_leaderboard("overall-accuracy")
        self.assertEqual([entry.user_id for entry in board], ["alice", "bob"])
        self.assertEqual(self.service.get_user_rank("bob", "overall-accuracy"), 2)
        self.assertEqual(len(self.service.get_user_ranking_context("bob", "overall-accuracy", 1)), 2)
        self.assertEqual(len(self.service.get_leaderboard_categories()), 5)
        with self.assertRaises(NotFoundError):
            self.service.get_user_rank("bob", "no-such-board")

    def test_leaderboards_survive_restart(self):
        self.service.record_attempt(make_event("a-1", user_id="alice"))
        restarted = self.build()
        self.assertEqual(restarted.get_user_rank("alice", "challenge-masters"), 1)

    def test_blank_user_rejected(self):
        with self.assertRaises(ValidationError):
            self.service.record_login("  ")
        with self.assertRaises(ValidationError):
            self.service.get_performance_metrics("")

    def test_services_are_isolated(self):
        other = ProgressionService(config=self.config, clock=self.clock)
        self.service.record_attempt(make_event("a-1"))
        self.assertEqual(other.known_users(), [])
        self.assertEqual(other.get_performance_metrics("user-1").total_challenges_completed, 0)

    def test_concurrent_users(self):
        """Test that concurrent attempts for several users are all applied."""
        users = [f"user-{index}" for index in range(4)]
        events = [
            make_event(f"{user_id}-{index}", user_id=user_id, is_correct=index % 2 == 0)
            for user_id in users for index in range(25)
        ]

        with ThreadPoolExecutor(max_workers=8) as executor:
            results = list(executor.map(self.service.record_attempt, events))

        self.assertFalse(any(result.duplicate for result in results))
        for user_id in users:
            self.assertEqual(self.service.get_performance_metrics(user_id).total_challenges_completed, 25)
            self.assertEqual(self.state_repository.load(user_id).version, 25)
        self.assertEqual(self.service.leaderboard.size("challenge-masters"), 4)

    def test_concurrent_replays(self):
        events = [make_event("same-attempt") for _ in range(10)]
        with ThreadPoolExecutor(max_workers=5) as executor:
            results = list(executor.map(self.service.record_attempt, events))

        self.assertEqual(sum(1 for result in results if not result.duplicate), 1)
        self.assertEqual(self.service.get_performance_metrics("user-1").total_challenges_completed, 1)


class TestServiceFactory(unittest.TestCase):
    """Test building services from configuration."""

    def test_memory_backend(self):
        state_repository, leaderboard_repository = create_repositories(AppConfig())
        self.assertIsInstance(state_repository, MemoryStateRepository)
        self.assertIsInstance(leaderboard_repository, MemoryLeaderboardRepository)

    def test_create_progression_service(self):
        clock = ManualClock(START)
        service = create_progression_service(AppConfig(), clock)
        self.assertIs(service.clock, clock)
        self.assertEqual(service.state_repository.name, "memory")

    def test_custom_retry_budget(self):
        config = AppConfig(storage=StorageConfig(max_conflict_retries=0))
        repository = MagicMock(spec=StateRepository)
        repository.load.return_value = None
        repository.save.side_effect = ConflictError("UserState", "user-1", 0, 1)
        service = ProgressionService(config=config, clock=ManualClock(START), state_repository=repository)

        with self.assertRaises(ConflictError):
            service.record_attempt(make_event("a-1"))
        self.assertEqual(repository.save.call_count, 1)
