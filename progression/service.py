"""
Progression Service

Explicitly constructed facade over the ingestor, aggregator, weak-area
identifier, difficulty controller, streak engine, leaderboard ranker and
recommendation composer, with injected clock and storage collaborators.

Every write for a user runs under that user's session lock: the state is
hydrated from the repository on first touch, the transition is applied in
memory, and the result is saved against the version that was loaded. A
version conflict reloads the stored state and reapplies the transition. When
the repository is unavailable the service keeps working on in-memory state
and flags reads as stale until a save succeeds again.
"""

import warnings
import datetime
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, TypeVar, Union

from progression.common.cache import CacheBackend
from progression.common.clock import Clock, get_clock
from progression.common.config import AppConfig, get_config
from progression.common.exceptions import (
    ConflictError,
    DegradedModeWarning,
    DuplicateError,
    StorageUnavailableError,
    ValidationError,
)
from progression.common.logger import app_logger, log_execution_time
from progression.common.serialization import SerializableMixin
from progression.common.state_store import StateStore
from progression.common.utils import to_naive_local
from progression.gamification.leaderboard import LeaderboardRanker
from progression.gamification.models import (
    Bonus,
    LeaderboardCategory,
    LeaderboardEntry,
    LeaderboardMetric,
    Milestone,
    RecoveryType,
    StreakStats,
)
from progression.gamification.streaks import StreakEngine
from progression.performance.aggregator import PerformanceAggregator
from progression.performance.difficulty import (
    AdjustmentResult,
    ChallengeTypeLike,
    DifficultyController,
    RecentPerformance,
)
from progression.performance.events import AttemptEvent
from progression.performance.ingestor import AttemptIngestor
from progression.performance.models import AttemptRecord, PerformanceMetrics, WeakArea
from progression.performance.weak_areas import WeakAreaIdentifier
from progression.recommendations.composer import RecommendationComposer
from progression.recommendations.models import LearningPath, Recommendation
from progression.storage.base import LeaderboardRepository, StateRepository, VersionedState
from progression.storage.memory import MemoryLeaderboardRepository, MemoryStateRepository

logger = app_logger.getChild("service")

T = TypeVar('T')


@dataclass
class _UserSession:
    """
    Storage bookkeeping for one user.

    ``pending`` holds the transitions applied since the last successful save,
    in order. They are replayed whenever stored state replaces the in-memory
    state.
    """
    version: int = 0
    hydrated: bool = False
    degraded: bool = False
    pending: List[Callable[[], Any]] = field(default_factory=list)
    last_seen: Optional[datetime.datetime] = None

    @property
    def evictable(self) -> bool:
        return self.hydrated and not self.degraded and not self.pending


@dataclass
class AttemptResult(SerializableMixin):
    """
    Outcome of submitting one attempt.

    ``duplicate`` is True when the attempt id had already been applied; the
    call then changed nothing. ``degraded`` is True when the result could not
    be persisted and lives only in memory.
    """
    attempt_id: str
    user_id: str
    duplicate: bool = False
    challenge_type: Optional[str] = None
    difficulty_level: Optional[int] = None
    difficulty_changed: bool = False
    leaderboard_updates: List[str] = field(default_factory=list)
    degraded: bool = False

    __serializable_fields__ = [
        "attempt_id", "user_id", "duplicate", "challenge_type", "difficulty_level",
        "difficulty_changed", "leaderboard_updates", "degraded"
    ]


@dataclass
class LoginResult(SerializableMixin):
    """Outcome of recording one login."""
    user_id: str
    changed: bool
    current_streak: int
    longest_streak: int
    streak_multiplier: float
    recovered: bool = False
    reset: bool = False
    new_milestones: List[str] = field(default_factory=list)
    degraded: bool = False

    __serializable_fields__ = [
        "user_id", "changed", "current_streak", "longest_streak", "streak_multiplier",
        "recovered", "reset", "new_milestones", "degraded"
    ]


class ProgressionService:
    """
    Entry point for every inbound event and outbound query of the engine.

    Example:
        service = ProgressionService(clock=ManualClock())
        service.record_attempt({...})
        metrics = service.get_performance_metrics("user-1")
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        clock: Optional[Clock] = None,
        state_repository: Optional[StateRepository] = None,
        leaderboard_repository: Optional[LeaderboardRepository] = None,
        metrics_cache: Optional[CacheBackend] = None
    ):
        """
        Initialize the service and its components.

        Args:
            config: Application configuration
            clock: Clock shared by every time-dependent component
            state_repository: Versioned per-user state store (in-memory by default)
            leaderboard_repository: Leaderboard entry store (in-memory by default)
            metrics_cache: Cache backend for performance rollups
        """
        self.config = config or get_config()
        self.clock = clock or get_clock()
        self.state_repository = state_repository or MemoryStateRepository()
        self.leaderboard_repository = leaderboard_repository or MemoryLeaderboardRepository()

        shards = self.config.storage.lock_shards
        self.ingestor = AttemptIngestor(self.config.performance, self.clock)
        self.aggregator = PerformanceAggregator(
            self.config.performance, metrics_cache, self.config.cache, self.clock, shards
        )
        self.weak_areas = WeakAreaIdentifier(self.aggregator, self.config.performance, self.clock)
        self.difficulty = DifficultyController(self.config.difficulty, self.clock, shards)
        self.streaks = StreakEngine(self.config.streak, self.clock, shards)
        self.leaderboard = LeaderboardRanker(self.config.leaderboard, self.clock)
        self.composer = RecommendationComposer(
            self.aggregator, self.weak_areas, self.difficulty, self.streaks, self.clock
        )

        self._sessions: StateStore[str, _UserSession] = StateStore(
            lambda user_id: _UserSession(), shards=shards, name="sessions"
        )
        self.load_leaderboards()

        logger.info(
            f"Progression service ready (state: {self.state_repository.name}, "
            f"leaderboards: {self.leaderboard_repository.name})"
        )

    # Storage plumbing

    def _snapshot(self, user_id: str) -> Dict[str, Any]:
        return {
            "performance": self.aggregator.snapshot(user_id),
            "difficulty": self.difficulty.snapshot(user_id),
            "streak": self.streaks.snapshot(user_id),
        }

    def _restore(
        self,
        user_id: str,
        session: _UserSession,
        stored: Optional[VersionedState],
        replace: bool = False
    ) -> None:
        """
        Load stored state into the components, then replay unsaved changes.

        With ``replace`` a missing record also clears the in-memory state;
        otherwise in-memory state for a never-saved user is kept, and already
        holds the unsaved changes.
        """
        session.hydrated = True
        if stored is None and not replace:
            return
        data = stored.data if stored is not None else {}
        self.aggregator.restore(user_id, data.get("performance"))
        self.difficulty.restore(user_id, data.get("difficulty"))
        self.streaks.restore(user_id, data.get("streak"))
        session.version = stored.version if stored is not None else 0
        for change in session.pending:
            change()
        if session.pending:
            logger.info(
                f"Reapplied {len(session.pending)} unsaved changes for user {user_id} "
                f"on top of version {session.version}"
            )
        logger.debug(f"Hydrated user {user_id} at version {session.version}")

    def _hydrate(self, user_id: str, session: _UserSession) -> None:
        session.last_seen = self.clock.now()
        if session.hydrated:
            return
        try:
            stored = self.state_repository.load(user_id)
        except StorageUnavailableError as e:
            self._enter_degraded(user_id, session, e)
            return
        self._restore(user_id, session, stored)

    def _enter_degraded(self, user_id: str, session: Optional[_UserSession], error: Exception) -> None:
        if session is not None:
            session.degraded = True
        message = f"Operating on in-memory state for user {user_id}: {error}"
        logger.warning(message)
        warnings.warn(message, DegradedModeWarning, stacklevel=3)

    def _commit(self, user_id: str, session: _UserSession, apply: Callable[[], T]) -> T:
        """
        Apply a transition and save it, reapplying on version conflicts.

        A transition that cannot be saved is kept in ``session.pending`` so
        that it survives the stored state being loaded over it later.

        Raises:
            ConflictError: when every retry lost the race
        """
        result = apply()
        conflicts = 0
        while True:
            try:
                session.version = self.state_repository.save(user_id, self._snapshot(user_id), session.version)
                session.hydrated = True
                session.degraded = False
                session.pending.clear()
                return result
            except StorageUnavailableError as e:
                session.pending.append(apply)
                self._enter_degraded(user_id, session, e)
                return result
            except ConflictError as e:
                conflicts += 1
                try:
                    stored = self.state_repository.load(user_id)
                except StorageUnavailableError as unavailable:
                    session.pending.append(apply)
                    self._enter_degraded(user_id, session, unavailable)
                    return result
                self._restore(user_id, session, stored, replace=True)

                if conflicts > self.config.storage.max_conflict_retries:
                    logger.error(f"Giving up on user {user_id} after {conflicts} version conflicts: {e}")
                    raise
                logger.warning(f"Version conflict for user {user_id}, reapplying (retry {conflicts})")
                result = apply()

    def _persist_entries(self, entries: Iterable[LeaderboardEntry]) -> None:
        for entry in entries:
            try:
                self.leaderboard_repository.save_entry(entry)
            except StorageUnavailableError as e:
                self._enter_degraded(entry.user_id, None, e)
                return

    def load_leaderboards(self) -> int:
        """
        Merge stored leaderboard entries into the in-memory rankings.

        Returns:
            Number of entries loaded
        """
        loaded = 0
        try:
            for category_id in self.leaderboard_repository.category_ids():
                loaded += self.leaderboard.load(category_id, self.leaderboard_repository.load_entries(category_id))
        except StorageUnavailableError as e:
            logger.warning(f"Leaderboards start empty, storage unavailable: {e}")
            return loaded
        if loaded:
            logger.info(f"Loaded {loaded} leaderboard entries")
        return loaded

    # Inbound events

    @log_execution_time(logger)
    def record_attempt(self, event: Union[AttemptEvent, Mapping[str, Any]]) -> AttemptResult:
        """
        Apply one challenge attempt.

        The event is validated before anything is touched. A replayed attempt
        id is a no-op reported with ``duplicate=True``.

        Args:
            event: An ``AttemptEvent`` or a raw mapping

        Returns:
            The attempt outcome

        Raises:
            ValidationError: if the event is invalid
            ConflictError: if the save kept losing version races
        """
        record = self.ingestor.parse(event)
        user_id = record.user_id

        with self._sessions.locked(user_id) as session:
            try:
                self.ingestor.claim(record)
            except DuplicateError:
                logger.info(f"Ignoring replayed attempt {record.attempt_id} for user {user_id}")
                return AttemptResult(attempt_id=record.attempt_id, user_id=user_id, duplicate=True)

            try:
                self._hydrate(user_id, session)
                adjustment = self._commit(user_id, session, lambda: self._apply_attempt(record))
            except (ConflictError, ValidationError):
                self.ingestor.forget(record.attempt_id)
                raise

            updates = self._update_leaderboards(user_id)
            return AttemptResult(
                attempt_id=record.attempt_id,
                user_id=user_id,
                challenge_type=record.challenge_type.value,
                difficulty_level=adjustment.new_level,
                difficulty_changed=adjustment.changed,
                leaderboard_updates=updates,
                degraded=session.degraded,
            )

    def _apply_attempt(self, record: AttemptRecord) -> AdjustmentResult:
        self.aggregator.record_attempt(record)
        return self.difficulty.record_outcome(
            record.user_id, record.challenge_type, record.is_correct, record.timestamp
        )

    def _update_leaderboards(self, user_id: str) -> List[str]:
        metrics = self.aggregator.get_performance_metrics(user_id)
        streak = self.streaks.get_state(user_id).current_streak
        written = self.leaderboard.update_from_metrics(user_id, metrics, streak)
        self._persist_entries(written.values())
        return sorted(written)

    @log_execution_time(logger)
    def record_login(self, user_id: str, timestamp: Optional[datetime.datetime] = None) -> LoginResult:
        """
        Apply one login to the user's streak.

        Args:
            user_id: User identifier
            timestamp: Login time (defaults to the clock)

        Returns:
            The login outcome
        """
        self._require_user(user_id)
        now = to_naive_local(timestamp) or self.clock.now()

        with self._sessions.locked(user_id) as session:
            self._hydrate(user_id, session)
            transition = self._commit(user_id, session, lambda: self.streaks.record_login(user_id, now))
            if transition.changed:
                self._update_streak_rankings(user_id, transition.state.current_streak)

            state = transition.state
            return LoginResult(
                user_id=user_id,
                changed=transition.changed,
                current_streak=state.current_streak,
                longest_streak=state.longest_streak,
                streak_multiplier=state.streak_multiplier,
                recovered=transition.recovered,
                reset=transition.reset,
                new_milestones=[milestone.title for milestone in transition.new_milestones],
                degraded=session.degraded,
            )

    def _update_streak_rankings(self, user_id: str, current_streak: int) -> None:
        now = self.clock.now()
        written = []
        for category in self.leaderboard.get_categories():
            if category.metric is LeaderboardMetric.STREAK:
                if self.leaderboard.update_score(category.id, user_id, current_streak, now):
                    written.append(LeaderboardEntry(user_id, category.id, float(current_streak), now))
        self._persist_entries(written)

    @staticmethod
    def _require_user(user_id: str) -> None:
        if not user_id or not str(user_id).strip():
            raise ValidationError("invalid user", {"user_id": "field required"})

    # Performance queries

    def _read(self, user_id: str) -> _UserSession:
        self._require_user(user_id)
        with self._sessions.locked(user_id) as session:
            self._hydrate(user_id, session)
            return session

    def get_performance_metrics(self, user_id: str) -> PerformanceMetrics:
        """Per-user rollup; flagged stale while the user's storage is unavailable."""
        session = self._read(user_id)
        metrics = self.aggregator.get_performance_metrics(user_id)
        if session.degraded and not metrics.stale:
            return metrics.as_stale()
        return metrics

    def identify_weak_areas(self, user_id: str) -> List[WeakArea]:
        self._read(user_id)
        return self.weak_areas.identify_weak_areas(user_id)

    def get_recommended_difficulty(self, user_id: str, challenge_type: ChallengeTypeLike) -> int:
        """Level for the next challenge of a type (starting level when new)."""
        self._read(user_id)
        return self.difficulty.get_current_difficulty(user_id, challenge_type)

    @log_execution_time(logger)
    def adjust_difficulty_real_time(
        self,
        user_id: str,
        challenge_type: ChallengeTypeLike,
        recent_performance: RecentPerformance
    ) -> AdjustmentResult:
        """Adjust a difficulty level from recent play and persist the change."""
        self._require_user(user_id)
        with self._sessions.locked(user_id) as session:
            self._hydrate(user_id, session)
            return self._commit(
                user_id, session,
                lambda: self.difficulty.adjust_difficulty_real_time(user_id, challenge_type, recent_performance)
            )

    def get_difficulty_levels(self, user_id: str) -> Dict[str, int]:
        self._read(user_id)
        return self.difficulty.get_levels(user_id)

    # Streak queries and commands

    def get_streak_stats(self, user_id: str) -> StreakStats:
        self._read(user_id)
        return self.streaks.get_streak_stats(user_id)

    def get_current_bonus(self, user_id: str) -> List[Bonus]:
        self._read(user_id)
        return self.streaks.get_current_bonus(user_id)

    def get_streak_milestones(self, user_id: str) -> List[Milestone]:
        self._read(user_id)
        return self.streaks.get_streak_milestones(user_id)

    def get_recovery_options(self, user_id: str) -> Dict[str, Any]:
        self._read(user_id)
        return self.streaks.get_recovery_options(user_id)

    def use_streak_recovery(self, user_id: str, recovery_type: Union[RecoveryType, str] = RecoveryType.FREE) -> bool:
        """Spend one recovery; False when none are left."""
        self._require_user(user_id)
        with self._sessions.locked(user_id) as session:
            self._hydrate(user_id, session)
            return self._commit(user_id, session, lambda: self.streaks.use_streak_recovery(user_id, recovery_type))

    def reset_streak(self, user_id: str) -> None:
        self._require_user(user_id)
        with self._sessions.locked(user_id) as session:
            self._hydrate(user_id, session)
            self._commit(user_id, session, lambda: self.streaks.reset_streak(user_id))
            self._update_streak_rankings(user_id, 0)

    # Leaderboard queries

    def get_leaderboard_categories(self) -> List[LeaderboardCategory]:
        return self.leaderboard.get_categories()

    def get_leaderboard(self, category_id: str, limit: Optional[int] = None) -> List[LeaderboardEntry]:
        return self.leaderboard.get_leaderboard(category_id, limit)

    def get_user_rank(self, user_id: str, category_id: str) -> Optional[int]:
        return self.leaderboard.get_user_rank(user_id, category_id)

    def get_user_ranking_context(self, user_id: str, category_id: str, count: int = 2) -> List[LeaderboardEntry]:
        return self.leaderboard.get_user_ranking_context(user_id, category_id, count)

    # Recommendations

    def generate_recommendations(self, user_id: str) -> List[Recommendation]:
        self._read(user_id)
        return self.composer.generate_recommendations(user_id)

    def generate_personalized_learning_path(self, user_id: str, target_level: int) -> LearningPath:
        self._read(user_id)
        return self.composer.generate_personalized_learning_path(user_id, target_level)

    # Maintenance hooks

    def known_users(self) -> List[str]:
        """Users with performance statistics in memory."""
        return self.aggregator.known_users()

    def is_degraded(self, user_id: str) -> bool:
        session = self._sessions.get(user_id)
        return bool(session and session.degraded)

    def evict_idle(self, max_idle_seconds: Optional[float] = None) -> int:
        """
        Drop the in-memory state of users idle for longer than
        ``max_idle_seconds`` (``storage.idle_eviction_seconds`` by default).

        Only users whose state is fully saved are evicted; the next request
        for an evicted user loads it back from storage. Leaderboard entries
        stay in memory.

        Returns:
            Number of users evicted
        """
        if max_idle_seconds is None:
            max_idle_seconds = self.config.storage.idle_eviction_seconds
        if max_idle_seconds <= 0:
            return 0

        cutoff = self.clock.now() - datetime.timedelta(seconds=max_idle_seconds)
        evicted = 0
        for user_id in self._sessions.keys():
            with self._sessions.locked(user_id, create=False) as session:
                if session is None or not session.evictable:
                    continue
                if session.last_seen is not None and session.last_seen > cutoff:
                    continue
                self.aggregator.restore(user_id, None)
                self.difficulty.restore(user_id, None)
                self.streaks.restore(user_id, None)
                self._sessions.delete(user_id)
                evicted += 1

        if evicted:
            logger.info(f"Evicted {evicted} idle users from memory")
        return evicted


def create_repositories(config: Optional[AppConfig] = None):
    """
    Build the storage collaborators named by ``storage.backend``.

    Returns:
        Tuple of (state repository, leaderboard repository)
    """
    config = config or get_config()
    if config.storage.backend == "redis":
        from progression.storage.redis import (
            RedisLeaderboardRepository,
            RedisStateRepository,
            get_redis_client,
        )
        client = get_redis_client(config.redis)
        prefix = config.storage.key_prefix
        return RedisStateRepository(client, prefix), RedisLeaderboardRepository(client, prefix)
    return MemoryStateRepository(), MemoryLeaderboardRepository()


def create_progression_service(
    config: Optional[AppConfig] = None,
    clock: Optional[Clock] = None
) -> ProgressionService:
    """Build a service with the repositories the configuration selects."""
    config = config or get_config()
    state_repository, leaderboard_repository = create_repositories(config)
    return ProgressionService(
        config=config,
        clock=clock,
        state_repository=state_repository,
        leaderboard_repository=leaderboard_repository,
    )
