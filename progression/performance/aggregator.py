"""
Performance Aggregation

Maintains rolling per-user, per-concept statistics from attempt records and
serves cached per-user rollups to dashboards.

Each user's statistics live in a partitioned ``StateStore``; recording an
attempt and recomputing that user's rollup both run under the user's shard
lock, so the cached rollup can never be older than the last recorded attempt.
"""

import math
import warnings
import threading
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Sequence

from progression.common.cache import CacheBackend, MemoryCacheBackend
from progression.common.clock import Clock, get_clock
from progression.common.config import CacheConfig, PerformanceConfig, get_config
from progression.common.exceptions import CacheError, DegradedModeWarning, ValidationError
from progression.common.logger import app_logger
from progression.common.state_store import StateStore
from progression.common.utils import clamp, mean, safe_divide
from progression.performance.models import (
    REALMS,
    AttemptRecord,
    ChallengeType,
    ConceptPerformance,
    ConceptSummary,
    PairStats,
    PerformanceMetrics,
    RealmProgress,
    RealmStats,
    Trend,
    UserPerformance,
)

logger = app_logger.getChild("performance.aggregator")


def _in_range(value: Optional[float], upper: float) -> bool:
    return value is not None and math.isfinite(value) and 0 <= value <= upper


def compute_trend(window: Sequence[bool], delta: float = 0.1) -> Trend:
    """
    Compare the newest third of a window of outcomes with the oldest third.

    Args:
        window: Outcomes, oldest first
        delta: Minimum change in mean accuracy that counts as a trend

    Returns:
        IMPROVING, DECLINING, or STABLE when the window is too short to split
    """
    third = len(window) // 3
    if third == 0:
        return Trend.STABLE
    outcomes = [1.0 if outcome else 0.0 for outcome in window]
    change = mean(outcomes[-third:]) - mean(outcomes[:third])
    if change > delta:
        return Trend.IMPROVING
    if change < -delta:
        return Trend.DECLINING
    return Trend.STABLE


def compute_confidence(
    attempts: int,
    window: Sequence[bool],
    saturation: int = 20,
    sample_weight: float = 0.6,
    decay: float = 0.85
) -> float:
    """
    Confidence in a concept estimate, in [0, 1].

    A saturating sample-size term blended with recency-weighted accuracy,
    where each step back in the window weighs ``decay`` times the step after
    it.
    """
    sample_factor = min(1.0, safe_divide(attempts, saturation))
    weights = [decay ** age for age in range(len(window))]
    weighted_hits = sum(w for w, outcome in zip(weights, reversed(window)) if outcome)
    weighted_accuracy = safe_divide(weighted_hits, sum(weights))
    return clamp(sample_weight * sample_factor + (1 - sample_weight) * weighted_accuracy, 0.0, 1.0)


class PerformanceAggregator:
    """
    Rolling statistics per (user, concept) and cached per-user rollups.

    ``record_attempt`` is the only writer. ``get_performance_metrics`` reads
    through a short-TTL cache that ``record_attempt`` invalidates. When the
    cache backend fails, the last successfully computed rollup is served with
    ``stale=True``.
    """

    def __init__(
        self,
        config: Optional[PerformanceConfig] = None,
        cache: Optional[CacheBackend] = None,
        cache_config: Optional[CacheConfig] = None,
        clock: Optional[Clock] = None,
        shards: Optional[int] = None
    ):
        """
        Initialize the aggregator.

        Args:
            config: Window size, thresholds and confidence weights
            cache: Cache backend for rollups (in-memory by default)
            cache_config: Cache TTL and size
            clock: Clock stamping computed rollups
            shards: Number of lock shards for per-user state
        """
        app_config = get_config()
        self.config = config or app_config.performance
        self.cache_config = cache_config or app_config.cache
        self.clock = clock or get_clock()
        self._metrics_ttl = self.cache_config.metrics_ttl
        self._cache: CacheBackend = cache or MemoryCacheBackend(
            max_size=self.cache_config.memory_max_size,
            default_ttl=self._metrics_ttl,
            name="performance-metrics",
            clock=self.clock
        )
        self._store: StateStore[str, UserPerformance] = StateStore(
            lambda user_id: UserPerformance(user_id=user_id),
            shards=shards or app_config.storage.lock_shards,
            name="performance"
        )
        self._last_good: "OrderedDict[str, PerformanceMetrics]" = OrderedDict()
        self._last_good_lock = threading.Lock()

    # Writes

    def record_attempt(self, record: AttemptRecord) -> None:
        """
        Fold one attempt into the user's statistics.

        Every concept named by the record is updated and the user's cached
        rollup is invalidated.

        Args:
            record: Validated attempt record

        Raises:
            ValidationError: if required fields are missing or out of range
        """
        self._validate(record)
        with self._store.locked(record.user_id) as performance:
            for name in sorted(record.concepts):
                self._update_concept(performance, name, record)

            performance.total_attempts += 1
            performance.total_correct += 1 if record.is_correct else 0
            performance.total_time += record.time_elapsed_sec
            if performance.last_attempt_at is None or record.timestamp > performance.last_attempt_at:
                performance.last_attempt_at = record.timestamp

            type_stats = performance.type_stats.setdefault(record.challenge_type.value, PairStats())
            type_stats.record(record.is_correct, record.time_elapsed_sec, record.timestamp)

            if record.realm_id:
                realm = performance.realm_stats.setdefault(record.realm_id, RealmStats())
                realm.challenge_ids.add(record.challenge_id)
                realm.attempts += 1
                realm.total_score += record.score
                realm.time_spent += record.time_elapsed_sec

            self.invalidate(record.user_id)

        logger.debug(
            f"Recorded attempt {record.attempt_id} for user {record.user_id} "
            f"({len(record.concepts)} concepts, correct={record.is_correct})"
        )

    def _validate(self, record: AttemptRecord) -> None:
        errors = {}
        if not record.user_id:
            errors["user_id"] = "field required"
        if not record.challenge_id:
            errors["challenge_id"] = "field required"
        if not isinstance(record.challenge_type, ChallengeType):
            errors["challenge_type"] = "unknown challenge type"
        if not record.concepts:
            errors["concepts"] = "at least one concept is required"
        if record.timestamp is None:
            errors["timestamp"] = "field required"
        if not _in_range(record.time_elapsed_sec, self.config.max_time_elapsed_sec):
            errors["time_elapsed_sec"] = f"must be a finite number between 0 and {self.config.max_time_elapsed_sec}"
        if not _in_range(record.score, self.config.max_score):
            errors["score"] = f"must be a finite number between 0 and {self.config.max_score}"
        if record.hints_used is None or record.hints_used < 0:
            errors["hints_used"] = "must be greater than or equal to 0"
        if errors:
            raise ValidationError("invalid attempt record", errors)

    def _update_concept(self, performance: UserPerformance, name: str, record: AttemptRecord) -> None:
        key = name.casefold()
        concept = performance.concepts.get(key)
        if concept is None:
            concept = ConceptPerformance(concept=name, window_size=self.config.window_size)
            performance.concepts[key] = concept

        concept.attempts += 1
        concept.successes += 1 if record.is_correct else 0
        concept.total_time += record.time_elapsed_sec
        concept.recent_window.append(record.is_correct)
        concept.challenge_ids.add(record.challenge_id)
        if concept.last_attempt_at is None or record.timestamp > concept.last_attempt_at:
            concept.last_attempt_at = record.timestamp

        pair_key = (record.challenge_type.value, record.realm_id or "")
        concept.pair_stats.setdefault(pair_key, PairStats()).record(
            record.is_correct, record.time_elapsed_sec, record.timestamp
        )

        concept.trend = compute_trend(concept.recent_window, self.config.trend_delta)
        concept.confidence_level = compute_confidence(
            concept.attempts,
            concept.recent_window,
            saturation=self.config.confidence_saturation,
            sample_weight=self.config.confidence_sample_weight,
            decay=self.config.recency_decay
        )

    # Cache management

    def invalidate(self, user_id: str) -> None:
        """Drop the cached rollup for ``user_id``."""
        try:
            self._cache.delete(user_id)
        except CacheError as e:
            logger.warning(f"Could not invalidate metrics cache for user {user_id}: {e}")

    def warm(self, user_id: str) -> Optional[PerformanceMetrics]:
        """
        Recompute and cache the rollup for ``user_id`` if it is not cached.

        Returns:
            The metrics, or None for an unknown user
        """
        if user_id not in self._store:
            return None
        return self.get_performance_metrics(user_id)

    # Reads

    def get_performance_metrics(self, user_id: str) -> PerformanceMetrics:
        """
        Per-user rollup, served from cache when fresh.

        Args:
            user_id: User identifier

        Returns:
            The user's metrics; an empty rollup for an unknown user
        """
        with self._store.locked(user_id, create=False) as performance:
            if performance is None:
                return PerformanceMetrics(user_id=user_id, computed_at=self.clock.now())

            try:
                cached = self._cache.get(user_id)
                if cached.hit:
                    return cached.value
                metrics = self._compute_metrics(performance)
                self._cache.set(user_id, metrics, self._metrics_ttl)
            except CacheError as e:
                return self._degraded(user_id, performance, e)

        self._remember(metrics)
        return metrics

    def _degraded(self, user_id: str, performance: UserPerformance, error: Exception) -> PerformanceMetrics:
        with self._last_good_lock:
            snapshot = self._last_good.get(user_id)
        message = f"Metrics cache unavailable for user {user_id}: {error}"
        logger.warning(message)
        warnings.warn(message, DegradedModeWarning, stacklevel=3)
        if snapshot is not None:
            return snapshot.as_stale()
        metrics = self._compute_metrics(performance)
        self._remember(metrics)
        return metrics

    def _remember(self, metrics: PerformanceMetrics) -> None:
        with self._last_good_lock:
            self._last_good[metrics.user_id] = metrics
            self._last_good.move_to_end(metrics.user_id)
            while len(self._last_good) > self.cache_config.memory_max_size:
                self._last_good.popitem(last=False)

    def _forget_snapshot(self, user_id: str) -> None:
        with self._last_good_lock:
            self._last_good.pop(user_id, None)

    def _compute_metrics(self, performance: UserPerformance) -> PerformanceMetrics:
        concepts = list(performance.concepts.values())
        eligible = [c for c in concepts if c.attempts >= self.config.min_sample_size]
        top = self.config.top_concepts

        strongest = sorted(eligible, key=lambda c: (-c.accuracy, -c.attempts, c.concept))[:top]
        weakest = sorted(eligible, key=lambda c: (c.accuracy, -c.attempts, c.concept))[:top]

        return PerformanceMetrics(
            user_id=performance.user_id,
            overall_accuracy=clamp(safe_divide(performance.total_correct, performance.total_attempts), 0.0, 1.0),
            average_response_time=safe_divide(performance.total_time, performance.total_attempts),
            strongest_concepts=[ConceptSummary.of(c) for c in strongest],
            weakest_concepts=[ConceptSummary.of(c) for c in weakest],
            total_challenges_completed=performance.total_attempts,
            total_time_spent=performance.total_time,
            challenge_type_accuracy={
                challenge_type: stats.accuracy
                for challenge_type, stats in sorted(performance.type_stats.items())
            },
            realm_progress=self._realm_progress(performance),
            computed_at=self.clock.now(),
        )

    def _realm_progress(self, performance: UserPerformance) -> List[RealmProgress]:
        progress = []
        for realm_id, stats in sorted(performance.realm_stats.items()):
            realm = REALMS.get(realm_id)
            total = realm.total_challenges if realm else 10
            completed = len(stats.challenge_ids)
            progress.append(RealmProgress(
                realm_id=realm_id,
                realm_name=realm.name if realm else realm_id,
                challenges_completed=completed,
                completion_percentage=min(100.0, safe_divide(completed, total) * 100),
                average_score=safe_divide(stats.total_score, stats.attempts),
                time_spent=stats.time_spent,
            ))
        return progress

    def get_concept_performance(self, user_id: str) -> List[ConceptSummary]:
        """
        Summaries of every concept the user has attempted.

        Returns:
            Summaries sorted by concept name; empty for an unknown user
        """
        with self._store.locked(user_id, create=False) as performance:
            if performance is None:
                return []
            return sorted(
                (ConceptSummary.of(c) for c in performance.concepts.values()),
                key=lambda summary: summary.concept.casefold()
            )

    def concept_states(self, user_id: str) -> List[ConceptPerformance]:
        """
        Copies of the user's concept statistics for read-only analysis.

        Returns:
            Detached ``ConceptPerformance`` objects; empty for an unknown user
        """
        with self._store.locked(user_id, create=False) as performance:
            if performance is None:
                return []
            return [ConceptPerformance.from_dict(c.to_dict()) for c in performance.concepts.values()]

    # Persistence hooks

    def snapshot(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Serializable copy of the user's statistics, or None."""
        with self._store.locked(user_id, create=False) as performance:
            return performance.to_dict() if performance is not None else None

    def restore(self, user_id: str, data: Optional[Dict[str, Any]]) -> None:
        """Replace the user's statistics with a stored snapshot."""
        with self._store.locked(user_id, create=False):
            if data:
                self._store.put(user_id, UserPerformance.from_dict(data))
            else:
                self._store.delete(user_id)
            self.invalidate(user_id)
            self._forget_snapshot(user_id)

    def has_user(self, user_id: str) -> bool:
        return user_id in self._store

    def known_users(self) -> List[str]:
        """Users with any recorded statistics."""
        return self._store.keys()
