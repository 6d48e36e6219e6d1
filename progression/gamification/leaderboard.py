"""
Leaderboard Ranking

One ordered ranking per leaderboard category. Each ranking keeps a sorted
list of ``(-score, updated_at, user_id)`` keys maintained with ``bisect`` and
a dict index from user to entry. Writers and readers of a category share the
category lock, so a reader sees the ordering either before or after an
update, never in between.
"""

import bisect
import datetime
import math
import threading
from typing import Dict, List, Optional, Tuple

from progression.common.clock import Clock, get_clock
from progression.common.config import LeaderboardConfig, get_config
from progression.common.exceptions import NotFoundError, ValidationError
from progression.common.logger import app_logger
from progression.gamification.models import (
    DEFAULT_CATEGORIES,
    LeaderboardCategory,
    LeaderboardEntry,
    LeaderboardMetric,
)
from progression.performance.models import PerformanceMetrics

logger = app_logger.getChild("gamification.leaderboard")

SPEED_BASELINE_SECONDS = 300

RankKey = Tuple[float, datetime.datetime, str]


def rank_key(entry: LeaderboardEntry) -> RankKey:
    """Sort key: higher score first, then earlier update, then user id."""
    return -entry.score, entry.updated_at, entry.user_id


def metric_score(
    metric: LeaderboardMetric,
    metrics: PerformanceMetrics,
    current_streak: int = 0
) -> Optional[float]:
    """
    Score a user earns in a category ranked by ``metric``.

    Args:
        metric: Category metric
        metrics: The user's performance rollup
        current_streak: The user's login streak

    Returns:
        The score, or None when the user has no attempts to score yet
    """
    if metric is LeaderboardMetric.STREAK:
        return float(current_streak)

    completed = metrics.total_challenges_completed
    if completed == 0:
        return None

    if metric is LeaderboardMetric.ACCURACY:
        return float(round(metrics.overall_accuracy * 10000))
    if metric is LeaderboardMetric.SPEED:
        return float(max(0.0, SPEED_BASELINE_SECONDS - metrics.average_response_time))
    if metric is LeaderboardMetric.TOTAL_SCORE:
        return float(completed * round(metrics.overall_accuracy * 100))
    if metric is LeaderboardMetric.CHALLENGES_COMPLETED:
        return float(completed)
    return None


class CategoryRanking:
    """Sorted entries of a single category, guarded by its own lock."""

    def __init__(self, category: LeaderboardCategory):
        self.category = category
        self.lock = threading.RLock()
        self._keys: List[RankKey] = []
        self._entries: Dict[str, LeaderboardEntry] = {}

    def upsert(self, entry: LeaderboardEntry) -> bool:
        """
        Insert or reposition ``entry``.

        Returns:
            False when the stored entry for the user is newer
        """
        with self.lock:
            current = self._entries.get(entry.user_id)
            if current is not None:
                if entry.updated_at < current.updated_at:
                    return False
                index = bisect.bisect_left(self._keys, rank_key(current))
                del self._keys[index]
            bisect.insort(self._keys, rank_key(entry))
            self._entries[entry.user_id] = entry
            return True

    def rank_of(self, user_id: str) -> Optional[int]:
        with self.lock:
            entry = self._entries.get(user_id)
            if entry is None:
                return None
            return bisect.bisect_left(self._keys, rank_key(entry)) + 1

    def top(self, limit: int, offset: int = 0) -> List[LeaderboardEntry]:
        with self.lock:
            window = self._keys[offset:offset + limit]
            return [
                self._ranked(self._entries[user_id], offset + position + 1)
                for position, (_, _, user_id) in enumerate(window)
            ]

    def all_entries(self) -> List[LeaderboardEntry]:
        with self.lock:
            return self.top(len(self._keys))

    def resort(self) -> int:
        """Rebuild the key list from the index."""
        with self.lock:
            self._keys = sorted(rank_key(entry) for entry in self._entries.values())
            return len(self._keys)

    def clear(self) -> None:
        with self.lock:
            self._keys = []
            self._entries = {}

    def __len__(self) -> int:
        with self.lock:
            return len(self._entries)

    @staticmethod
    def _ranked(entry: LeaderboardEntry, rank: int) -> LeaderboardEntry:
        return LeaderboardEntry(
            user_id=entry.user_id,
            category_id=entry.category_id,
            score=entry.score,
            updated_at=entry.updated_at,
            rank=rank,
        )


class LeaderboardRanker:
    """
    Near-real-time rankings for every leaderboard category.

    Categories are independent: an update locks only its own category. The
    category registry has its own lock, taken only to find or create a
    category.
    """

    def __init__(
        self,
        config: Optional[LeaderboardConfig] = None,
        clock: Optional[Clock] = None,
        categories: Optional[List[LeaderboardCategory]] = None
    ):
        """
        Initialize the ranker.

        Args:
            config: Limits and category auto-creation policy
            clock: Clock stamping updates that carry no timestamp
            categories: Categories to register (the defaults when None)
        """
        self.config = config or get_config().leaderboard
        self.clock = clock or get_clock()
        self._rankings: Dict[str, CategoryRanking] = {}
        self._registry_lock = threading.Lock()

        for category in DEFAULT_CATEGORIES if categories is None else categories:
            self.register_category(category)

    # Categories

    def register_category(self, category: LeaderboardCategory) -> LeaderboardCategory:
        """
        Register a category, keeping the existing ranking if the id is known.

        Returns:
            The registered category
        """
        with self._registry_lock:
            ranking = self._rankings.get(category.id)
            if ranking is None:
                self._rankings[category.id] = CategoryRanking(category)
                logger.debug(f"Registered leaderboard category {category.id}")
                return category
            return ranking.category

    def get_categories(self) -> List[LeaderboardCategory]:
        """Registered categories in registration order."""
        with self._registry_lock:
            return [ranking.category for ranking in self._rankings.values()]

    def _ranking(self, category_id: str, create: bool = False) -> Optional[CategoryRanking]:
        with self._registry_lock:
            ranking = self._rankings.get(category_id)
            if ranking is None and create:
                ranking = CategoryRanking(LeaderboardCategory(id=category_id, name=category_id))
                self._rankings[category_id] = ranking
                logger.info(f"Created leaderboard category {category_id} on first update")
            return ranking

    def _require(self, category_id: str) -> CategoryRanking:
        ranking = self._ranking(category_id)
        if ranking is None:
            raise NotFoundError("LeaderboardCategory", category_id)
        return ranking

    # Writes

    def update_score(
        self,
        category_id: str,
        user_id: str,
        score: float,
        updated_at: Optional[datetime.datetime] = None
    ) -> bool:
        """
        Insert or reposition a user's entry.

        The last write for a (category, user) pair by the update's own
        timestamp wins; an update older than the stored entry is ignored.

        Args:
            category_id: Category to update
            user_id: User identifier
            score: New score
            updated_at: Time of the score (defaults to the clock)

        Returns:
            True if the entry was written

        Raises:
            ValidationError: if the score is not a finite number
            NotFoundError: if the category is unknown and auto-creation is off
        """
        if not user_id:
            raise ValidationError("invalid leaderboard update", {"user_id": "field required"})
        if isinstance(score, bool) or not isinstance(score, (int, float)) or not math.isfinite(score):
            raise ValidationError("invalid leaderboard update", {"score": "must be a finite number"})

        ranking = self._ranking(category_id, create=self.config.auto_create_categories)
        if ranking is None:
            raise NotFoundError("LeaderboardCategory", category_id)

        entry = LeaderboardEntry(
            user_id=user_id,
            category_id=category_id,
            score=float(score),
            updated_at=updated_at or self.clock.now(),
        )
        written = ranking.upsert(entry)
        if not written:
            logger.debug(f"Ignored stale score for user {user_id} in {category_id}")
        return written

    def update_from_metrics(
        self,
        user_id: str,
        metrics: PerformanceMetrics,
        current_streak: int = 0,
        updated_at: Optional[datetime.datetime] = None
    ) -> Dict[str, LeaderboardEntry]:
        """
        Rescore a user in every category that ranks by a known metric.

        Args:
            user_id: User identifier
            metrics: The user's performance rollup
            current_streak: The user's login streak
            updated_at: Time of the update (defaults to the clock)

        Returns:
            Entries written, keyed by category id
        """
        updated_at = updated_at or self.clock.now()
        written: Dict[str, LeaderboardEntry] = {}
        for category in self.get_categories():
            if category.metric is None:
                continue
            score = metric_score(category.metric, metrics, current_streak)
            if score is None:
                continue
            if self.update_score(category.id, user_id, score, updated_at):
                written[category.id] = LeaderboardEntry(
                    user_id=user_id, category_id=category.id, score=score, updated_at=updated_at
                )
        return written

    def load(self, category_id: str, entries: List[LeaderboardEntry]) -> int:
        """
        Merge persisted entries into a category.

        Returns:
            Number of entries written
        """
        ranking = self._ranking(category_id, create=True)
        return sum(1 for entry in entries if ranking.upsert(entry))

    def rebuild(self, category_id: Optional[str] = None) -> Dict[str, int]:
        """
        Fully re-sort one category, or all of them.

        Returns:
            Entry count per rebuilt category
        """
        if category_id is not None:
            return {category_id: self._require(category_id).resort()}
        return {category.id: self._require(category.id).resort() for category in self.get_categories()}

    def clear(self, category_id: str) -> None:
        self._require(category_id).clear()

    # Reads

    def get_leaderboard(self, category_id: str, limit: Optional[int] = None) -> List[LeaderboardEntry]:
        """
        Top entries of a category, best first.

        Args:
            category_id: Category to read
            limit: Number of entries (default and cap from configuration)

        Returns:
            Ranked entries; empty for an unknown category
        """
        limit = self._limit(limit)
        ranking = self._ranking(category_id)
        if ranking is None:
            return []
        return ranking.top(limit)

    def get_user_rank(self, user_id: str, category_id: str) -> Optional[int]:
        """
        One-based rank of a user.

        Returns:
            The rank, or None when the user has no entry

        Raises:
            NotFoundError: if the category is unknown
        """
        return self._require(category_id).rank_of(user_id)

    def get_user_ranking_context(
        self,
        user_id: str,
        category_id: str,
        count: int = 2
    ) -> List[LeaderboardEntry]:
        """
        The user's entry with up to ``count`` neighbours on each side.

        Raises:
            NotFoundError: if the category is unknown
        """
        if count < 0:
            raise ValidationError("invalid ranking context", {"count": "must be greater than or equal to 0"})
        ranking = self._require(category_id)
        with ranking.lock:
            rank = ranking.rank_of(user_id)
            if rank is None:
                return []
            start = max(0, rank - 1 - count)
            return ranking.top(rank - start + count, offset=start)

    def entries(self, category_id: str) -> List[LeaderboardEntry]:
        """Every entry of a category, ranked."""
        return self._require(category_id).all_entries()

    def size(self, category_id: str) -> int:
        return len(self._require(category_id))

    def _limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.config.default_limit
        if limit < 1:
            raise ValidationError("invalid leaderboard limit", {"limit": "must be at least 1"})
        return min(limit, self.config.max_limit)
