"""
Adaptive Difficulty Control

A bounded feedback loop per (user, challenge type). Runs of correct answers
promote one level, runs of incorrect answers demote one level, and a cooldown
between adjustments keeps the level from flapping.
"""

import datetime
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Union

from progression.common.clock import Clock, get_clock
from progression.common.config import DifficultyConfig, get_config
from progression.common.exceptions import ValidationError
from progression.common.logger import app_logger
from progression.common.serialization import SerializableMixin
from progression.common.state_store import StateStore
from progression.common.utils import clamp, parse_datetime
from progression.performance.models import ChallengeType

logger = app_logger.getChild("performance.difficulty")

ChallengeTypeLike = Union[ChallengeType, str]

PROMOTE = 1
DEMOTE = -1


@dataclass
class DifficultyState(SerializableMixin):
    """Feedback loop state for one (user, challenge type)."""
    challenge_type: str
    level: int
    consecutive_correct: int = 0
    consecutive_incorrect: int = 0
    last_adjusted_at: Optional[datetime.datetime] = None

    __serializable_fields__ = [
        "challenge_type", "level", "consecutive_correct",
        "consecutive_incorrect", "last_adjusted_at"
    ]
    __optional_fields__ = ["consecutive_correct", "consecutive_incorrect", "last_adjusted_at"]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DifficultyState':
        kwargs = cls._collect_kwargs(data)
        kwargs["last_adjusted_at"] = parse_datetime(kwargs.get("last_adjusted_at"))
        return cls(**kwargs)


@dataclass
class DifficultyAdjustment(SerializableMixin):
    """
    Record of one level change.

    Attributes:
        challenge_type: Challenge type whose level changed
        previous_level: Level before the change
        new_level: Level after the change
        reason: Human readable trigger
        timestamp: When the change took effect
    """
    challenge_type: str
    previous_level: int
    new_level: int
    reason: str
    timestamp: datetime.datetime

    __serializable_fields__ = ["challenge_type", "previous_level", "new_level", "reason", "timestamp"]

    @property
    def magnitude(self) -> int:
        """Signed size of the change."""
        return self.new_level - self.previous_level

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DifficultyAdjustment':
        kwargs = cls._collect_kwargs(data)
        kwargs["timestamp"] = parse_datetime(kwargs["timestamp"])
        return cls(**kwargs)


@dataclass
class RecentPerformance:
    """Recent correctness and timing for a real-time adjustment."""
    accuracy: float
    average_time_sec: float = 0.0
    streak: int = 0

    def __post_init__(self):
        errors = {}
        if not 0 <= self.accuracy <= 1:
            errors["accuracy"] = "must be between 0 and 1"
        if self.average_time_sec < 0:
            errors["average_time_sec"] = "must be greater than or equal to 0"
        if self.streak < 0:
            errors["streak"] = "must be greater than or equal to 0"
        if errors:
            raise ValidationError("invalid recent performance", errors)


@dataclass
class AdjustmentResult:
    """Outcome of feeding one signal into the loop."""
    new_level: int
    changed: bool
    previous_level: int
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "new_level": self.new_level,
            "changed": self.changed,
            "previous_level": self.previous_level,
            "reason": self.reason,
        }


@dataclass
class UserDifficulty:
    """All difficulty state for one user."""
    states: Dict[str, DifficultyState] = field(default_factory=dict)
    history: Deque[DifficultyAdjustment] = field(default_factory=deque)


class DifficultyController:
    """
    Per-(user, challenge type) difficulty state machine.

    On a correct answer the correct-run counter grows and the incorrect-run
    counter resets; once the run reaches ``promote_threshold`` and the
    cooldown since the last adjustment has passed, the level rises by one and
    both counters reset. Incorrect answers mirror this with
    ``demote_threshold``. While the cooldown blocks an adjustment the run
    counters keep growing, so the adjustment happens on the first qualifying
    answer after the cooldown.

    Unknown challenge types are not errors: they get a fresh state at the
    starting level on first use.
    """

    def __init__(
        self,
        config: Optional[DifficultyConfig] = None,
        clock: Optional[Clock] = None,
        shards: Optional[int] = None
    ):
        """
        Initialize the controller.

        Args:
            config: Level bounds, thresholds and cooldown
            clock: Clock used when a signal carries no timestamp
            shards: Number of lock shards for per-user state
        """
        app_config = get_config()
        self.config = config or app_config.difficulty
        self.clock = clock or get_clock()
        self._store: StateStore[str, UserDifficulty] = StateStore(
            lambda user_id: UserDifficulty(history=deque(maxlen=self.config.history_size)),
            shards=shards or app_config.storage.lock_shards,
            name="difficulty"
        )

    @staticmethod
    def _key(challenge_type: ChallengeTypeLike) -> str:
        known = ChallengeType.from_value(challenge_type)
        if known is not None:
            return known.value
        return str(challenge_type).strip().lower()

    def _clamp(self, level: int) -> int:
        return int(clamp(level, self.config.min_level, self.config.max_level))

    def _new_state(self, key: str) -> DifficultyState:
        return DifficultyState(challenge_type=key, level=self._clamp(self.config.starting_level))

    def _state(self, user: UserDifficulty, key: str) -> DifficultyState:
        state = user.states.get(key)
        if state is None:
            state = self._new_state(key)
            user.states[key] = state
        return state

    def _cooldown_elapsed(self, state: DifficultyState, now: datetime.datetime) -> bool:
        if state.last_adjusted_at is None:
            return True
        return (now - state.last_adjusted_at).total_seconds() > self.config.cooldown_seconds

    def _apply(
        self,
        user_id: str,
        user: UserDifficulty,
        state: DifficultyState,
        direction: int,
        reason: str,
        now: datetime.datetime
    ) -> AdjustmentResult:
        previous = state.level
        state.level = self._clamp(previous + direction)
        state.consecutive_correct = 0
        state.consecutive_incorrect = 0

        if state.level == previous:
            return AdjustmentResult(new_level=previous, changed=False, previous_level=previous,
                                    reason=f"{reason}; already at bound")

        state.last_adjusted_at = now
        user.history.append(DifficultyAdjustment(
            challenge_type=state.challenge_type,
            previous_level=previous,
            new_level=state.level,
            reason=reason,
            timestamp=now,
        ))
        logger.info(
            f"Difficulty for user {user_id} on {state.challenge_type}: "
            f"{previous} -> {state.level} ({reason})"
        )
        return AdjustmentResult(new_level=state.level, changed=True, previous_level=previous, reason=reason)

    def record_outcome(
        self,
        user_id: str,
        challenge_type: ChallengeTypeLike,
        is_correct: bool,
        at: Optional[datetime.datetime] = None
    ) -> AdjustmentResult:
        """
        Feed one attempt outcome into the loop.

        Args:
            user_id: User identifier
            challenge_type: Challenge type of the attempt
            is_correct: Whether the attempt was correct
            at: When the attempt happened (defaults to the clock)

        Returns:
            The level after the outcome and whether it changed
        """
        now = at or self.clock.now()
        key = self._key(challenge_type)
        with self._store.locked(user_id) as user:
            state = self._state(user, key)
            previous = state.level

            if is_correct:
                state.consecutive_correct += 1
                state.consecutive_incorrect = 0
                if (state.consecutive_correct >= self.config.promote_threshold
                        and self._cooldown_elapsed(state, now)):
                    return self._apply(user_id, user, state, PROMOTE,
                                       f"{state.consecutive_correct} correct in a row", now)
            else:
                state.consecutive_incorrect += 1
                state.consecutive_correct = 0
                if (state.consecutive_incorrect >= self.config.demote_threshold
                        and self._cooldown_elapsed(state, now)):
                    return self._apply(user_id, user, state, DEMOTE,
                                       f"{state.consecutive_incorrect} incorrect in a row", now)

            return AdjustmentResult(new_level=state.level, changed=False, previous_level=previous)

    def adjust_difficulty_real_time(
        self,
        user_id: str,
        challenge_type: ChallengeTypeLike,
        recent_performance: RecentPerformance
    ) -> AdjustmentResult:
        """
        Adjust from a summary of recent play rather than a single outcome.

        Promotes on high accuracy with a long enough run or with fast
        answers, demotes on low accuracy or slow inaccurate answers. Moves at
        most one level and honours the cooldown.

        Args:
            user_id: User identifier
            challenge_type: Challenge type to adjust
            recent_performance: Recent accuracy, timing and run length

        Returns:
            ``{new_level, changed}`` as an ``AdjustmentResult``
        """
        now = self.clock.now()
        key = self._key(challenge_type)
        accuracy = recent_performance.accuracy
        average_time = recent_performance.average_time_sec

        direction, reason = 0, None
        if accuracy >= 0.9 and recent_performance.streak >= self.config.promote_threshold:
            direction, reason = PROMOTE, f"accuracy {accuracy:.0%} over a run of {recent_performance.streak}"
        elif accuracy >= 0.8 and 0 < average_time < self.config.fast_time_seconds:
            direction, reason = PROMOTE, f"accuracy {accuracy:.0%} at {average_time:.0f}s per answer"
        elif accuracy <= 0.3:
            direction, reason = DEMOTE, f"accuracy {accuracy:.0%}"
        elif accuracy < 0.5 and average_time > self.config.slow_time_seconds:
            direction, reason = DEMOTE, f"accuracy {accuracy:.0%} at {average_time:.0f}s per answer"

        with self._store.locked(user_id) as user:
            state = self._state(user, key)
            if direction == 0 or not self._cooldown_elapsed(state, now):
                return AdjustmentResult(new_level=state.level, changed=False, previous_level=state.level)
            return self._apply(user_id, user, state, direction, f"real-time: {reason}", now)

    def get_recommended_difficulty(self, user_id: str, challenge_type: ChallengeTypeLike) -> int:
        """
        Level the next challenge of this type should use.

        Creates the state at the starting level on first use.
        """
        with self._store.locked(user_id) as user:
            return self._state(user, self._key(challenge_type)).level

    def get_current_difficulty(self, user_id: str, challenge_type: ChallengeTypeLike) -> int:
        """Current level without creating any state."""
        with self._store.locked(user_id, create=False) as user:
            state = user.states.get(self._key(challenge_type)) if user else None
            return state.level if state else self._clamp(self.config.starting_level)

    def get_state(self, user_id: str, challenge_type: ChallengeTypeLike) -> Optional[DifficultyState]:
        """Copy of the state for one challenge type, or None."""
        with self._store.locked(user_id, create=False) as user:
            state = user.states.get(self._key(challenge_type)) if user else None
            return DifficultyState.from_dict(state.to_dict()) if state else None

    def get_levels(self, user_id: str) -> Dict[str, int]:
        """Current level for every challenge type the user has played."""
        with self._store.locked(user_id, create=False) as user:
            if user is None:
                return {}
            return {key: state.level for key, state in sorted(user.states.items())}

    def get_adjustment_history(
        self,
        user_id: str,
        challenge_type: Optional[ChallengeTypeLike] = None
    ) -> List[DifficultyAdjustment]:
        """Recent level changes, oldest first, optionally for one type."""
        key = self._key(challenge_type) if challenge_type is not None else None
        with self._store.locked(user_id, create=False) as user:
            if user is None:
                return []
            return [adj for adj in user.history if key is None or adj.challenge_type == key]

    def snapshot(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Serializable copy of the user's difficulty state, or None."""
        with self._store.locked(user_id, create=False) as user:
            if user is None:
                return None
            return {
                "states": [state.to_dict() for state in user.states.values()],
                "history": [adjustment.to_dict() for adjustment in user.history],
            }

    def restore(self, user_id: str, data: Optional[Dict[str, Any]]) -> None:
        """Replace the user's difficulty state with a stored snapshot."""
        with self._store.locked(user_id, create=False):
            if not data:
                self._store.delete(user_id)
                return
            user = UserDifficulty(history=deque(
                (DifficultyAdjustment.from_dict(item) for item in data.get("history", [])),
                maxlen=self.config.history_size
            ))
            for item in data.get("states", []):
                state = DifficultyState.from_dict(item)
                state.level = self._clamp(state.level)
                user.states[state.challenge_type] = state
            self._store.put(user_id, user)
