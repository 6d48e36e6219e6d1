"""
Login Streak Engine

Date-driven state machine per user. Transitions happen on login, explicit
recovery use and reset. The transition itself (``apply_login``) is a pure
function of the previous state and the login time; ``StreakEngine`` adds the
per-user storage around it.
"""

import datetime
from typing import Any, Dict, List, Optional, Union

from progression.common.clock import Clock, get_clock
from progression.common.config import StreakConfig, get_config
from progression.common.logger import app_logger
from progression.common.state_store import StateStore
from progression.common.utils import days_between, month_index
from progression.gamification.models import (
    STREAK_MILESTONES,
    Bonus,
    BonusType,
    LoginTransition,
    Milestone,
    RecoveryType,
    StreakState,
    StreakStats,
)

logger = app_logger.getChild("gamification.streaks")

GOLD_BONUS_STREAK = 5
GOLD_MULTIPLIER_STEP = 0.05
MAX_GOLD_MULTIPLIER = 2.0
CHALLENGE_BONUS_STREAK = 7
CHALLENGE_BONUS_POINTS = 10
WEEKLY_REWARD_MINUTES = 24 * 60


class StreakEngine:
    """
    Tracks consecutive-day activity, the reward multiplier, milestones and
    recovery usage for each user.

    Day arithmetic uses the calendar date of the login time, so two logins a
    minute apart across midnight count as consecutive days.
    """

    def __init__(
        self,
        config: Optional[StreakConfig] = None,
        clock: Optional[Clock] = None,
        shards: Optional[int] = None
    ):
        """
        Initialize the engine.

        Args:
            config: Multiplier curve, recovery allowance and grace window
            clock: Clock used when a login carries no timestamp
            shards: Number of lock shards for per-user state
        """
        app_config = get_config()
        self.config = config or app_config.streak
        self.clock = clock or get_clock()
        self._store: StateStore[str, StreakState] = StateStore(
            self.new_state,
            shards=shards or app_config.storage.lock_shards,
            name="streaks"
        )

    # Pure transition logic

    def new_state(self, user_id: str) -> StreakState:
        """Zero-state for a user who has never logged in."""
        return StreakState(user_id=user_id, recoveries_available=self.config.initial_recoveries)

    def multiplier_for(self, streak: int) -> float:
        """
        Reward multiplier for a streak length.

        1.0 below the minimum streak, then 1.0 plus one step per day after
        the first, with growth stopping after ``multiplier_growth_days`` and
        the result capped at ``max_multiplier``.
        """
        if streak < self.config.minimum_streak:
            return 1.0
        growth = min(streak - 1, self.config.multiplier_growth_days) * self.config.multiplier_step
        return round(min(1.0 + growth, self.config.max_multiplier), 4)

    def _refill_recoveries(self, state: StreakState, today: datetime.date) -> None:
        current_month = month_index(today)
        if state.recovery_refill_month is None:
            state.recovery_refill_month = current_month
            return
        elapsed = current_month - state.recovery_refill_month
        if elapsed > 0 and self.config.monthly_refill:
            state.recoveries_available = min(
                self.config.max_recoveries,
                state.recoveries_available + elapsed
            )
        if elapsed > 0:
            state.recovery_refill_month = current_month

    def apply_login(self, state: StreakState, now: datetime.datetime) -> LoginTransition:
        """
        Apply a login to a copy of ``state``.

        - First login starts a streak of 1.
        - Same calendar day (or an earlier one) changes nothing.
        - Next calendar day extends the streak.
        - A longer gap consumes a recovery when one is available and the gap
          is within ``recovery_grace_days``; otherwise the streak restarts at
          1 and ``missed_days`` records the skipped days.

        Args:
            state: Current state, left untouched
            now: Login time

        Returns:
            The transition, carrying the new state
        """
        today = now.date()
        if state.last_login_date is not None and today <= state.last_login_date:
            return LoginTransition(state=state.copy(), changed=False)

        new = state.copy()
        self._refill_recoveries(new, today)
        previous_streak = new.current_streak
        recovered = reset = False

        if new.last_login_date is None:
            new.current_streak = 1
            new.streak_start_date = today
        else:
            gap = days_between(new.last_login_date, today)
            if gap == 1:
                new.current_streak += 1
                new.missed_days = 0
                new.recovery_used = False
            elif new.recoveries_available > 0 and gap <= self.config.recovery_grace_days:
                self._consume_recovery(new, RecoveryType.FREE, now)
                new.current_streak += 1
                new.missed_days = gap - 1
                recovered = True
            else:
                new.current_streak = 1
                new.missed_days = gap - 1
                new.streak_start_date = today
                new.recovery_used = False
                reset = True

        new.last_login_date = today
        new.total_days_active += 1
        new.longest_streak = max(new.longest_streak, new.current_streak)
        new.streak_multiplier = self.multiplier_for(new.current_streak)

        floor = 0 if reset else previous_streak
        reached = [
            milestone for milestone in STREAK_MILESTONES
            if floor < milestone.day <= new.current_streak
        ]

        return LoginTransition(state=new, changed=True, recovered=recovered, reset=reset, new_milestones=reached)

    @staticmethod
    def _consume_recovery(state: StreakState, recovery_type: RecoveryType, now: datetime.datetime) -> None:
        state.recoveries_available -= 1
        state.recovery_used = True
        state.last_recovery_at = now
        state.last_recovery_type = recovery_type

    def bonuses_for(self, state: StreakState) -> List[Bonus]:
        """
        Bonuses unlocked by a streak, in a fixed order.

        Returns:
            XP multiplier (3+ days), gold multiplier (5+), per-challenge bonus
            (7+) and the weekly special reward on exact multiples of 7
        """
        streak = state.current_streak
        bonuses: List[Bonus] = []

        if streak >= self.config.minimum_streak:
            multiplier = self.multiplier_for(streak)
            bonuses.append(Bonus(
                type=BonusType.XP_MULTIPLIER,
                multiplier=multiplier,
                description=f"{round((multiplier - 1) * 100)}% XP bonus from {streak}-day streak"
            ))

        if streak >= GOLD_BONUS_STREAK:
            gold = min(1 + (streak - GOLD_BONUS_STREAK) * GOLD_MULTIPLIER_STEP, MAX_GOLD_MULTIPLIER)
            bonuses.append(Bonus(
                type=BonusType.GOLD_MULTIPLIER,
                multiplier=round(gold, 4),
                description=f"{round((gold - 1) * 100)}% gold bonus from streak"
            ))

        if streak >= CHALLENGE_BONUS_STREAK:
            points = (streak // CHALLENGE_BONUS_STREAK) * CHALLENGE_BONUS_POINTS
            bonuses.append(Bonus(
                type=BonusType.CHALLENGE_BONUS,
                bonus_amount=points,
                description=f"+{points} bonus points per challenge"
            ))

        if streak >= CHALLENGE_BONUS_STREAK and streak % CHALLENGE_BONUS_STREAK == 0:
            bonuses.append(Bonus(
                type=BonusType.SPECIAL_REWARD,
                duration_minutes=WEEKLY_REWARD_MINUTES,
                description="Weekly streak bonus: extra daily quest available"
            ))

        return bonuses

    @staticmethod
    def milestones_for(state: StreakState) -> List[Milestone]:
        """Every milestone with this streak's progress towards it."""
        streak = state.current_streak
        return [
            Milestone(
                day=definition.day,
                title=definition.title,
                description=definition.description,
                reward=definition.reward,
                badge=definition.badge,
                achieved=streak >= definition.day,
                progress=min(1.0, streak / definition.day),
            )
            for definition in STREAK_MILESTONES
        ]

    # Per-user operations

    def record_login(self, user_id: str, now: Optional[datetime.datetime] = None) -> LoginTransition:
        """
        Record a login and return the resulting transition.

        Args:
            user_id: User identifier
            now: Login time (defaults to the clock)
        """
        now = now or self.clock.now()
        with self._store.locked(user_id) as state:
            transition = self.apply_login(state, now)
            self._store.put(user_id, transition.state)

        if transition.recovered:
            logger.info(f"Streak recovery used for user {user_id}, streak {transition.state.current_streak}")
        if transition.reset:
            logger.info(f"Streak reset for user {user_id} after {transition.state.missed_days} missed days")
        for milestone in transition.new_milestones:
            logger.info(f"User {user_id} achieved streak milestone: {milestone.title}")
        return LoginTransition(
            state=transition.state.copy(),
            changed=transition.changed,
            recovered=transition.recovered,
            reset=transition.reset,
            new_milestones=transition.new_milestones,
        )

    def get_state(self, user_id: str) -> StreakState:
        """Copy of the user's state; a zero-state for unknown users."""
        with self._store.locked(user_id, create=False) as state:
            return state.copy() if state is not None else self.new_state(user_id)

    def get_current_bonus(self, user_id: str) -> List[Bonus]:
        """Bonuses the user's current streak unlocks."""
        return self.bonuses_for(self.get_state(user_id))

    def get_streak_milestones(self, user_id: str) -> List[Milestone]:
        """Milestones with the user's progress."""
        return self.milestones_for(self.get_state(user_id))

    def get_streak_stats(self, user_id: str) -> StreakStats:
        """Dashboard summary of the user's streak."""
        state = self.get_state(user_id)
        return StreakStats(
            current_streak=state.current_streak,
            longest_streak=state.longest_streak,
            streak_multiplier=state.streak_multiplier,
            total_days_active=state.total_days_active,
            milestones_achieved=sum(1 for m in self.milestones_for(state) if m.achieved),
            recovery_used=state.recovery_used,
        )

    def get_recovery_options(self, user_id: str) -> Dict[str, Any]:
        """
        Recovery allowance after applying any monthly refill.

        Returns:
            Dict with available count, cap, grace window and last use
        """
        today = self.clock.today()
        with self._store.locked(user_id) as state:
            self._refill_recoveries(state, today)
            return {
                "user_id": user_id,
                "available_recoveries": state.recoveries_available,
                "max_recoveries": self.config.max_recoveries,
                "grace_days": self.config.recovery_grace_days,
                "last_recovery_at": state.last_recovery_at,
                "last_recovery_type": state.last_recovery_type,
            }

    def use_streak_recovery(
        self,
        user_id: str,
        recovery_type: Union[RecoveryType, str] = RecoveryType.FREE
    ) -> bool:
        """
        Spend one recovery.

        Args:
            user_id: User identifier
            recovery_type: Source of the recovery

        Returns:
            True if a recovery was spent; False, with the state unchanged,
            when none are available
        """
        recovery_type = RecoveryType(recovery_type)
        now = self.clock.now()
        with self._store.locked(user_id) as state:
            self._refill_recoveries(state, now.date())
            if state.recoveries_available <= 0:
                logger.debug(f"No streak recovery available for user {user_id}")
                return False
            self._consume_recovery(state, recovery_type, now)
        logger.info(f"User {user_id} used a {recovery_type.value} streak recovery")
        return True

    def reset_streak(self, user_id: str) -> None:
        """Return the user to a fresh zero-state."""
        with self._store.locked(user_id, create=False):
            self._store.put(user_id, self.new_state(user_id))
        logger.info(f"Streak reset for user {user_id}")

    def snapshot(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Serializable copy of the user's state, or None."""
        with self._store.locked(user_id, create=False) as state:
            return state.to_dict() if state is not None else None

    def restore(self, user_id: str, data: Optional[Dict[str, Any]]) -> None:
        """Replace the user's state with a stored snapshot."""
        with self._store.locked(user_id, create=False):
            if data:
                self._store.put(user_id, StreakState.from_dict(data))
            else:
                self._store.delete(user_id)

    def known_users(self) -> List[str]:
        return self._store.keys()
