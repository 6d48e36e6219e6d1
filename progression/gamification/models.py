"""
Gamification Models

Data models for login streaks, streak rewards and leaderboards.
"""

import enum
import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from progression.common.serialization import SerializableMixin
from progression.common.utils import parse_date, parse_datetime


class BonusType(enum.Enum):
    """Kinds of streak bonus."""
    XP_MULTIPLIER = "xp_multiplier"
    GOLD_MULTIPLIER = "gold_multiplier"
    CHALLENGE_BONUS = "challenge_bonus"
    SPECIAL_REWARD = "special_reward"


class RewardType(enum.Enum):
    """Kinds of milestone reward."""
    GOLD = "gold"
    XP = "xp"
    BADGE = "badge"
    ITEM = "item"


class RecoveryType(enum.Enum):
    """Where a streak recovery came from."""
    FREE = "free"
    PREMIUM = "premium"
    EARNED = "earned"


class LeaderboardMetric(enum.Enum):
    """Statistic a leaderboard category ranks by."""
    ACCURACY = "accuracy"
    SPEED = "speed"
    STREAK = "streak"
    TOTAL_SCORE = "total_score"
    CHALLENGES_COMPLETED = "challenges_completed"


class LeaderboardTimeframe(enum.Enum):
    """Period a leaderboard category covers."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    ALL_TIME = "all-time"


@dataclass
class StreakState(SerializableMixin):
    """
    Login streak state for one user.

    Mutated only by ``StreakEngine`` on login, recovery use and reset.
    """
    user_id: str
    current_streak: int = 0
    longest_streak: int = 0
    last_login_date: Optional[datetime.date] = None
    streak_start_date: Optional[datetime.date] = None
    streak_multiplier: float = 1.0
    missed_days: int = 0
    recovery_used: bool = False
    recoveries_available: int = 1
    total_days_active: int = 0
    last_recovery_at: Optional[datetime.datetime] = None
    last_recovery_type: Optional[RecoveryType] = None
    recovery_refill_month: Optional[int] = None

    __serializable_fields__ = [
        "user_id", "current_streak", "longest_streak", "last_login_date",
        "streak_start_date", "streak_multiplier", "missed_days", "recovery_used",
        "recoveries_available", "total_days_active", "last_recovery_at",
        "last_recovery_type", "recovery_refill_month"
    ]
    __optional_fields__ = __serializable_fields__[1:]

    def copy(self) -> 'StreakState':
        return StreakState.from_dict(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StreakState':
        kwargs = cls._collect_kwargs(data)
        kwargs["last_login_date"] = parse_date(kwargs.get("last_login_date"))
        kwargs["streak_start_date"] = parse_date(kwargs.get("streak_start_date"))
        kwargs["last_recovery_at"] = parse_datetime(kwargs.get("last_recovery_at"))
        if kwargs.get("last_recovery_type") is not None:
            kwargs["last_recovery_type"] = RecoveryType(kwargs["last_recovery_type"])
        return cls(**kwargs)


@dataclass
class Bonus(SerializableMixin):
    """A reward currently unlocked by the streak."""
    type: BonusType
    description: str
    multiplier: Optional[float] = None
    bonus_amount: Optional[int] = None
    duration_minutes: Optional[int] = None

    __serializable_fields__ = ["type", "description", "multiplier", "bonus_amount", "duration_minutes"]


@dataclass(frozen=True)
class MilestoneReward(SerializableMixin):
    """What reaching a milestone grants."""
    type: RewardType
    description: str
    amount: Optional[int] = None
    item_id: Optional[str] = None

    __serializable_fields__ = ["type", "description", "amount", "item_id"]


@dataclass(frozen=True)
class MilestoneDefinition:
    """A streak length worth celebrating."""
    day: int
    title: str
    description: str
    reward: MilestoneReward
    badge: Optional[str] = None


@dataclass
class Milestone(SerializableMixin):
    """A milestone definition with one user's progress towards it."""
    day: int
    title: str
    description: str
    reward: MilestoneReward
    badge: Optional[str]
    achieved: bool
    progress: float

    __serializable_fields__ = ["day", "title", "description", "reward", "badge", "achieved", "progress"]


STREAK_MILESTONES: List[MilestoneDefinition] = [
    MilestoneDefinition(
        3, "Getting Started", "Complete 3 days in a row",
        MilestoneReward(RewardType.GOLD, "100 gold coins reward", amount=100)
    ),
    MilestoneDefinition(
        7, "Week Warrior", "Complete a full week",
        MilestoneReward(RewardType.XP, "200 experience points", amount=200),
        badge="week_warrior"
    ),
    MilestoneDefinition(
        14, "Two Week Champion", "Maintain streak for 2 weeks",
        MilestoneReward(RewardType.BADGE, "Two Week Champion Badge"),
        badge="two_week_champion"
    ),
    MilestoneDefinition(
        30, "Monthly Master", "Complete 30 days straight",
        MilestoneReward(RewardType.ITEM, "Monthly Master Chest", item_id="monthly_master_chest"),
        badge="monthly_master"
    ),
    MilestoneDefinition(
        50, "Dedication Expert", "Show incredible dedication",
        MilestoneReward(RewardType.GOLD, "1000 gold coins reward", amount=1000)
    ),
    MilestoneDefinition(
        100, "Legendary Alchemist", "Achieve legendary status",
        MilestoneReward(RewardType.BADGE, "Legendary Alchemist Title"),
        badge="legendary_alchemist"
    ),
]


@dataclass
class StreakStats(SerializableMixin):
    """Dashboard summary of a user's streak."""
    current_streak: int
    longest_streak: int
    streak_multiplier: float
    total_days_active: int
    milestones_achieved: int
    recovery_used: bool

    __serializable_fields__ = [
        "current_streak", "longest_streak", "streak_multiplier",
        "total_days_active", "milestones_achieved", "recovery_used"
    ]


@dataclass
class LoginTransition:
    """
    Result of applying one login to a streak.

    Attributes:
        state: The state after the login
        changed: False when the login fell on an already-counted day
        recovered: True when a recovery bridged a gap
        reset: True when a gap broke the streak
        new_milestones: Milestones first reached by this login
    """
    state: StreakState
    changed: bool
    recovered: bool = False
    reset: bool = False
    new_milestones: List[MilestoneDefinition] = field(default_factory=list)


@dataclass(frozen=True)
class LeaderboardCategory(SerializableMixin):
    """An independently ranked competitive metric."""
    id: str
    name: str
    description: str = ""
    timeframe: LeaderboardTimeframe = LeaderboardTimeframe.ALL_TIME
    metric: Optional[LeaderboardMetric] = None

    __serializable_fields__ = ["id", "name", "description", "timeframe", "metric"]


DEFAULT_CATEGORIES: List[LeaderboardCategory] = [
    LeaderboardCategory(
        "overall-accuracy", "Accuracy Masters", "Top performers by overall accuracy",
        LeaderboardTimeframe.ALL_TIME, LeaderboardMetric.ACCURACY
    ),
    LeaderboardCategory(
        "speed-demons", "Speed Demons", "Fastest challenge completion times",
        LeaderboardTimeframe.WEEKLY, LeaderboardMetric.SPEED
    ),
    LeaderboardCategory(
        "streak-keepers", "Streak Keepers", "Longest learning streaks",
        LeaderboardTimeframe.ALL_TIME, LeaderboardMetric.STREAK
    ),
    LeaderboardCategory(
        "weekly-champions", "Weekly Champions", "Top scorers this week",
        LeaderboardTimeframe.WEEKLY, LeaderboardMetric.TOTAL_SCORE
    ),
    LeaderboardCategory(
        "challenge-masters", "Challenge Masters", "Most challenges completed",
        LeaderboardTimeframe.MONTHLY, LeaderboardMetric.CHALLENGES_COMPLETED
    ),
]


@dataclass
class LeaderboardEntry(SerializableMixin):
    """One user's standing in one category."""
    user_id: str
    category_id: str
    score: float
    updated_at: datetime.datetime
    rank: Optional[int] = None

    __serializable_fields__ = ["user_id", "category_id", "score", "updated_at", "rank"]
    __optional_fields__ = ["rank"]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LeaderboardEntry':
        kwargs = cls._collect_kwargs(data)
        kwargs["updated_at"] = parse_datetime(kwargs["updated_at"])
        kwargs["score"] = float(kwargs["score"])
        return cls(**kwargs)
