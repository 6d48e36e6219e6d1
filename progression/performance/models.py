"""
Performance Models

Data models for attempt records, rolling per-concept statistics, per-user
rollups, weak areas and the realm catalogue.
"""

import enum
import datetime
import dataclasses
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, FrozenSet, List, Optional, Tuple

from progression.common.serialization import SerializableMixin, serialize
from progression.common.utils import parse_datetime, safe_divide


class ChallengeType(enum.Enum):
    """Kinds of exercise; each owns its own difficulty state."""
    EQUATION_BALANCE = "equation_balance"
    STOICHIOMETRY = "stoichiometry"
    GAS_TEST = "gas_test"
    ION_IDENTIFICATION = "ion_identification"
    LAB_PROCEDURE = "lab_procedure"
    PRECIPITATION = "precipitation"
    COLOR_CHANGE = "color_change"
    DATA_ANALYSIS = "data_analysis"
    ORGANIC_NAMING = "organic_naming"
    MECHANISM = "mechanism"
    ISOMER_IDENTIFICATION = "isomer_identification"
    MEMORY_MATCH = "memory_match"
    QUICK_RECALL = "quick_recall"
    SURVIVAL = "survival"
    STEP_BY_STEP = "step_by_step"
    TIME_ATTACK = "time_attack"
    BOSS_BATTLE = "boss_battle"
    PRECIPITATION_POKER = "precipitation_poker"
    COLOR_CLASH = "color_clash"
    MYSTERY_REACTION = "mystery_reaction"
    GRAPH_JOUST = "graph_joust"
    ERROR_HUNTER = "error_hunter"
    UNCERTAINTY_GOLEM = "uncertainty_golem"

    @classmethod
    def from_value(cls, value: Any) -> Optional['ChallengeType']:
        """Look up a challenge type by value, returning None when unknown."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None

    @property
    def related_concepts(self) -> Tuple[str, ...]:
        """Concepts a challenge of this type usually exercises."""
        return _RELATED_CONCEPTS.get(self, ())


_RELATED_CONCEPTS: Dict[ChallengeType, Tuple[str, ...]] = {
    ChallengeType.EQUATION_BALANCE: ("Chemical Equations", "Stoichiometry"),
    ChallengeType.STOICHIOMETRY: ("Stoichiometry", "Molar Calculations"),
    ChallengeType.GAS_TEST: ("Gas Tests", "Ion Identification"),
    ChallengeType.ION_IDENTIFICATION: ("Ion Identification",),
    ChallengeType.ORGANIC_NAMING: ("Organic Chemistry", "IUPAC Naming"),
    ChallengeType.ISOMER_IDENTIFICATION: ("Organic Chemistry", "Isomerism"),
    ChallengeType.MEMORY_MATCH: ("Gas Tests", "Flame Colors"),
    ChallengeType.LAB_PROCEDURE: ("Lab Techniques", "Safety Procedures"),
    ChallengeType.PRECIPITATION: ("Precipitation Reactions", "Solubility Rules"),
    ChallengeType.DATA_ANALYSIS: ("Data Analysis", "Graph Interpretation"),
}


class Trend(enum.Enum):
    """Direction of recent performance on a concept."""
    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"


class Priority(enum.Enum):
    """Weak-area priority."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def weight(self) -> int:
        """Numeric weight used when ranking recommendations."""
        return {
            Priority.HIGH: 10,
            Priority.MEDIUM: 7,
            Priority.LOW: 4
        }[self]


@dataclass(frozen=True)
class Realm:
    """A game realm and the learning content it covers."""
    realm_id: str
    name: str
    challenge_types: Tuple[ChallengeType, ...]
    concepts: Tuple[str, ...]
    prerequisites: Tuple[str, ...] = ()
    total_challenges: int = 10


REALMS: Dict[str, Realm] = {
    realm.realm_id: realm for realm in (
        Realm(
            "mathmage-trials", "The Mathmage Trials",
            (ChallengeType.EQUATION_BALANCE, ChallengeType.STOICHIOMETRY),
            ("Chemical Equations", "Stoichiometry"),
            (), 25
        ),
        Realm(
            "memory-labyrinth", "The Memory Labyrinth",
            (ChallengeType.MEMORY_MATCH, ChallengeType.GAS_TEST),
            ("Gas Tests", "Ion Identification"),
            ("Chemical Equations",), 20
        ),
        Realm(
            "virtual-apprentice", "Virtual Apprentice",
            (ChallengeType.LAB_PROCEDURE,),
            ("Lab Techniques",),
            ("Gas Tests",), 15
        ),
        Realm(
            "seers-challenge", "The Seer's Challenge",
            (ChallengeType.PRECIPITATION_POKER, ChallengeType.COLOR_CLASH, ChallengeType.MYSTERY_REACTION),
            ("Precipitation Reactions", "Observations"),
            ("Ion Identification",), 18
        ),
        Realm(
            "cartographers-gauntlet", "The Cartographer's Gauntlet",
            (ChallengeType.GRAPH_JOUST, ChallengeType.ERROR_HUNTER, ChallengeType.UNCERTAINTY_GOLEM),
            ("Data Analysis", "Graph Interpretation"),
            ("Lab Techniques",), 12
        ),
        Realm(
            "forest-of-isomers", "The Forest of Isomers",
            (ChallengeType.ORGANIC_NAMING,),
            ("Organic Chemistry",),
            ("Chemical Equations", "Lab Techniques"), 22
        ),
    )
}


@dataclass(frozen=True)
class AttemptRecord(SerializableMixin):
    """
    One challenge attempt, validated and normalized by the ingestor.

    Immutable once created. Concept names are stored in display form; the
    aggregator keys statistics by their case-folded form.
    """
    attempt_id: str
    user_id: str
    challenge_id: str
    challenge_type: ChallengeType
    concepts: FrozenSet[str]
    is_correct: bool
    score: float
    time_elapsed_sec: float
    hints_used: int
    timestamp: datetime.datetime
    realm_id: Optional[str] = None
    answer: Optional[Dict[str, Any]] = None

    __serializable_fields__ = [
        "attempt_id", "user_id", "challenge_id", "challenge_type", "concepts",
        "is_correct", "score", "time_elapsed_sec", "hints_used", "timestamp",
        "realm_id", "answer"
    ]


@dataclass
class PairStats(SerializableMixin):
    """Attempt counters for one slice of activity (a challenge type, a realm pair)."""
    attempts: int = 0
    successes: int = 0
    total_time: float = 0.0
    last_attempt_at: Optional[datetime.datetime] = None

    __serializable_fields__ = ["attempts", "successes", "total_time", "last_attempt_at"]
    __optional_fields__ = ["total_time", "last_attempt_at"]

    @property
    def accuracy(self) -> float:
        return safe_divide(self.successes, self.attempts)

    def record(self, is_correct: bool, time_sec: float, at: datetime.datetime) -> None:
        self.attempts += 1
        self.successes += 1 if is_correct else 0
        self.total_time += time_sec
        self.last_attempt_at = at

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PairStats':
        kwargs = cls._collect_kwargs(data)
        kwargs["last_attempt_at"] = parse_datetime(kwargs.get("last_attempt_at"))
        return cls(**kwargs)


@dataclass
class ConceptPerformance:
    """
    Rolling statistics for one (user, concept).

    Mutated only by the aggregator while it holds the user's lock.
    """
    concept: str
    window_size: int = 20
    attempts: int = 0
    successes: int = 0
    total_time: float = 0.0
    recent_window: Deque[bool] = field(default_factory=deque)
    trend: Trend = Trend.STABLE
    confidence_level: float = 0.0
    last_attempt_at: Optional[datetime.datetime] = None
    pair_stats: Dict[Tuple[str, str], PairStats] = field(default_factory=dict)
    challenge_ids: set = field(default_factory=set)

    def __post_init__(self):
        if self.recent_window.maxlen != self.window_size:
            self.recent_window = deque(self.recent_window, maxlen=self.window_size)

    @property
    def accuracy(self) -> float:
        """Fraction of correct attempts, in [0, 1]."""
        return safe_divide(self.successes, self.attempts)

    @property
    def average_time(self) -> float:
        """Mean seconds per attempt."""
        return safe_divide(self.total_time, self.attempts)

    @property
    def average_attempts(self) -> float:
        """Mean attempts per distinct challenge."""
        return safe_divide(self.attempts, len(self.challenge_ids), default=float(self.attempts))

    def weakest_pair(self) -> Tuple[Optional[str], Optional[str]]:
        """
        The (challenge type, realm) slice with the lowest accuracy.

        Ties go to the slice with more attempts.

        Returns:
            Tuple of challenge type value and realm id, or (None, None)
        """
        if not self.pair_stats:
            return None, None
        (challenge_type, realm_id), _ = min(
            self.pair_stats.items(),
            key=lambda item: (item[1].accuracy, -item[1].attempts)
        )
        return challenge_type, realm_id or None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "concept": self.concept,
            "window_size": self.window_size,
            "attempts": self.attempts,
            "successes": self.successes,
            "total_time": self.total_time,
            "recent_window": list(self.recent_window),
            "trend": self.trend.value,
            "confidence_level": self.confidence_level,
            "last_attempt_at": serialize(self.last_attempt_at),
            "pair_stats": [
                {"challenge_type": challenge_type, "realm_id": realm_id, **stats.to_dict()}
                for (challenge_type, realm_id), stats in self.pair_stats.items()
            ],
            "challenge_ids": sorted(self.challenge_ids),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConceptPerformance':
        window_size = data.get("window_size", 20)
        pair_stats = {}
        for item in data.get("pair_stats", []):
            key = (item["challenge_type"], item.get("realm_id") or "")
            pair_stats[key] = PairStats.from_dict(item)
        return cls(
            concept=data["concept"],
            window_size=window_size,
            attempts=data.get("attempts", 0),
            successes=data.get("successes", 0),
            total_time=data.get("total_time", 0.0),
            recent_window=deque(data.get("recent_window", []), maxlen=window_size),
            trend=Trend(data.get("trend", Trend.STABLE.value)),
            confidence_level=data.get("confidence_level", 0.0),
            last_attempt_at=parse_datetime(data.get("last_attempt_at")),
            pair_stats=pair_stats,
            challenge_ids=set(data.get("challenge_ids", [])),
        )


@dataclass
class RealmStats(SerializableMixin):
    """Per-realm activity for one user."""
    challenge_ids: set = field(default_factory=set)
    attempts: int = 0
    total_score: float = 0.0
    time_spent: float = 0.0

    __serializable_fields__ = ["challenge_ids", "attempts", "total_score", "time_spent"]
    __optional_fields__ = __serializable_fields__

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RealmStats':
        kwargs = cls._collect_kwargs(data)
        kwargs["challenge_ids"] = set(kwargs.get("challenge_ids", []))
        return cls(**kwargs)


@dataclass
class UserPerformance:
    """All rolling statistics the aggregator keeps for one user."""
    user_id: str
    concepts: Dict[str, ConceptPerformance] = field(default_factory=dict)
    total_attempts: int = 0
    total_correct: int = 0
    total_time: float = 0.0
    type_stats: Dict[str, PairStats] = field(default_factory=dict)
    realm_stats: Dict[str, RealmStats] = field(default_factory=dict)
    last_attempt_at: Optional[datetime.datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "concepts": {key: concept.to_dict() for key, concept in self.concepts.items()},
            "total_attempts": self.total_attempts,
            "total_correct": self.total_correct,
            "total_time": self.total_time,
            "type_stats": {key: stats.to_dict() for key, stats in self.type_stats.items()},
            "realm_stats": {key: serialize(stats) for key, stats in self.realm_stats.items()},
            "last_attempt_at": serialize(self.last_attempt_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UserPerformance':
        return cls(
            user_id=data["user_id"],
            concepts={
                key: ConceptPerformance.from_dict(value)
                for key, value in data.get("concepts", {}).items()
            },
            total_attempts=data.get("total_attempts", 0),
            total_correct=data.get("total_correct", 0),
            total_time=data.get("total_time", 0.0),
            type_stats={
                key: PairStats.from_dict(value)
                for key, value in data.get("type_stats", {}).items()
            },
            realm_stats={
                key: RealmStats.from_dict(value)
                for key, value in data.get("realm_stats", {}).items()
            },
            last_attempt_at=parse_datetime(data.get("last_attempt_at")),
        )


@dataclass
class ConceptSummary(SerializableMixin):
    """Read-only view of one concept for dashboards."""
    concept: str
    accuracy: float
    attempts: int
    average_time: float
    trend: Trend
    confidence_level: float
    last_attempt_at: Optional[datetime.datetime] = None

    __serializable_fields__ = [
        "concept", "accuracy", "attempts", "average_time", "trend",
        "confidence_level", "last_attempt_at"
    ]

    @classmethod
    def of(cls, performance: ConceptPerformance) -> 'ConceptSummary':
        return cls(
            concept=performance.concept,
            accuracy=performance.accuracy,
            attempts=performance.attempts,
            average_time=performance.average_time,
            trend=performance.trend,
            confidence_level=performance.confidence_level,
            last_attempt_at=performance.last_attempt_at,
        )


@dataclass
class RealmProgress(SerializableMixin):
    """How far a user has got through a realm."""
    realm_id: str
    realm_name: str
    challenges_completed: int
    completion_percentage: float
    average_score: float
    time_spent: float

    __serializable_fields__ = [
        "realm_id", "realm_name", "challenges_completed",
        "completion_percentage", "average_score", "time_spent"
    ]


@dataclass
class PerformanceMetrics(SerializableMixin):
    """
    Per-user rollup served to dashboards.

    Derived from ``UserPerformance`` and cached until the next attempt for the
    user. ``stale`` is set when the value is a fallback snapshot served while
    the cache was unavailable.
    """
    user_id: str
    overall_accuracy: float = 0.0
    average_response_time: float = 0.0
    strongest_concepts: List[ConceptSummary] = field(default_factory=list)
    weakest_concepts: List[ConceptSummary] = field(default_factory=list)
    total_challenges_completed: int = 0
    total_time_spent: float = 0.0
    challenge_type_accuracy: Dict[str, float] = field(default_factory=dict)
    realm_progress: List[RealmProgress] = field(default_factory=list)
    computed_at: Optional[datetime.datetime] = None
    stale: bool = False

    __serializable_fields__ = [
        "user_id", "overall_accuracy", "average_response_time",
        "strongest_concepts", "weakest_concepts", "total_challenges_completed",
        "total_time_spent", "challenge_type_accuracy", "realm_progress",
        "computed_at", "stale"
    ]

    def as_stale(self) -> 'PerformanceMetrics':
        """Copy of these metrics flagged as a stale fallback."""
        return dataclasses.replace(self, stale=True)


@dataclass
class WeakArea(SerializableMixin):
    """A concept with enough attempts and low enough accuracy to need work."""
    concept: str
    challenge_type: Optional[str]
    realm_id: Optional[str]
    accuracy: float
    average_attempts: float
    priority: Priority
    recommended_actions: List[str] = field(default_factory=list)
    trend: Trend = Trend.STABLE
    last_attempt_at: Optional[datetime.datetime] = None

    __serializable_fields__ = [
        "concept", "challenge_type", "realm_id", "accuracy", "average_attempts",
        "priority", "recommended_actions", "trend", "last_attempt_at"
    ]
