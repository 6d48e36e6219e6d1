"""
Attempt Event Schemas

Inbound attempt events from the game engine. The ``answer`` payload is a
tagged union keyed by ``challenge_type``: each challenge type has exactly one
answer model, and an answer that does not match its type's model is rejected
at the boundary.
"""

import datetime
import math
from typing import Any, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, Extra, Field, conint, conlist, constr, validator

from progression.common.utils import to_naive_local
from progression.performance.models import ChallengeType


class AnswerPayload(BaseModel):
    """Base class for per-challenge-type answers."""

    class Config:
        extra = Extra.forbid
        anystr_strip_whitespace = True


class EquationBalanceAnswer(AnswerPayload):
    """Stoichiometric coefficients in reactant-then-product order."""
    coefficients: conlist(conint(ge=1), min_items=2)


class NumericAnswer(AnswerPayload):
    """A calculated quantity."""
    value: float
    unit: Optional[constr(max_length=32)] = None
    significant_figures: Optional[conint(ge=1, le=12)] = None


class IdentificationAnswer(AnswerPayload):
    """Name of the identified gas, ion or precipitate."""
    identified: constr(min_length=1, max_length=128)
    observations: List[constr(max_length=256)] = Field(default_factory=list)


class OrganicNameAnswer(AnswerPayload):
    """IUPAC name of a structure."""
    name: constr(min_length=1, max_length=256)


class StepSequenceAnswer(AnswerPayload):
    """Ordered procedure or mechanism steps."""
    steps: conlist(constr(min_length=1, max_length=256), min_items=1)


class MatchPairsAnswer(AnswerPayload):
    """Pairs matched in a memory game."""
    pairs: conlist(Tuple[constr(min_length=1), constr(min_length=1)], min_items=1)


class ChoiceAnswer(AnswerPayload):
    """A single selected option."""
    selected: constr(min_length=1, max_length=256)


ANSWER_MODELS: Dict[ChallengeType, Type[AnswerPayload]] = {
    ChallengeType.EQUATION_BALANCE: EquationBalanceAnswer,
    ChallengeType.STOICHIOMETRY: NumericAnswer,
    ChallengeType.GAS_TEST: IdentificationAnswer,
    ChallengeType.ION_IDENTIFICATION: IdentificationAnswer,
    ChallengeType.LAB_PROCEDURE: StepSequenceAnswer,
    ChallengeType.PRECIPITATION: IdentificationAnswer,
    ChallengeType.COLOR_CHANGE: ChoiceAnswer,
    ChallengeType.DATA_ANALYSIS: NumericAnswer,
    ChallengeType.ORGANIC_NAMING: OrganicNameAnswer,
    ChallengeType.MECHANISM: StepSequenceAnswer,
    ChallengeType.ISOMER_IDENTIFICATION: OrganicNameAnswer,
    ChallengeType.MEMORY_MATCH: MatchPairsAnswer,
    ChallengeType.QUICK_RECALL: ChoiceAnswer,
    ChallengeType.SURVIVAL: ChoiceAnswer,
    ChallengeType.STEP_BY_STEP: StepSequenceAnswer,
    ChallengeType.TIME_ATTACK: ChoiceAnswer,
    ChallengeType.BOSS_BATTLE: ChoiceAnswer,
    ChallengeType.PRECIPITATION_POKER: IdentificationAnswer,
    ChallengeType.COLOR_CLASH: ChoiceAnswer,
    ChallengeType.MYSTERY_REACTION: IdentificationAnswer,
    ChallengeType.GRAPH_JOUST: NumericAnswer,
    ChallengeType.ERROR_HUNTER: ChoiceAnswer,
    ChallengeType.UNCERTAINTY_GOLEM: NumericAnswer,
}


def answer_model_for(challenge_type: ChallengeType) -> Type[AnswerPayload]:
    """Answer model registered for ``challenge_type``."""
    return ANSWER_MODELS.get(challenge_type, ChoiceAnswer)


class AttemptEvent(BaseModel):
    """
    A challenge attempt as submitted by the game engine.

    ``attempt_id`` is optional; when omitted the ingestor derives a stable id
    from the user, challenge and timestamp so that replays are still
    recognised.
    """
    attempt_id: Optional[constr(strip_whitespace=True, min_length=1, max_length=128)] = None
    user_id: constr(strip_whitespace=True, min_length=1, max_length=128)
    challenge_id: constr(strip_whitespace=True, min_length=1, max_length=128)
    challenge_type: ChallengeType
    concepts: conlist(str, min_items=1)
    is_correct: bool
    score: float = Field(..., ge=0)
    time_elapsed_sec: float = Field(..., ge=0)
    hints_used: int = Field(0, ge=0)
    timestamp: Optional[datetime.datetime] = None
    realm_id: Optional[constr(strip_whitespace=True, min_length=1, max_length=64)] = None
    answer: Optional[Dict[str, Any]] = None

    class Config:
        extra = Extra.ignore

    @validator('challenge_type', pre=True)
    def normalize_challenge_type(cls, v):
        """Accept any casing and surrounding whitespace"""
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @validator('score', 'time_elapsed_sec')
    def require_finite(cls, v):
        """Reject infinities and NaN"""
        if not math.isfinite(v):
            raise ValueError("must be a finite number")
        return v

    @validator('concepts')
    def normalize_concepts(cls, v):
        """Strip names, drop blanks and collapse case-insensitive duplicates"""
        seen = set()
        normalized = []
        for raw in v:
            name = " ".join(str(raw).split())
            if not name or name.casefold() in seen:
                continue
            seen.add(name.casefold())
            normalized.append(name)
        if not normalized:
            raise ValueError("at least one non-empty concept is required")
        return normalized

    @validator('timestamp')
    def normalize_timestamp(cls, v):
        """Convert aware timestamps to naive local time"""
        return to_naive_local(v)

    @validator('answer')
    def validate_answer(cls, v, values):
        """Validate the answer against the model for its challenge type"""
        if v is None or 'challenge_type' not in values:
            return v
        model = answer_model_for(values['challenge_type'])
        return model.parse_obj(v).dict()
