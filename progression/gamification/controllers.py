"""
Gamification Controllers

API endpoints for logins, streaks and leaderboards.
"""

import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from progression.api import APIResponse, EnvelopeResponse
from progression.dependencies import get_progression_service
from progression.gamification.models import RecoveryType
from progression.service import ProgressionService

router = APIRouter(tags=["Gamification"])


class LoginRequest(BaseModel):
    user_id: str = Field(..., min_length=1, description="User ID")
    timestamp: Optional[datetime.datetime] = Field(None, description="Login time, defaults to now")


class RecoveryRequest(BaseModel):
    recovery_type: RecoveryType = Field(RecoveryType.FREE, description="Where the recovery comes from")


@router.post("/logins", response_model=EnvelopeResponse)
def record_login(
    request: LoginRequest,
    service: ProgressionService = Depends(get_progression_service)
) -> Dict[str, Any]:
    """Record a login and return the updated streak."""
    result = service.record_login(request.user_id, request.timestamp)
    return APIResponse.success(result, "Login recorded" if result.changed else "Already logged in today")


@router.get("/users/{user_id}/streak", response_model=EnvelopeResponse)
def get_streak(
    user_id: str,
    service: ProgressionService = Depends(get_progression_service)
) -> Dict[str, Any]:
    """Get the user's streak summary, milestones and recovery allowance."""
    return APIResponse.success({
        "stats": service.get_streak_stats(user_id),
        "milestones": service.get_streak_milestones(user_id),
        "recovery": service.get_recovery_options(user_id),
    })


@router.get("/users/{user_id}/streak/bonuses", response_model=EnvelopeResponse)
def get_streak_bonuses(
    user_id: str,
    service: ProgressionService = Depends(get_progression_service)
) -> Dict[str, Any]:
    """Get the bonuses the user's streak currently unlocks."""
    return APIResponse.success(service.get_current_bonus(user_id))


@router.post("/users/{user_id}/streak/recovery", response_model=EnvelopeResponse)
def use_streak_recovery(
    user_id: str,
    request: RecoveryRequest,
    service: ProgressionService = Depends(get_progression_service)
) -> Dict[str, Any]:
    """Spend one streak recovery."""
    used = service.use_streak_recovery(user_id, request.recovery_type)
    return APIResponse.success(
        {"recovered": used, "recovery": service.get_recovery_options(user_id)},
        "Streak recovery used" if used else "No streak recoveries available"
    )


@router.delete("/users/{user_id}/streak", response_model=EnvelopeResponse)
def reset_streak(
    user_id: str,
    service: ProgressionService = Depends(get_progression_service)
) -> Dict[str, Any]:
    """Reset the user's streak to zero."""
    service.reset_streak(user_id)
    return APIResponse.success(service.get_streak_stats(user_id), "Streak reset")


@router.get("/leaderboards", response_model=EnvelopeResponse)
def list_leaderboards(
    service: ProgressionService = Depends(get_progression_service)
) -> Dict[str, Any]:
    """List leaderboard categories."""
    return APIResponse.success(service.get_leaderboard_categories())


@router.get("/leaderboards/{category_id}", response_model=EnvelopeResponse)
def get_leaderboard(
    category_id: str,
    limit: Optional[int] = Query(None, ge=1, description="Number of entries to return"),
    service: ProgressionService = Depends(get_progression_service)
) -> Dict[str, Any]:
    """Get the top entries of a leaderboard."""
    return APIResponse.success(service.get_leaderboard(category_id, limit))


@router.get("/leaderboards/{category_id}/users/{user_id}", response_model=EnvelopeResponse)
def get_user_rank(
    category_id: str,
    user_id: str,
    count: int = Query(2, ge=0, le=50, description="Neighbours on each side"),
    service: ProgressionService = Depends(get_progression_service)
) -> Dict[str, Any]:
    """Get a user's rank and neighbouring entries."""
    rank = service.get_user_rank(user_id, category_id)
    return APIResponse.success({
        "user_id": user_id,
        "category_id": category_id,
        "rank": rank,
        "context": service.get_user_ranking_context(user_id, category_id, count),
    })
