"""
Performance Controllers

API endpoints for attempt submission, performance metrics, weak areas and
adaptive difficulty. Handlers are plain functions so FastAPI runs them on its
thread pool; the engine underneath is synchronous and thread-safe.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from progression.api import APIResponse, EnvelopeResponse
from progression.dependencies import get_progression_service
from progression.performance.difficulty import RecentPerformance
from progression.performance.events import AttemptEvent
from progression.service import ProgressionService

router = APIRouter(tags=["Performance"])


class RecentPerformanceRequest(BaseModel):
    accuracy: float = Field(..., ge=0, le=1, description="Recent accuracy between 0 and 1")
    average_time_sec: float = Field(0.0, ge=0, description="Average seconds per answer")
    streak: int = Field(0, ge=0, description="Current run of correct answers")


@router.post("/attempts", response_model=EnvelopeResponse, status_code=status.HTTP_201_CREATED)
def submit_attempt(
    event: AttemptEvent,
    service: ProgressionService = Depends(get_progression_service)
) -> Dict[str, Any]:
    """
    Submit one challenge attempt.

    A replayed attempt id is acknowledged without being applied again.
    """
    result = service.record_attempt(event)
    message = "Attempt already recorded" if result.duplicate else "Attempt recorded"
    return APIResponse.success(result, message)


@router.get("/users/{user_id}/metrics", response_model=EnvelopeResponse)
def get_metrics(
    user_id: str,
    service: ProgressionService = Depends(get_progression_service)
) -> Dict[str, Any]:
    """Get the user's performance rollup."""
    return APIResponse.success(service.get_performance_metrics(user_id))


@router.get("/users/{user_id}/weak-areas", response_model=EnvelopeResponse)
def get_weak_areas(
    user_id: str,
    service: ProgressionService = Depends(get_progression_service)
) -> Dict[str, Any]:
    """Get the user's weak areas, weakest first."""
    return APIResponse.success(service.identify_weak_areas(user_id))


@router.get("/users/{user_id}/difficulty/{challenge_type}", response_model=EnvelopeResponse)
def get_difficulty(
    user_id: str,
    challenge_type: str,
    service: ProgressionService = Depends(get_progression_service)
) -> Dict[str, Any]:
    """Get the recommended difficulty for a challenge type."""
    level = service.get_recommended_difficulty(user_id, challenge_type)
    return APIResponse.success({"user_id": user_id, "challenge_type": challenge_type, "level": level})


@router.post("/users/{user_id}/difficulty/{challenge_type}/adjust", response_model=EnvelopeResponse)
def adjust_difficulty(
    user_id: str,
    challenge_type: str,
    request: RecentPerformanceRequest,
    service: ProgressionService = Depends(get_progression_service)
) -> Dict[str, Any]:
    """Adjust the difficulty for a challenge type from recent play."""
    result = service.adjust_difficulty_real_time(
        user_id,
        challenge_type,
        RecentPerformance(
            accuracy=request.accuracy,
            average_time_sec=request.average_time_sec,
            streak=request.streak,
        )
    )
    return APIResponse.success(result.to_dict(), "Difficulty adjusted" if result.changed else "Difficulty unchanged")
