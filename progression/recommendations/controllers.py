"""
Recommendation Controllers

API endpoints for recommended actions and learning paths.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, Query

from progression.api import APIResponse, EnvelopeResponse
from progression.dependencies import get_progression_service
from progression.service import ProgressionService

router = APIRouter(tags=["Recommendations"])


@router.get("/users/{user_id}/recommendations", response_model=EnvelopeResponse)
def get_recommendations(
    user_id: str,
    service: ProgressionService = Depends(get_progression_service)
) -> Dict[str, Any]:
    """Get the user's recommended next actions, highest priority first."""
    return APIResponse.success(service.generate_recommendations(user_id))


@router.get("/users/{user_id}/learning-path", response_model=EnvelopeResponse)
def get_learning_path(
    user_id: str,
    target_level: int = Query(10, ge=1, description="Level to work towards"),
    service: ProgressionService = Depends(get_progression_service)
) -> Dict[str, Any]:
    """Get a personalized learning path."""
    return APIResponse.success(service.generate_personalized_learning_path(user_id, target_level))
