"""
FastAPI dependencies shared by the controllers.
"""

from fastapi import Request

from progression.service import ProgressionService


def get_progression_service(request: Request) -> ProgressionService:
    """The service instance the application was created with."""
    return request.app.state.progression_service
