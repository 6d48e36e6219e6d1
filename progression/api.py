"""
Central API router and utilities for the progression engine.

This module provides:
- The main router that includes every component router
- The standard response envelope
- Exception handlers mapping engine errors to HTTP status codes
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from progression.common.exceptions import (
    BaseError,
    ConflictError,
    DuplicateError,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from progression.common.logger import app_logger
from progression.common.serialization import serialize

logger = app_logger.getChild("api")

# Version prefix for all API routes
API_VERSION = "v1"

ERROR_STATUS_CODES = (
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY, "validation_error"),
    (NotFoundError, status.HTTP_404_NOT_FOUND, "not_found"),
    (DuplicateError, status.HTTP_409_CONFLICT, "duplicate"),
    (ConflictError, status.HTTP_409_CONFLICT, "version_conflict"),
    (StorageUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE, "storage_unavailable"),
)


class EnvelopeResponse(BaseModel):
    """Standard response envelope"""
    status: str
    message: str
    data: Optional[Any] = None


class APIResponse:
    """Standard API response structure"""

    @staticmethod
    def success(data: Any = None, message: str = "Success") -> Dict[str, Any]:
        """
        Create a success response.

        Args:
            data: Response data, serialized to JSON primitives
            message: Success message

        Returns:
            Response dictionary
        """
        return {
            "status": "success",
            "message": message,
            "data": serialize(data)
        }

    @staticmethod
    def error(message: str, details: Optional[Any] = None,
              code: Optional[str] = None) -> Dict[str, Any]:
        """
        Create an error response.

        Args:
            message: Error message
            details: Optional error details
            code: Optional error code

        Returns:
            Response dictionary
        """
        response = {
            "status": "error",
            "message": message
        }

        if details:
            response["details"] = details

        if code:
            response["code"] = code

        return response


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Handle request validation errors and return a standardized response.

    Args:
        request: The incoming request
        exc: The validation exception

    Returns:
        A JSON response with error details
    """
    error_details = []
    for error in exc.errors():
        error_details.append({
            "location": error.get("loc", []),
            "message": error.get("msg", "Unknown validation error"),
            "type": error.get("type", "")
        })

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=APIResponse.error("Validation error", serialize(error_details), "validation_error")
    )


async def progression_error_handler(request: Request, exc: BaseError) -> JSONResponse:
    """
    Map an engine error to its HTTP status.

    Args:
        request: The incoming request
        exc: The engine error

    Returns:
        A JSON error envelope
    """
    for error_type, status_code, code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            break
    else:
        status_code, code = status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error"

    details = exc.errors if isinstance(exc, ValidationError) else None
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({status_code}): {exc.message}")

    return JSONResponse(status_code=status_code, content=APIResponse.error(exc.message, details, code))


def build_main_router() -> APIRouter:
    """
    Create the main router with every component router under
    ``/{API_VERSION}/progression``.
    """
    from progression.gamification.controllers import router as gamification_router
    from progression.performance.controllers import router as performance_router
    from progression.recommendations.controllers import router as recommendations_router

    main_router = APIRouter()
    for router in (performance_router, gamification_router, recommendations_router):
        main_router.include_router(router, prefix=f"/{API_VERSION}/progression")
        logger.debug(f"Registered routes: {[route.path for route in router.routes]}")
    return main_router
