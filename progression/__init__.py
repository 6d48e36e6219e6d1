"""
ChemQuest Progression Engine

Learning-progression backend for an educational chemistry game:

1. Ingestion of challenge attempts with rolling per-concept statistics
2. Weak-area prioritization and personalized recommendations
3. Adaptive difficulty per challenge type
4. Login streaks with multipliers, milestones and recovery
5. Concurrent leaderboard rankings
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from progression.common.logger import app_logger

logger = app_logger.getChild("app")

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI application lifespan context manager.

    Starts the maintenance job on startup and stops it, cancelling any pass
    in progress, on shutdown.
    """
    logger.info("Application startup sequence initiated.")
    job = app.state.maintenance_job
    if job.config.enabled:
        await job.start()
    else:
        logger.info("Maintenance job disabled")

    yield

    logger.info("Application shutdown sequence initiated.")
    await job.stop()
    logger.info("Application shutdown sequence complete.")


def create_app(service=None, app_name: Optional[str] = None) -> FastAPI:
    """
    Create and configure a FastAPI application instance.

    Args:
        service: ``ProgressionService`` to serve; one is built from the
            configuration when omitted
        app_name: Title of the application

    Returns:
        Configured FastAPI application
    """
    from fastapi.exceptions import RequestValidationError
    from fastapi.middleware.cors import CORSMiddleware

    from progression.api import build_main_router, progression_error_handler, validation_exception_handler
    from progression.common.config import get_config
    from progression.common.exceptions import BaseError
    from progression.jobs import MaintenanceJob
    from progression.service import create_progression_service

    config = get_config()
    service = service or create_progression_service(config)

    app = FastAPI(
        title=app_name or config.app_name,
        description="Learning progression, adaptive difficulty, streaks and leaderboards",
        version=__version__,
        lifespan=lifespan
    )
    app.state.progression_service = service
    app.state.maintenance_job = MaintenanceJob(service, service.config.maintenance)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(build_main_router(), prefix=config.api.prefix)

    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(BaseError, progression_error_handler)

    logger.info(f"Application created with {len(app.routes)} routes")
    return app
