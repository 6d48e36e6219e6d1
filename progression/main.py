"""
Main application entry point for the progression engine.

Usage:
    - Direct: python -m progression.main
    - ASGI server: uvicorn progression.main:app
"""

import os

from progression import create_app
from progression.common.config import reload_config
from progression.common.logger import app_logger, configure_logger
from progression.config import settings

logger = app_logger.getChild("main")

if settings.CONFIG_PATH:
    reload_config(settings.CONFIG_PATH)

configure_logger(level=settings.LOG_LEVEL, use_json=settings.LOG_JSON, log_file=settings.LOG_FILE)

app = create_app(app_name=settings.PROJECT_NAME)

logger.info(f"Environment: {os.environ.get('ENV', 'development')}")

# Entry point for running the application directly
if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting server on {settings.HOST}:{settings.PORT} (reload: {settings.RELOAD})")

    uvicorn.run(
        "progression.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.RELOAD,
        log_level=settings.LOG_LEVEL.lower()
    )
