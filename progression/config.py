"""Process-level settings for the progression API."""

from typing import Optional
from pydantic import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Server settings
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    RELOAD: bool = False

    # Logging settings
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False
    LOG_FILE: Optional[str] = None

    # API settings
    API_PREFIX: str = "/api"
    PROJECT_NAME: str = "ChemQuest Progression"

    # Engine configuration file (YAML or JSON)
    CONFIG_PATH: Optional[str] = None

    class Config:
        """Pydantic settings config."""
        env_file = ".env"
        case_sensitive = True


# Create global settings instance
settings = Settings()
