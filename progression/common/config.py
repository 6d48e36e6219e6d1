"""
Centralized Configuration for the Progression Engine

Configuration comes from defaults, an optional YAML or JSON file and
environment variables (highest priority), validated by pydantic models.
Every tunable constant of the statistics, difficulty, streak and leaderboard
components lives here rather than in the components themselves.
"""

import os
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, ValidationError, validator
import yaml

from progression.common.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class RedisConfig(BaseModel):
    """Redis configuration"""
    host: str = Field(default="localhost", env="REDIS_HOST")
    port: int = Field(default=6379, env="REDIS_PORT")
    db: int = Field(default=0, env="REDIS_DB")
    password: Optional[str] = Field(default=None, env="REDIS_PASSWORD")
    use_ssl: bool = Field(default=False, env="REDIS_USE_SSL")
    connection_timeout: int = Field(default=10, env="REDIS_CONNECTION_TIMEOUT")

    @property
    def connection_string(self) -> str:
        """Get the Redis connection string"""
        protocol = "rediss" if self.use_ssl else "redis"
        auth = f":{self.password}@" if self.password else ""
        return f"{protocol}://{auth}{self.host}:{self.port}/{self.db}"


class CacheConfig(BaseModel):
    """Metrics cache configuration"""
    enabled: bool = Field(default=True, env="CACHE_ENABLED")
    metrics_ttl: int = Field(default=300, env="CACHE_METRICS_TTL")  # 5 minutes
    memory_max_size: int = Field(default=10000, env="CACHE_MEMORY_MAX_SIZE")


class LoggingConfig(BaseModel):
    """Logging configuration"""
    level: str = Field(default="INFO", env="LOG_LEVEL")
    use_json: bool = Field(default=False, env="LOG_JSON")
    file_path: Optional[str] = Field(default=None, env="LOG_FILE")

    @validator('level')
    def validate_level(cls, v):
        """Validate log level"""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()


class APIConfig(BaseModel):
    """API configuration"""
    host: str = Field(default="0.0.0.0", env="API_HOST")
    port: int = Field(default=8000, env="API_PORT")
    workers: int = Field(default=1, env="API_WORKERS")
    reload: bool = Field(default=False, env="API_RELOAD")
    prefix: str = Field(default="/api", env="API_PREFIX")
    allow_origins: List[str] = Field(default=["http://localhost:3000"], env="ALLOW_ORIGINS")


class EnvironmentConfig(BaseModel):
    """Environment configuration"""
    env: str = Field(default="development", env="ENV")
    testing: bool = Field(default=False, env="TESTING")

    @validator('env')
    def validate_env(cls, v):
        """Validate environment"""
        valid_envs = ['development', 'testing', 'staging', 'production']
        if v.lower() not in valid_envs:
            raise ValueError(f"Invalid environment: {v}. Must be one of {valid_envs}")
        return v.lower()


class PerformanceConfig(BaseModel):
    """Rolling statistics and weak-area thresholds"""
    window_size: int = Field(default=20, env="PERF_WINDOW_SIZE")
    min_sample_size: int = Field(default=3, env="PERF_MIN_SAMPLE_SIZE")
    weak_threshold: float = Field(default=0.6, env="PERF_WEAK_THRESHOLD")
    trend_delta: float = Field(default=0.1, env="PERF_TREND_DELTA")
    confidence_saturation: int = Field(default=20, env="PERF_CONFIDENCE_SATURATION")
    confidence_sample_weight: float = Field(default=0.6, env="PERF_CONFIDENCE_SAMPLE_WEIGHT")
    recency_decay: float = Field(default=0.85, env="PERF_RECENCY_DECAY")
    recent_days: int = Field(default=7, env="PERF_RECENT_DAYS")
    top_concepts: int = Field(default=5, env="PERF_TOP_CONCEPTS")
    max_score: float = Field(default=100.0, env="PERF_MAX_SCORE")
    dedup_capacity: int = Field(default=100000, env="PERF_DEDUP_CAPACITY")
    max_time_elapsed_sec: float = Field(default=86400.0, env="PERF_MAX_TIME_ELAPSED")

    @validator('weak_threshold', 'trend_delta', 'confidence_sample_weight', 'recency_decay')
    def validate_ratio(cls, v):
        """Ratios must lie in [0, 1]"""
        if not 0 <= v <= 1:
            raise ValueError(f"Value must be between 0 and 1, got {v}")
        return v

    @validator('window_size', 'min_sample_size', 'confidence_saturation', 'top_concepts')
    def validate_positive(cls, v):
        """Counts must be positive"""
        if v < 1:
            raise ValueError(f"Value must be at least 1, got {v}")
        return v


class DifficultyConfig(BaseModel):
    """Adaptive difficulty feedback loop"""
    min_level: int = Field(default=1, env="DIFFICULTY_MIN_LEVEL")
    max_level: int = Field(default=10, env="DIFFICULTY_MAX_LEVEL")
    starting_level: int = Field(default=1, env="DIFFICULTY_STARTING_LEVEL")
    promote_threshold: int = Field(default=3, env="DIFFICULTY_PROMOTE_THRESHOLD")
    demote_threshold: int = Field(default=2, env="DIFFICULTY_DEMOTE_THRESHOLD")
    cooldown_seconds: float = Field(default=60.0, env="DIFFICULTY_COOLDOWN_SECONDS")
    fast_time_seconds: float = Field(default=30.0, env="DIFFICULTY_FAST_TIME")
    slow_time_seconds: float = Field(default=180.0, env="DIFFICULTY_SLOW_TIME")
    history_size: int = Field(default=50, env="DIFFICULTY_HISTORY_SIZE")

    @validator('max_level')
    def validate_bounds(cls, v, values):
        """Upper bound must not be below the lower bound"""
        if 'min_level' in values and v < values['min_level']:
            raise ValueError(f"max_level {v} is below min_level {values['min_level']}")
        return v

    @validator('starting_level')
    def validate_starting_level(cls, v, values):
        """Starting level must lie inside the bounds"""
        low, high = values.get('min_level', 1), values.get('max_level', 10)
        if not low <= v <= high:
            raise ValueError(f"starting_level {v} must be within [{low}, {high}]")
        return v


class StreakConfig(BaseModel):
    """Login streak state machine"""
    minimum_streak: int = Field(default=3, env="STREAK_MINIMUM")
    multiplier_step: float = Field(default=0.05, env="STREAK_MULTIPLIER_STEP")
    multiplier_growth_days: int = Field(default=30, env="STREAK_MULTIPLIER_GROWTH_DAYS")
    max_multiplier: float = Field(default=2.5, env="STREAK_MAX_MULTIPLIER")
    initial_recoveries: int = Field(default=1, env="STREAK_INITIAL_RECOVERIES")
    max_recoveries: int = Field(default=2, env="STREAK_MAX_RECOVERIES")
    recovery_grace_days: int = Field(default=2, env="STREAK_RECOVERY_GRACE_DAYS")
    monthly_refill: bool = Field(default=True, env="STREAK_MONTHLY_REFILL")

    @validator('recovery_grace_days')
    def validate_grace(cls, v):
        """A grace window shorter than two days would never apply"""
        if v < 2:
            raise ValueError(f"recovery_grace_days must be at least 2, got {v}")
        return v


class LeaderboardConfig(BaseModel):
    """Leaderboard ranking"""
    default_limit: int = Field(default=50, env="LEADERBOARD_DEFAULT_LIMIT")
    max_limit: int = Field(default=500, env="LEADERBOARD_MAX_LIMIT")
    auto_create_categories: bool = Field(default=True, env="LEADERBOARD_AUTO_CREATE")


class StorageConfig(BaseModel):
    """State persistence collaborator"""
    backend: str = Field(default="memory", env="STORAGE_BACKEND")
    key_prefix: str = Field(default="progression:", env="STORAGE_KEY_PREFIX")
    max_conflict_retries: int = Field(default=3, env="STORAGE_MAX_CONFLICT_RETRIES")
    lock_shards: int = Field(default=64, env="STORAGE_LOCK_SHARDS")
    idle_eviction_seconds: float = Field(default=1800.0, env="STORAGE_IDLE_EVICTION_SECONDS")

    @validator('backend')
    def validate_backend(cls, v):
        """Validate storage backend"""
        valid_backends = ['memory', 'redis']
        if v.lower() not in valid_backends:
            raise ValueError(f"Invalid storage backend: {v}. Must be one of {valid_backends}")
        return v.lower()


class MaintenanceConfig(BaseModel):
    """Background recomputation job"""
    enabled: bool = Field(default=True, env="MAINTENANCE_ENABLED")
    interval_seconds: float = Field(default=60.0, env="MAINTENANCE_INTERVAL")
    warm_metrics: bool = Field(default=True, env="MAINTENANCE_WARM_METRICS")
    rebuild_leaderboards: bool = Field(default=True, env="MAINTENANCE_REBUILD_LEADERBOARDS")
    evict_idle_users: bool = Field(default=True, env="MAINTENANCE_EVICT_IDLE_USERS")


SECTIONS = (
    "redis", "cache", "logging", "api", "environment", "performance",
    "difficulty", "streak", "leaderboard", "storage", "maintenance"
)


class AppConfig(BaseModel):
    """Main application configuration"""
    app_name: str = Field(default="ChemQuest Progression", env="APP_NAME")
    version: str = Field(default="0.1.0", env="APP_VERSION")
    redis: RedisConfig = Field(default_factory=RedisConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    environment: EnvironmentConfig = Field(default_factory=EnvironmentConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    difficulty: DifficultyConfig = Field(default_factory=DifficultyConfig)
    streak: StreakConfig = Field(default_factory=StreakConfig)
    leaderboard: LeaderboardConfig = Field(default_factory=LeaderboardConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    maintenance: MaintenanceConfig = Field(default_factory=MaintenanceConfig)

    @property
    def is_testing(self) -> bool:
        """Check if environment is testing"""
        return self.environment.env == "testing" or self.environment.testing

    @property
    def is_production(self) -> bool:
        """Check if environment is production"""
        return self.environment.env == "production"


class ConfigLoader:
    """
    Configuration loader for the application.

    Loads configuration from:
    1. Default values
    2. Config file
    3. Environment variables (highest priority)
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize the config loader.

        Args:
            config_path: Path to config file (YAML or JSON)
        """
        self.config_path = config_path or os.environ.get("CONFIG_PATH")
        self._config: Optional[AppConfig] = None

    def load(self) -> AppConfig:
        """
        Load configuration from all sources.

        Returns:
            Loaded configuration

        Raises:
            ConfigurationError: If the file is unreadable or a value is invalid
        """
        if self._config is not None:
            return self._config

        data: Dict[str, Any] = {}
        if self.config_path:
            data = self._load_from_file(self.config_path)

        for section, overrides in self._load_from_env().items():
            merged = dict(data.get(section) or {})
            merged.update(overrides)
            data[section] = merged

        try:
            self._config = AppConfig(**data)
        except ValidationError as e:
            first = e.errors()[0]
            key = ".".join(str(part) for part in first["loc"])
            raise ConfigurationError(f"{key}: {first['msg']}", config_key=key) from e
        return self._config

    def _load_from_file(self, path: str) -> Dict[str, Any]:
        """
        Load configuration from a file.

        Args:
            path: Path to config file

        Returns:
            Loaded configuration dictionary
        """
        path = Path(path)
        if not path.exists():
            logger.warning(f"Config file not found: {path}")
            return {}

        suffix = path.suffix.lower()
        if suffix not in ['.yaml', '.yml', '.json']:
            raise ConfigurationError(f"unsupported config file format: {path.suffix}")

        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) if suffix != '.json' else json.load(f)
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.error(f"Error loading config file {path}: {e}")
            raise ConfigurationError(f"cannot read {path}: {e}") from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"{path} must contain a mapping of sections")
        return data

    def _load_from_env(self) -> Dict[str, Dict[str, Any]]:
        """
        Collect section overrides from the ``env`` names declared on each field.

        Returns:
            Mapping of section name to the overridden raw values
        """
        overrides: Dict[str, Dict[str, Any]] = {}
        for section in SECTIONS:
            section_model = AppConfig.__fields__[section].type_
            for name, model_field in section_model.__fields__.items():
                env_name = model_field.field_info.extra.get("env")
                if env_name and env_name in os.environ:
                    raw = os.environ[env_name]
                    if model_field.outer_type_ == List[str]:
                        raw = [item.strip() for item in raw.split(",") if item.strip()]
                    overrides.setdefault(section, {})[name] = raw
        return overrides


config_loader = ConfigLoader()
config = config_loader.load()


def get_config() -> AppConfig:
    """
    Get the loaded configuration.

    Returns:
        Loaded configuration
    """
    return config


def reload_config(config_path: Optional[str] = None) -> AppConfig:
    """
    Reload the configuration.

    Args:
        config_path: Path to config file

    Returns:
        Reloaded configuration
    """
    global config_loader, config
    config_loader = ConfigLoader(config_path)
    config = config_loader.load()
    return config
