from functools import lru_cache
from typing import Optional
import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator

ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"

LOCK_BACKEND_DATABASE = "database"
LOCK_BACKEND_MEMORY = "memory"


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


def reload_settings_from_environment() -> "Settings":
    """Drop the cached settings and rebuild them from the environment."""
    logger = structlog.get_logger()
    logger.info("settings_reload_started")
    get_settings.cache_clear()
    refreshed = get_settings()
    logger.info("settings_reload_completed")
    return refreshed


class Settings(BaseSettings):
    """
    Main configuration for partsmith.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "partsmith"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    DB_ECHO: bool = False
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 5
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600

    # Partition sets declared on disk (YAML)
    PARTITION_CONFIG_PATH: Optional[str] = None

    # Cooperative locks: "database" uses advisory locks, "memory" is single-process only
    LOCK_BACKEND: str = LOCK_BACKEND_DATABASE
    LOCK_NAMESPACE: str = "partsmith"

    # Batch movement defaults for migrate/undo
    DEFAULT_BATCH_COUNT: int = 1
    DEFAULT_LOCK_WAIT_SECONDS: float = 0.0

    MAX_INHERITANCE_DEPTH: int = 16
    PREMAKE_NOTIFY_CHANNEL: str = "partsmith_premake"
    # LISTEN for on-demand premake requests inside the API process
    PREMAKE_LISTENER_ENABLED: bool = True

    SCHEDULER_ENABLED: bool = False
    SCHEDULER_TIMEZONE: str = "UTC"

    # Comma-separated list of accepted API keys
    API_KEYS: str = ""

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """Centralized validation, grouped by concern."""
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )

        self._validate_lock_config()
        self._validate_batch_defaults()
        if self.TESTING:
            return self

        self._validate_database_config()
        return self

    def _validate_lock_config(self) -> None:
        if self.LOCK_BACKEND not in {LOCK_BACKEND_DATABASE, LOCK_BACKEND_MEMORY}:
            raise ValueError(
                f"LOCK_BACKEND must be '{LOCK_BACKEND_DATABASE}' or '{LOCK_BACKEND_MEMORY}'."
            )
        if self.is_production and self.LOCK_BACKEND == LOCK_BACKEND_MEMORY:
            raise ValueError(
                "LOCK_BACKEND=memory cannot coordinate several engine processes; use database in production."
            )
        if self.MAX_INHERITANCE_DEPTH < 1:
            raise ValueError("MAX_INHERITANCE_DEPTH must be >= 1.")

    def _validate_batch_defaults(self) -> None:
        if self.DEFAULT_BATCH_COUNT < 1:
            raise ValueError("DEFAULT_BATCH_COUNT must be >= 1.")
        if self.DEFAULT_LOCK_WAIT_SECONDS < 0:
            raise ValueError("DEFAULT_LOCK_WAIT_SECONDS must be >= 0.")

    def _validate_database_config(self) -> None:
        if self.is_production and not self.DATABASE_URL:
            raise ValueError("DATABASE_URL is required in production.")
        if self.DB_POOL_SIZE < 1:
            raise ValueError("DB_POOL_SIZE must be >= 1.")

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == ENV_PRODUCTION

    @property
    def api_keys(self) -> set[str]:
        return {key.strip() for key in self.API_KEYS.split(",") if key.strip()}
