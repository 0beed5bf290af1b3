"""
Configuration Utility - Environment Variables Management

Centralized configuration loading from .env files using pydantic-settings.
Type-safe access to all environment variables with validation.

Only the process entry point resolves settings from the environment; the sync
engine components receive the Settings instance through their constructors.

Usage:
    from campaign_sync.utils.config import get_settings

    settings = get_settings()
    orchestrator = SyncOrchestrator(settings)
"""

from functools import lru_cache

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Ad Platform API
    AD_PLATFORM_API_URL: str = Field(default="http://localhost:3001")
    AD_PLATFORM_EMAIL: str = Field(..., min_length=1)
    AD_PLATFORM_PASSWORD: SecretStr = Field(...)

    # Per-endpoint deadlines (seconds)
    AUTH_TIMEOUT: float = Field(default=10.0, gt=0)
    LIST_TIMEOUT: float = Field(default=15.0, gt=0)
    SYNC_TIMEOUT: float = Field(default=30.0, gt=0)

    # Retry policy
    MAX_RETRIES: int = Field(default=3, ge=0)
    RETRY_BASE_DELAY: float = Field(default=1.0, gt=0)
    RETRY_MAX_DELAY: float = Field(default=30.0, gt=0)
    RATE_LIMIT_MAX_RETRIES: int = Field(default=10, ge=1)
    RATE_LIMIT_DEFAULT_WAIT: float = Field(default=60.0, gt=0)
    RATE_LIMIT_SAFETY_MARGIN: float = Field(default=0.25, ge=0)

    # Token lifecycle
    TOKEN_REFRESH_BUFFER: float = Field(default=60.0, ge=0)

    # Pagination
    PAGE_SIZE: int = Field(default=10, ge=1)
    MAX_PAGES: int = Field(default=100, ge=1)
    ALLOW_PARTIAL_PAGINATION: bool = Field(default=False)

    # Dispatch
    SYNC_CONCURRENCY: int = Field(default=3, ge=1)

    # Database Configuration
    DATABASE_URL: str = Field(default="sqlite+aiosqlite:///./data/campaigns.db")
    DB_POOL_SIZE: int = Field(default=5, ge=1)
    DB_POOL_TIMEOUT: float = Field(default=10.0, gt=0)

    # Scheduler Configuration
    SYNC_SCHEDULE_CRON: str = Field(default="0 3 * * *")
    SHUTDOWN_GRACE_PERIOD: float = Field(default=10.0, ge=0)

    # Redis Configuration
    PUBLISH_EVENTS: bool = Field(default=False)
    REDIS_URL: str = Field(default="redis://redis:6379/0")
    REDIS_MAX_CONNECTIONS: int = Field(default=10, ge=1)
    REDIS_CHANNEL_SYNCED: str = Field(default="campaigns.synced")
    REDIS_CHANNEL_DLQ: str = Field(default="campaigns.dlq")

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")

    # Application Metadata
    ENVIRONMENT: str = Field(default="production")
    APP_NAME: str = Field(default="campaign-sync")
    APP_VERSION: str = Field(default="0.1.0")

    @model_validator(mode="after")
    def _check_delays(self) -> "Settings":
        if self.RETRY_MAX_DELAY < self.RETRY_BASE_DELAY:
            raise ValueError("RETRY_MAX_DELAY must be >= RETRY_BASE_DELAY")
        if self.LOG_FORMAT not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be 'json' or 'text'")
        return self

    @property
    def api_base_url(self) -> str:
        return self.AD_PLATFORM_API_URL.rstrip("/")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Singleton Settings instance
    """
    return Settings()
