"""
Configuration Management

Uses Pydantic Settings for environment-based configuration.
Loads from .env file automatically.
"""

from typing import Optional
from functools import lru_cache
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Storage
    DATABASE_URL: Optional[str] = None
    SQLITE_PATH: str = "ranksheet_dev.db"
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 20

    # Analytics provider (keyword ASIN signals)
    ANALYTICS_API_URL: str = "http://localhost:8000"
    ANALYTICS_API_KEY: Optional[str] = None

    # Catalog provider (product metadata)
    CATALOG_API_URL: str = "http://localhost:3001/api"
    CATALOG_API_KEY: Optional[str] = None

    # Application Settings
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    IP_HASH_SALT: str = "ranksheet"

    # Jobs
    DEFAULT_CONCURRENCY: int = 3
    MAX_CONCURRENCY: int = 10
    DEFAULT_REFRESH_LIMIT: int = 500
    JOB_RETENTION_SECONDS: int = 6 * 3600
    WARMUP_DELAY_SECONDS: float = 0.75

    # Security
    IDEMPOTENCY_TTL_SECONDS: int = 86400
    REFRESH_RATE_LIMIT: int = 10
    REFRESH_RATE_WINDOW_SECONDS: int = 60
    PUBLIC_RATE_LIMIT: int = 120
    PUBLIC_RATE_WINDOW_SECONDS: int = 60

    # Timeouts
    HTTP_TIMEOUT: float = 15.0
    LOCK_TTL_SECONDS: int = 900

    # Circuit breakers
    ANALYTICS_BREAKER_TIMEOUT: float = 15.0
    ANALYTICS_BREAKER_ERROR_PERCENT: float = 60.0
    ANALYTICS_BREAKER_RESET_SECONDS: float = 60.0
    ANALYTICS_BREAKER_WINDOW_SECONDS: float = 30.0
    ANALYTICS_BREAKER_VOLUME: int = 3
    CATALOG_BREAKER_TIMEOUT: float = 10.0
    CATALOG_BREAKER_ERROR_PERCENT: float = 50.0
    CATALOG_BREAKER_RESET_SECONDS: float = 30.0
    CATALOG_BREAKER_WINDOW_SECONDS: float = 20.0
    CATALOG_BREAKER_VOLUME: int = 5

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields in .env file
        case_sensitive = False  # Allow both UPPERCASE and lowercase


@lru_cache
def get_settings() -> Settings:
    """Get or create cached settings instance."""
    return Settings()
