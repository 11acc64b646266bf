"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from adsync.services.storage import PerformanceStore, SqlPerformanceStore


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    # Meta Graph API
    META_GRAPH_API_VERSION: str = "v18.0"
    META_REQUEST_TIMEOUT_SECONDS: float = 20.0
    META_MAX_PAGES: int = 50
    META_MAX_GENERIC_RETRIES: int = 2
    META_GENERIC_RETRY_DELAY_SECONDS: float = 2.0
    META_MAX_RATE_LIMIT_RETRIES: int = 3
    META_RATE_LIMIT_BASE_DELAY_SECONDS: float = 30.0
    META_PAGE_DELAY_SECONDS: float = 0.5
    META_BATCH_FALLBACK_DELAY_SECONDS: float = 1.5

    # Sync windows and writes
    META_SYNC_LOOKBACK_DAYS: int = 90
    META_SYNC_APPEND_BUFFER_DAYS: int = 3
    META_SYNC_WRITE_BATCH_SIZE: int = 500
    META_SYNC_WRITE_CONCURRENCY: int = 4

    # Redis Configuration (arq queue)
    REDIS_URL: str = "redis://localhost:6379/0"

    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_store() -> PerformanceStore:
    """SQLAlchemy-backed store bound to the application's session factory."""
    from adsync.database import SessionLocal

    return SqlPerformanceStore(SessionLocal)
