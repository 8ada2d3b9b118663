"""
Configuration Utility - Environment Variables Management

Centralized configuration loading from .env files using pydantic-settings.
Type-safe access to all environment variables with validation.

Retry budgets are read here but always handed to the core as explicit
RetryPolicy values at each call site (see utils.retry.RetryPolicy.from_settings).

Usage:
    from utils.config import settings

    channel_url = settings.CHANNEL_URL
    page_size = settings.COLLECT_PAGE_SIZE
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Paginated source (Safety Data API)
    SAFETY_API_BASE: str = Field(default="https://www.safetydata.go.kr")
    SAFETY_API_PATH: str = Field(default="/V2/api/DSSP-IF-00051")
    SAFETY_API_KEY: str = Field(default="")
    API_TIMEOUT: float = Field(default=30.0)

    # Collector
    COLLECT_SCHEDULE_CRON: str = Field(default="*/10 * * * *")
    COLLECT_TIMEZONE: str = Field(default="Asia/Seoul")
    COLLECT_PAGE_SIZE: int = Field(default=1000, ge=1)
    COLLECT_MAX_RETRIES: int = Field(default=3, ge=0)
    COLLECT_BASE_DELAY: float = Field(default=1.0, ge=0)
    COLLECT_BACKOFF_FACTOR: float = Field(default=2.0, ge=1.0)
    COLLECT_RESWEEPS: int = Field(default=1, ge=0)
    COLLECT_CONCURRENCY: int = Field(default=1, ge=1)

    # Message channel
    CHANNEL_URL: str = Field(default="redis://redis:6379/0")
    REDIS_MAX_CONNECTIONS: int = Field(default=10)
    STREAM_ARTICLE_EVENTS: str = Field(default="lit.article_events")
    STREAM_ARTICLE_EVENTS_DLQ: str = Field(default="lit.article_events.dlq")
    STREAM_ANALYSIS_EVENTS: str = Field(default="lit.analysis_events")
    STREAM_ANALYSIS_EVENTS_DLQ: str = Field(default="lit.analysis_events.dlq")
    STREAM_ANALYSIS_REQUESTS: str = Field(default="lit.analysis_requests")
    GROUP_ANALYZER: str = Field(default="analyzer")
    GROUP_INDEXER: str = Field(default="indexer")
    GROUP_REPLAY: str = Field(default="dlq-replay")
    CONSUMER_NAME: str = Field(default="worker-1")
    CONSUMER_BATCH_SIZE: int = Field(default=50, ge=1)
    CONSUMER_BLOCK_MS: int = Field(default=1000, ge=0)
    CONSUMER_CONCURRENCY: int = Field(default=8, ge=1)
    DLQ_PARTITIONS: int = Field(default=1, ge=1)

    # Per-message processing retry
    PROCESS_MAX_RETRIES: int = Field(default=2, ge=0)
    PROCESS_BASE_DELAY: float = Field(default=1.0, ge=0)
    PROCESS_BACKOFF_FACTOR: float = Field(default=2.0, ge=1.0)

    # Dead-letter replay
    DLQ_MAX_RETRIES: int = Field(default=3, ge=0)
    DLQ_BASE_DELAY: float = Field(default=2.0, ge=0)
    DLQ_BACKOFF_FACTOR: float = Field(default=2.0, ge=1.0)

    # Database Configuration
    SQLITE_PATH: str = Field(default="/app/data/db/lit.db")

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")

    # Application Metadata
    ENVIRONMENT: str = Field(default="production")
    APP_NAME: str = Field(default="lit-relay")
    APP_VERSION: str = Field(default="0.1.0")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Singleton Settings instance
    """
    return Settings()


# Global settings instance
settings = get_settings()
