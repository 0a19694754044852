"""
Application configuration using pydantic-settings.

Centralizes all environment variables and crawl tuning knobs.
Validates configuration at startup to fail fast on misconfiguration.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36 Edg/124.0.0",
    "Mozilla/5.0 (iPad; CPU OS 15_6 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) "
    "CriOS/104.0.5112.99 Mobile/15E148 Safari/604.1",
    "Mozilla/5.0 (Linux; Android 10; K) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/129.0.0.0 Mobile Safari/537.36",
]


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be overridden via .env file or environment variables.
    Environment variables take precedence over .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ===================
    # Application
    # ===================
    app_name: str = Field(
        default="Comicrawl", description="Application name for logging and identification"
    )
    debug: bool = Field(default=False, description="Enable debug mode (console logging, SQL echo)")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )

    # ===================
    # API Security
    # ===================
    api_key: str = Field(
        ...,  # Required
        min_length=32,
        description="API Key for the job control API (min 32 chars)",
    )

    # ===================
    # Database
    # ===================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./comicrawl.db", description="SQLAlchemy async database URL"
    )

    # ===================
    # Queue Processing
    # ===================
    queue_batch_size: int = Field(
        default=10, ge=1, le=500, description="Queue rows claimed per batch"
    )
    queue_max_retries: int = Field(
        default=3, ge=0, le=20, description="Retries allowed per queue row before FAILED"
    )
    retry_base_delay_seconds: float = Field(
        default=5.0, ge=0, description="Base delay for exponential queue retry backoff"
    )
    retry_max_delay_seconds: float = Field(
        default=3600.0, ge=1, description="Upper bound for a single queue retry delay"
    )
    queue_worker_concurrency: int = Field(
        default=5, ge=1, le=100, description="Queue rows executed concurrently per worker"
    )
    drain_interval_seconds: int = Field(
        default=300, ge=1, description="Interval of the recurring queue drain (seconds)"
    )
    max_running_per_operator: int = Field(
        default=5, ge=1, description="Concurrent running root jobs allowed per operator"
    )
    max_running_total: int = Field(
        default=25, ge=1, description="Concurrent running root jobs allowed system-wide"
    )
    signal_ttl_seconds: float = Field(
        default=300.0, ge=0, description="Age after which cached pause/cancel flags are re-read"
    )
    embedded_worker: bool = Field(
        default=True, description="Run the recurring queue drain inside the API process"
    )

    # ===================
    # Fetching
    # ===================
    request_timeout: float = Field(
        default=15.0, ge=1, le=300, description="Read timeout for page and image requests"
    )
    fetch_max_retries: int = Field(
        default=3, ge=1, le=10, description="Attempts per request before giving up"
    )
    fetch_retry_delay: float = Field(
        default=2.0, ge=0, description="Minimum wait between request attempts (seconds)"
    )
    user_agents: list[str] = Field(
        default_factory=lambda: list(DEFAULT_USER_AGENTS),
        description="User agents rotated across requests",
    )
    api_base_url: str = Field(
        default="https://mimihentai.com", description="Base URL of the JSON gallery API"
    )
    api_domains: list[str] = Field(
        default_factory=lambda: ["mimihentai.com"],
        description="Domains served by the JSON API extractor",
    )

    # ===================
    # Job Defaults
    # ===================
    default_parallel_limit: int = Field(default=3, ge=1, le=50)
    default_image_quality: int = Field(default=85, ge=1, le=100)
    default_timeout_seconds: int = Field(default=30, ge=1, le=600)

    # ===================
    # Duplicate Detection
    # ===================
    auto_merge_threshold: float = Field(
        default=0.9, ge=0, le=1, description="Similarity at or above which records auto-merge"
    )
    review_threshold: float = Field(
        default=0.7, ge=0, le=1, description="Similarity at or above which records need review"
    )

    # ===================
    # Storage & Events
    # ===================
    storage_dir: str = Field(default="./storage", description="Root directory for stored images")
    event_webhook_url: str | None = Field(
        default=None, description="Webhook receiving job events (logged only when unset)"
    )
    event_timeout: float = Field(default=10.0, ge=1, le=120)

    @field_validator("log_level", mode="before")
    @classmethod
    def uppercase_log_level(cls, v: str) -> str:
        """Ensure log level is uppercase."""
        if isinstance(v, str):
            return v.upper()
        return v

    @model_validator(mode="after")
    def check_thresholds(self) -> "Settings":
        if self.review_threshold > self.auto_merge_threshold:
            raise ValueError("review_threshold must not exceed auto_merge_threshold")
        return self


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Settings are loaded once and cached for performance.

    Returns:
        Settings: Validated application settings

    Raises:
        ValidationError: If required settings are missing or invalid
    """
    return Settings()
