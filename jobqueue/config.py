"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with sensible defaults.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite+aiosqlite:///./jobqueue.db"
    database_busy_timeout_seconds: float = 30.0
    database_echo: bool = False

    # Worker Configuration
    worker_id: str | None = None
    worker_concurrency: int = 1
    worker_poll_interval_seconds: float = 1.0
    worker_lease_ms: int = 120_000
    worker_heartbeat_interval_seconds: float = 30.0

    # Retry policy applied by workers when a handler fails
    retry_base_ms: int = 5_000
    retry_max_ms: int = 300_000

    # Sweeper Configuration
    sweeper_interval_seconds: int = 3600
    sweeper_keep_days: int = 7

    # Observability
    otel_exporter_otlp_endpoint: str | None = None
    otel_service_name: str = "jobqueue"
    prometheus_port: int | None = None
    log_level: str = "INFO"
    log_format: str = "json"  # json or console


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
