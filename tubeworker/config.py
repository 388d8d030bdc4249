"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with sensible defaults.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from tubeworker.constants import DEFAULT_BROKER_URL


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Broker (one or more beanstalk:// URIs, comma or whitespace separated)
    beanstalk_url: str = DEFAULT_BROKER_URL

    # Worker Configuration
    worker_fork: bool = False
    worker_reserve_timeout_seconds: float | None = None
    worker_app: str | None = None  # "package.module:attribute" naming a JobQueue

    # Observability
    otel_exporter_otlp_endpoint: str | None = None
    otel_service_name: str = "tubeworker"
    prometheus_port: int | None = None
    log_level: str = "INFO"
    log_format: str = "json"  # json or console


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
