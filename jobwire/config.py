"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with sensible defaults.
"""

import os
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from jobwire.constants import (
    DEFAULT_BROKER_URL,
    DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
    DEFAULT_PAYLOAD_FORMAT,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_QUEUE,
    DEFAULT_TIMEOUT_SECONDS,
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Broker
    broker_url: str = DEFAULT_BROKER_URL
    broker_provider: str | None = None  # name of the env var holding the URL
    broker_password: str | None = None
    broker_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    payload_format: str = DEFAULT_PAYLOAD_FORMAT
    pool_size: int = 5

    # Worker Configuration
    worker_id: str | None = None
    worker_queues: str = DEFAULT_QUEUE  # comma separated, highest priority first
    worker_concurrency: int = 1
    worker_poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    heartbeat_interval_seconds: float = DEFAULT_HEARTBEAT_INTERVAL_SECONDS

    # Producer Configuration
    producer_enabled: bool = False
    producer_interval_seconds: float = 1.0
    producer_queue: str = DEFAULT_QUEUE

    # Observability
    log_level: str = "INFO"
    log_format: str = "json"  # json or console
    metrics_port: int = 0  # 0 disables the HTTP exposition endpoint
    otel_enabled: bool = False
    otel_exporter_otlp_endpoint: str = "http://localhost:4317"
    otel_service_name: str = "jobwire"

    @property
    def queues(self) -> list[str]:
        """Configured queue names in priority order."""
        return [name.strip() for name in self.worker_queues.split(",") if name.strip()]

    def resolve_broker_url(self) -> str:
        """
        Get the broker URL, following the provider indirection if set.

        Returns:
            The broker URL.

        Raises:
            ValueError: If the provider is not an env var name or is unset.
        """
        if not self.broker_provider:
            return self.broker_url

        if ":" in self.broker_provider:
            raise ValueError(
                "broker_provider is not a URL, it is the name of the env var "
                "that contains the URL, e.g. BROKER_PROVIDER=FOO_URL"
            )

        url = os.environ.get(self.broker_provider)
        if not url:
            raise ValueError(f"broker_provider set to invalid value: {self.broker_provider}")
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
