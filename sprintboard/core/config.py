"""Application settings and environment configuration loading."""

from __future__ import annotations

from pathlib import Path
from typing import Self

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_ENV_FILE = PROJECT_ROOT / ".env"


class Settings(BaseSettings):
    """Typed runtime configuration sourced from environment variables."""

    model_config = SettingsConfigDict(
        # Load the project `.env` regardless of current working directory.
        env_file=[DEFAULT_ENV_FILE, ".env"],
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = "dev"

    # Persistence service (system of record for stories/tasks/sprints)
    persistence_base_url: str = "http://localhost:8000/api/v1"
    persistence_api_token: str = ""
    sprint_id: str = ""

    # Identity fallback when the identity provider header is absent.
    acting_user_id: str = ""

    # Bounded waits for calls to the persistence service
    lifecycle_timeout_seconds: float = 10.0
    fetch_timeout_seconds: float = 15.0

    # Push channel (server-sent events). Empty URL derives from persistence_base_url.
    push_channel_url: str = ""
    push_reconnect_base_seconds: float = 1.0
    push_reconnect_max_seconds: float = 30.0
    push_max_reconnect_attempts: int = Field(default=5, ge=0)
    snapshot_poll_seconds: float = Field(default=30.0, ge=0)

    # UI stream keep-alive
    stream_ping_seconds: int = Field(default=15, ge=1)

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"
    log_use_utc: bool = False
    request_log_slow_ms: int = Field(default=1000, ge=0)
    request_log_include_health: bool = False

    @model_validator(mode="after")
    def _defaults(self) -> Self:
        if self.lifecycle_timeout_seconds <= 0 or self.fetch_timeout_seconds <= 0:
            raise ValueError("Persistence timeouts must be positive.")
        if self.push_reconnect_base_seconds <= 0:
            raise ValueError("PUSH_RECONNECT_BASE_SECONDS must be positive.")
        if self.push_reconnect_max_seconds < self.push_reconnect_base_seconds:
            raise ValueError(
                "PUSH_RECONNECT_MAX_SECONDS must be >= PUSH_RECONNECT_BASE_SECONDS.",
            )
        self.persistence_base_url = self.persistence_base_url.rstrip("/")
        return self

    def resolved_push_channel_url(self, sprint_id: str | None = None) -> str:
        """Return the push endpoint, deriving it from the persistence root when unset."""
        if self.push_channel_url.strip():
            return self.push_channel_url.strip()
        target = sprint_id or self.sprint_id
        return f"{self.persistence_base_url}/sprints/{target}/events"


settings = Settings()
