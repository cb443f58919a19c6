"""Engine configuration loaded from environment variables."""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """schoolsync settings."""

    model_config = SettingsConfigDict(
        env_prefix="SCHOOLSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False

    # Local store
    database_url: str = "sqlite+aiosqlite:///data/schoolsync.db"

    # Remote API
    server_url: str = "http://localhost:8000"
    api_token: str | None = None
    request_timeout_seconds: float = Field(default=30.0, gt=0)

    # Connectivity
    health_path: str = "/api/health"
    health_check_interval_seconds: float = Field(default=30.0, gt=0)
    probe_timeout_seconds: float = Field(default=2.0, gt=0)

    # Sync
    sync_interval_seconds: float = Field(default=30.0, ge=0)
    max_attempts: int = Field(default=5, ge=1)
    backoff_base_seconds: float = Field(default=1.0, ge=0)
    backoff_max_seconds: float = Field(default=8.0, ge=0)
    backoff_jitter: float = Field(default=0.1, ge=0, le=1)
    max_concurrent_entities: int = Field(default=4, ge=1, le=64)
    pull_remote_changes: bool = True

    @model_validator(mode="after")
    def _check_backoff(self) -> Settings:
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_max_seconds must be >= backoff_base_seconds")
        return self
