"""Application settings loaded from environment variables.

Uses pydantic-settings for validation and type coercion. Every key uses the
``KYCFLOW_`` prefix; a ``.env`` file is read when present.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Central configuration for the KYC verification service."""

    model_config = SettingsConfigDict(
        env_prefix="KYCFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # ── App ────────────────────────────────────────────────────────────
    env: Literal["development", "production"] = "development"

    # ── Logging ────────────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"

    # ── Stats cache ────────────────────────────────────────────────────
    # Empty string keeps the cache process-local.
    redis_url: str = ""
    stats_staleness_seconds: int = Field(default=300, ge=0)  # 5 minutes

    # ── Uploads ────────────────────────────────────────────────────────
    max_upload_bytes: int = Field(default=10 * 1024 * 1024, gt=0)  # 10 MiB

    # ── Verification provider (sandbox.co.in) ──────────────────────────
    sandbox_base_url: str = "https://api.sandbox.co.in"
    sandbox_api_key: str = ""
    sandbox_api_secret: str = ""
    sandbox_timeout_seconds: float = 30.0

    # ── Retry policy ───────────────────────────────────────────────────
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0.0)

    # ── Status polling for unresolved determinations ───────────────────
    status_poll_attempts: int = Field(default=3, ge=0)
    status_poll_interval_seconds: float = Field(default=2.0, ge=0.0)

    # ── Batch scheduler ────────────────────────────────────────────────
    batch_size: int = Field(default=5, ge=1)
    batch_delay_seconds: float = Field(default=1.0, ge=0.0)

    # ── CORS ───────────────────────────────────────────────────────────
    # Comma-separated list of allowed browser origins.
    cors_origins: str = "http://localhost:3000,http://localhost:8000"

    # ── Derived Properties ─────────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.env == Environment.PRODUCTION

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


# Module-level singleton; import ``settings`` everywhere.
settings = Settings()
