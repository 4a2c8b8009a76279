"""
Dashboard settings, read from the environment and an optional ``.env``.

Secrets (``JWT_SECRET``, ``ENCRYPTION_KEY``, ``RESEND_API_KEY``) have
development defaults; production deployments must set them.
"""

from __future__ import annotations

from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = Field(default="development", description="development | production")

    # ── Auth / secrets ──────────────────────────────────────────
    jwt_secret: str = Field(default="change_me", description="HS256 secret for bearer tokens")
    encryption_key: str = Field(default="", description="AES-256-GCM secret, at least 32 characters")

    # ── Hosted backend functions ────────────────────────────────
    backend_base_url: str = Field(default="", description="Base URL of the backend functions")

    # ── Third-party providers ───────────────────────────────────
    retell_base_url: str = Field(default="https://api.retellai.com")
    openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1")
    resend_api_key: str = Field(default="")
    resend_from: str = Field(default="Voice AI <onboarding@resend.dev>")

    # ── Calls cache / pagination ────────────────────────────────
    cache_ttl_seconds: int = Field(default=300, ge=1)
    page_size: int = Field(default=100, ge=1, le=1000)
    max_calls: int = Field(default=500, ge=1)
    refresh_interval_seconds: int = Field(default=120, ge=30, le=600)

    # ── Accounts / billing ──────────────────────────────────────
    verification_code_ttl_minutes: int = Field(default=10, ge=1)
    dashboard_fee_monthly: float = Field(default=49.0, ge=0)
    billing_epoch_year: int = Field(default=2026)

    # ── Paths ───────────────────────────────────────────────────
    database_path: Path = Field(default=Path("data/dashboard.db"))
    output_dir: Path = Field(default=Path("data/output"))
    log_dir: Path = Field(default=Path("data/logs"))

    # ── Server ──────────────────────────────────────────────────
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    @field_validator("environment")
    @classmethod
    def _normalise_environment(cls, value: str) -> str:
        return value.strip().lower() or "development"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def ensure_dirs(self) -> None:
        """Create the store, export and log directories."""
        for path in (self.database_path.parent, self.output_dir, self.log_dir):
            path.mkdir(parents=True, exist_ok=True)


def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
