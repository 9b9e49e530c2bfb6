"""
Guardian Configuration — Single Source of Truth (SSoT)

All service-wide settings, tracking cadences, alert limits and
environment-specific values are centralized here using pydantic-settings.
Secrets are loaded from `.env` files and NEVER hardcoded.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# ─── Enums ────────────────────────────────────────────────────────────────────

class Environment(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


# ─── Core Application Settings ───────────────────────────────────────────────

class GuardianSettings(BaseSettings):
    """Global configuration loaded from environment variables / .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="GUARDIAN_",
        case_sensitive=False,
        extra="ignore",
    )

    # ── General ──────────────────────────────────────────────────────────────
    environment: Environment = Field(default=Environment.DEV)
    log_level: LogLevel = Field(default=LogLevel.INFO)
    debug: bool = Field(default=True)

    # ── API Server ───────────────────────────────────────────────────────────
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)

    # ── Database (PostgreSQL) ────────────────────────────────────────────────
    db_user: str = Field(default="guardian")
    db_password: str = Field(default="guardian_secret")
    db_host: str = Field(default="localhost")
    db_port: int = Field(default=5432)
    db_name: str = Field(default="guardian_db")
    db_url: Optional[str] = Field(default=None)  # e.g. sqlite:///./guardian.db

    @property
    def database_url(self) -> str:
        if self.db_url:
            return self.db_url
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    # ── Object Storage (MinIO / S3) ──────────────────────────────────────────
    storage_endpoint: str = Field(default="localhost:9000")
    storage_access_key: str = Field(default="guardian_minio_admin")
    storage_secret_key: str = Field(default="guardian_minio_secret")
    storage_secure: bool = Field(default=False)
    storage_region: str = Field(default="us-east-1")
    storage_bucket: str = Field(default="incident-media")
    storage_public_base_url: Optional[str] = Field(default=None)

    # ── Geolocation ──────────────────────────────────────────────────────────
    geolocation_timeout_s: float = Field(default=10.0)
    position_max_age_s: float = Field(default=30.0)

    # ── Location Reporter ────────────────────────────────────────────────────
    location_min_interval_s: float = Field(default=5.0)

    # ── Escalation Timer ─────────────────────────────────────────────────────
    checkin_first_reminder_s: int = Field(default=3600)
    checkin_reminder_interval_s: int = Field(default=1800)
    checkin_poll_interval_s: float = Field(default=10.0)
    auto_escalate_after_overdue_s: Optional[int] = Field(default=None)

    # ── Alerts ───────────────────────────────────────────────────────────────
    alert_cooldown_s: float = Field(default=15.0)
    alert_insert_attempts: int = Field(default=3, ge=1)

    # ── Reverse Geocoding ────────────────────────────────────────────────────
    geocoder_reverse_url: str = Field(default="https://nominatim.openstreetmap.org/reverse")
    geocoder_user_agent: str = Field(default="guardian-trip-watch/1.0")
    geocoder_timeout_s: float = Field(default=4.0)


# ─── Singleton accessor ──────────────────────────────────────────────────────

_settings: Optional[GuardianSettings] = None


def get_settings() -> GuardianSettings:
    """Return the cached global settings instance (lazy-loaded)."""
    global _settings
    if _settings is None:
        _settings = GuardianSettings()
    return _settings
