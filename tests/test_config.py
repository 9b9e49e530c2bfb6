"""
Tests — Configuration Loading

Tier 1: Validates that the SSoT config loads correctly from
environment variables and applies defaults.
"""

from __future__ import annotations

import pytest

from guardian.config import Environment, GuardianSettings, LogLevel


class TestGuardianSettings:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Settings should load with sensible defaults when no env vars are set."""
        monkeypatch.delenv("GUARDIAN_DB_URL", raising=False)
        monkeypatch.delenv("GUARDIAN_GEOLOCATION_TIMEOUT_S", raising=False)
        settings = GuardianSettings(_env_file=None)
        assert settings.environment == Environment.DEV
        assert settings.log_level == LogLevel.INFO
        assert settings.alert_cooldown_s == 15.0
        assert settings.checkin_first_reminder_s == 3600
        assert settings.checkin_reminder_interval_s == 1800
        assert settings.geolocation_timeout_s == 10.0
        assert settings.auto_escalate_after_overdue_s is None
        assert settings.storage_bucket == "incident-media"
        assert settings.database_url.startswith("postgresql://guardian:")

    def test_override_via_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Environment variables should override defaults."""
        monkeypatch.setenv("GUARDIAN_ENVIRONMENT", "production")
        monkeypatch.setenv("GUARDIAN_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("GUARDIAN_ALERT_COOLDOWN_S", "30")
        monkeypatch.setenv("GUARDIAN_AUTO_ESCALATE_AFTER_OVERDUE_S", "900")

        settings = GuardianSettings(_env_file=None)
        assert settings.environment == Environment.PRODUCTION
        assert settings.log_level == LogLevel.DEBUG
        assert settings.alert_cooldown_s == 30.0
        assert settings.auto_escalate_after_overdue_s == 900

    def test_db_url_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GUARDIAN_DB_URL", "sqlite:///./guardian.db")
        assert GuardianSettings(_env_file=None).database_url == "sqlite:///./guardian.db"
