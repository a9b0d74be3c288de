"""Unit tests for settings loading."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from pricemesh.settings import Settings, load_settings


class TestSettings:

    def test_defaults(self):
        settings = Settings()

        assert settings.quota_daily_limit == 200
        assert settings.quota_hard_stop_percent == 90.0
        assert settings.breaker_failure_threshold == 5
        assert settings.search_ttl == timedelta(minutes=5)
        assert settings.popular_ttl == timedelta(hours=1)
        assert settings.details_ttl == timedelta(minutes=10)
        assert settings.popular_queries == frozenset()

    def test_environment_aliases(self):
        settings = Settings.model_validate(
            {
                "QUOTA_DAILY_LIMIT": "25",
                "QUOTA_FALLBACK_MODE": "true",
                "POPULAR_QUERIES": "iphone, usb hub ,,",
                "CACHE_DIR": "/tmp/pm-cache",
                "UNRELATED": "ignored",
            }
        )

        assert settings.quota_daily_limit == 25
        assert settings.quota_fallback_mode is True
        assert settings.popular_queries == frozenset({"iphone", "usb hub"})
        assert settings.cache_dir == "/tmp/pm-cache"

    def test_field_names_are_accepted(self):
        assert Settings(quota_daily_limit=3).quota_daily_limit == 3

    def test_invalid_values_are_rejected(self):
        with pytest.raises(ValidationError):
            Settings.model_validate({"QUOTA_HARD_STOP_PERCENT": "150"})

    def test_load_settings_reads_dotenv(self, tmp_path, monkeypatch):
        # Ensure the variable is removed again after the test
        monkeypatch.setenv("QUOTA_DAILY_LIMIT", "0")
        monkeypatch.delenv("QUOTA_DAILY_LIMIT")
        env_file = tmp_path / ".env"
        env_file.write_text("QUOTA_DAILY_LIMIT=42\n", encoding="utf-8")

        settings = load_settings(str(env_file))

        assert settings.quota_daily_limit == 42

    def test_environment_wins_over_dotenv(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        env_file = tmp_path / ".env"
        env_file.write_text("LOG_LEVEL=DEBUG\n", encoding="utf-8")

        assert load_settings(str(env_file)).log_level == "WARNING"
