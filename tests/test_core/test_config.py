"""Tests for environment-driven settings."""

import pytest

from resource_webhooks.config import (
    Settings,
    _get_bool_env,
    _get_float_env,
    _get_int_env,
    min_claim_stale_seconds,
)


class TestEnvHelpers:
    """Tests for the typed environment readers."""

    @pytest.mark.parametrize("value", ["true", "1", "yes", "on", "TRUE"])
    def test_bool_true(self, monkeypatch, value):
        """Test truthy spellings."""
        monkeypatch.setenv("FLAG", value)

        assert _get_bool_env("FLAG") is True

    @pytest.mark.parametrize("value", ["false", "0", "no", "off"])
    def test_bool_false(self, monkeypatch, value):
        """Test falsy spellings override a true default."""
        monkeypatch.setenv("FLAG", value)

        assert _get_bool_env("FLAG", default=True) is False

    def test_bool_unrecognized_uses_default(self, monkeypatch):
        """Test fallback for unknown values."""
        monkeypatch.setenv("FLAG", "maybe")

        assert _get_bool_env("FLAG", default=True) is True

    def test_int_and_float(self, monkeypatch):
        """Test numeric parsing and fallback on bad input."""
        monkeypatch.setenv("COUNT", "7")
        monkeypatch.setenv("BAD_COUNT", "seven")
        monkeypatch.setenv("RATIO", "2.5")
        monkeypatch.setenv("EMPTY", " ")

        assert _get_int_env("COUNT", 1) == 7
        assert _get_int_env("BAD_COUNT", 1) == 1
        assert _get_int_env("EMPTY", 3) == 3
        assert _get_float_env("RATIO", 1.0) == 2.5
        assert _get_float_env("MISSING_RATIO", 1.5) == 1.5


class TestSettings:
    """Tests for Settings.from_env."""

    def test_defaults(self, monkeypatch):
        """Test defaults when nothing is set."""
        for name in Settings.__dataclass_fields__:
            monkeypatch.delenv(name, raising=False)

        config = Settings.from_env()

        assert config == Settings()
        assert config.WEBHOOK_REQUEST_TIMEOUT_SECONDS == 10.0
        assert config.WEBHOOK_RETRY_SCHEDULER_ENABLED is True

    def test_overrides(self, monkeypatch):
        """Test values read from the environment."""
        monkeypatch.setenv("WEBHOOK_DB_PATH", "/tmp/hooks.db")
        monkeypatch.setenv("WEBHOOK_REQUEST_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("WEBHOOK_RETRY_BATCH_SIZE", "25")
        monkeypatch.setenv("WEBHOOK_RETRY_SCHEDULER_ENABLED", "false")
        monkeypatch.setenv("LOG_FORMAT", "json")

        config = Settings.from_env()

        assert config.WEBHOOK_DB_PATH == "/tmp/hooks.db"
        assert config.WEBHOOK_REQUEST_TIMEOUT_SECONDS == 2.5
        assert config.WEBHOOK_RETRY_BATCH_SIZE == 25
        assert config.WEBHOOK_RETRY_SCHEDULER_ENABLED is False
        assert config.LOG_FORMAT == "json"

    def test_claim_stale_window_raised_above_request_timeout(self, monkeypatch):
        """Test that a stale window shorter than a live redelivery is clamped."""
        monkeypatch.setenv("WEBHOOK_REQUEST_TIMEOUT_SECONDS", "30.5")
        monkeypatch.setenv("WEBHOOK_RETRY_CLAIM_STALE_SECONDS", "20")

        config = Settings.from_env()

        assert config.WEBHOOK_RETRY_CLAIM_STALE_SECONDS == min_claim_stale_seconds(30.5)
        assert config.WEBHOOK_RETRY_CLAIM_STALE_SECONDS == 91
        assert config.WEBHOOK_RETRY_CLAIM_STALE_SECONDS > config.WEBHOOK_REQUEST_TIMEOUT_SECONDS

    def test_claim_stale_window_kept_when_long_enough(self, monkeypatch):
        """Test that a sufficient stale window is left alone."""
        monkeypatch.setenv("WEBHOOK_REQUEST_TIMEOUT_SECONDS", "5")
        monkeypatch.setenv("WEBHOOK_RETRY_CLAIM_STALE_SECONDS", "900")

        assert Settings.from_env().WEBHOOK_RETRY_CLAIM_STALE_SECONDS == 900
