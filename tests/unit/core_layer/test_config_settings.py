"""
Unit Tests for Configuration Settings

Tests the settings loading, validation, default values and the nested
section views.
"""

import pytest
from pydantic import ValidationError

from src.core.config.settings import Settings, get_settings, reload_settings


@pytest.mark.unit
class TestSettingsDefaults:
    def test_sections_are_exposed(self):
        settings = Settings()

        for section in (
            "admission",
            "retry",
            "circuit_breaker",
            "stream",
            "upstream",
            "conversation",
            "follow_up",
            "execution_tracking",
            "logging",
            "app",
        ):
            assert hasattr(settings, section)

    def test_admission_defaults(self):
        admission = Settings().admission

        assert admission.ADMISSION_MAX_CONCURRENT == 5
        assert admission.ADMISSION_MAX_PER_SECOND == 10
        assert admission.ADMISSION_MAX_PER_MINUTE == 100
        assert admission.ADMISSION_QUEUE_MAX_SIZE == 100

    def test_retry_and_breaker_defaults(self):
        settings = Settings()

        assert settings.retry.RETRY_MAX_ATTEMPTS == 3
        assert settings.retry.RETRY_BASE_DELAY <= settings.retry.RETRY_MAX_DELAY
        assert settings.circuit_breaker.CB_FAILURE_THRESHOLD == 5
        assert settings.circuit_breaker.CB_SUCCESS_THRESHOLD == 3

    def test_follow_up_variable_defaults(self):
        follow_up = Settings().follow_up

        assert follow_up.FOLLOW_UP_VARIABLE_PREFIX == "follow_up_q"
        assert follow_up.FOLLOW_UP_VARIABLE_COUNT == 3

    def test_conversation_name_template(self):
        template = Settings().conversation.CONVERSATION_NAME_TEMPLATE
        assert template.format(client_id="u-1", date="2025-12-08") == "u-1_2025-12-08"


@pytest.mark.unit
class TestSettingsEnvironment:
    def test_environment_overrides_defaults(self, monkeypatch):
        monkeypatch.setenv("ADMISSION_MAX_CONCURRENT", "2")
        monkeypatch.setenv("UPSTREAM_PROVIDER", "fake")

        settings = Settings()

        assert settings.admission.ADMISSION_MAX_CONCURRENT == 2
        assert settings.upstream.UPSTREAM_PROVIDER == "fake"

    def test_log_level_is_normalised(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "debug")
        assert Settings().logging.LOG_LEVEL == "DEBUG"

    def test_invalid_log_level_is_rejected(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "VERBOSE")
        with pytest.raises(ValidationError):
            Settings()

    def test_invalid_jitter_is_rejected(self, monkeypatch):
        monkeypatch.setenv("RETRY_JITTER_RATIO", "1.5")
        with pytest.raises(ValidationError):
            Settings()

    def test_concurrency_ceiling_must_be_positive(self, monkeypatch):
        monkeypatch.setenv("ADMISSION_MAX_CONCURRENT", "0")
        with pytest.raises(ValidationError):
            Settings()


@pytest.mark.unit
class TestSettingsSingleton:
    def test_get_settings_returns_same_instance(self):
        assert get_settings() is get_settings()

    def test_reload_settings_creates_new_instance(self):
        before = get_settings()
        after = reload_settings()

        assert after is not before
        assert get_settings() is after
