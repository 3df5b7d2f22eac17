"""Tests for settings loading and validation."""

import pytest
from pydantic import ValidationError

from tenantauth.config import Settings, get_settings, reset_settings_cache


def test_defaults(settings):
    assert settings.access_token_ttl_seconds == 900
    assert settings.refresh_token_ttl_seconds == 604800
    assert settings.rate_limit_max_attempts == 5
    assert settings.rate_limit_window_seconds == 900
    assert settings.password_min_length == 8
    assert settings.jwt_issuer == "multi-tenant-crm"


def test_secrets_required_outside_test_mode():
    with pytest.raises(ValidationError):
        Settings(test_mode=False)


def test_secrets_generated_in_test_mode():
    settings = Settings(test_mode=True)
    assert settings.access_token_secret
    assert settings.refresh_token_secret
    assert settings.access_token_secret != settings.refresh_token_secret


def test_equal_secrets_rejected():
    with pytest.raises(ValidationError):
        Settings(access_token_secret="same-secret", refresh_token_secret="same-secret")


def test_durations_must_be_positive(settings):
    with pytest.raises(ValidationError):
        Settings(**{**settings.model_dump(), "access_token_ttl_seconds": 0})


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("LOGIN_RATE_LIMIT_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("ACCESS_TOKEN_TTL_SECONDS", "60")
    reset_settings_cache()
    settings = get_settings()
    assert settings.rate_limit_max_attempts == 3
    assert settings.access_token_ttl_seconds == 60
    assert get_settings() is settings
    reset_settings_cache()
