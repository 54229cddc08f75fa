import pytest
from pydantic import ValidationError

from roastauth.config import Settings, get_settings, reset_settings_cache


def test_from_env_reads_declared_names(monkeypatch):
    monkeypatch.setenv("LOGIN_RATE_LIMIT_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://app.example.com, https://admin.example.com")
    monkeypatch.setenv("OAUTH_REDIRECT_BASE_URL", "https://auth.example.com/")

    settings = Settings.from_env()

    assert settings.login_rate_limit_max_attempts == 3
    assert settings.cors_allow_origins == ["https://app.example.com", "https://admin.example.com"]
    assert settings.oauth_callback_base == "https://auth.example.com"


def test_blank_redis_url_means_no_redis(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "   ")

    assert Settings.from_env().redis_url is None


def test_session_ttl_is_capped_at_seven_days():
    with pytest.raises(ValidationError):
        Settings(session_ttl_days=30)


def test_defaults_match_documented_limits():
    settings = Settings()

    assert settings.session_ttl_days == 7
    assert settings.session_refresh_threshold_minutes == 15
    assert settings.oauth_state_ttl_minutes == 10
    assert settings.login_rate_limit_window_minutes == 15
    assert settings.login_lockout_minutes == 30
    assert settings.register_rate_limit_max_attempts == 5
    assert settings.cookie_secure is True


def test_get_settings_is_cached_until_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    monkeypatch.setenv("ALLOW_SIGNUP", "false")

    assert get_settings() is first

    reset_settings_cache()
    assert get_settings().allow_signup is False
