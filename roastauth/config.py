from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    redis_url: str | None = env_field(None, "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Permit in-memory fallbacks and runtime resets for tests.",
    )
    state_fs_root: str | None = env_field(
        None,
        "STATE_FS_ROOT",
        description="Directory for JSON snapshots of the in-memory store; unset disables persistence.",
    )
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    # Credential login throttling
    login_rate_limit_max_attempts: int = env_field(10, "LOGIN_RATE_LIMIT_MAX_ATTEMPTS", ge=1)
    login_rate_limit_window_minutes: int = env_field(15, "LOGIN_RATE_LIMIT_WINDOW_MINUTES", ge=1)
    login_lockout_minutes: int = env_field(30, "LOGIN_LOCKOUT_MINUTES", ge=1)
    register_rate_limit_max_attempts: int = env_field(5, "REGISTER_RATE_LIMIT_MAX_ATTEMPTS", ge=1)
    register_rate_limit_window_minutes: int = env_field(
        15, "REGISTER_RATE_LIMIT_WINDOW_MINUTES", ge=1
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    # Sessions
    session_ttl_days: int = env_field(7, "SESSION_TTL_DAYS", ge=1, le=7)
    session_refresh_threshold_minutes: int = env_field(
        15, "SESSION_REFRESH_THRESHOLD_MINUTES", ge=0
    )

    # OAuth settings
    oauth_enabled: bool = env_field(True, "OAUTH_ENABLED")
    oauth_state_ttl_minutes: int = env_field(10, "OAUTH_STATE_TTL_MINUTES", ge=1)
    oauth_http_timeout_seconds: float = env_field(10.0, "OAUTH_HTTP_TIMEOUT_SECONDS", gt=0)
    oauth_flow_guard_seconds: int = env_field(
        30,
        "OAUTH_FLOW_GUARD_SECONDS",
        ge=0,
        description="A started flow blocks another start for the same provider and client this long.",
    )
    oauth_redirect_base_url: str | None = env_field(
        None,
        "OAUTH_REDIRECT_BASE_URL",
        description="Public base URL used to build provider callback URLs; defaults to APP_BASE_URL.",
    )
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_microsoft_client_id: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_ID")
    oauth_microsoft_client_secret: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_SECRET")
    oauth_microsoft_tenant_id: str = env_field("common", "OAUTH_MICROSOFT_TENANT_ID")
    oauth_apple_client_id: str | None = env_field(None, "OAUTH_APPLE_CLIENT_ID")
    oauth_apple_client_secret: str | None = env_field(
        None,
        "OAUTH_APPLE_CLIENT_SECRET",
        description="Pre-signed client secret JWT issued for Sign in with Apple.",
    )
    allow_shared_email_accounts: bool = env_field(
        True,
        "ALLOW_SHARED_EMAIL_ACCOUNTS",
        description="Let users decline account linking and keep a separate account with the same email.",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("redis_url", "state_fs_root", "oauth_redirect_base_url", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @property
    def oauth_callback_base(self) -> str:
        return (self.oauth_redirect_base_url or self.app_base_url).rstrip("/")


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
