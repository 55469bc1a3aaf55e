from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class RateLimitConfig(BaseModel):
    """Attempt budget for one limiter instance.

    ``max_attempts`` attempts are allowed inside a ``window_seconds`` window;
    reaching the budget blocks the key for ``block_seconds``.
    """

    max_attempts: int = Field(5, gt=0)
    window_seconds: int = Field(15 * 60, gt=0)
    block_seconds: int = Field(30 * 60, gt=0)

    model_config = ConfigDict(frozen=True)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core."""

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_cache: bool = env_field(
        False,
        "USE_MEMORY_CACHE",
        description="Keep cache state in-process instead of Redis (single process only)",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-process fallbacks and runtime resets for tests",
    )
    state_path: str | None = env_field(
        None,
        "STATE_PATH",
        description="JSON file backing the in-memory store; unset keeps state in memory only",
    )
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("AuthShield", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    # Login protection
    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS", gt=0)
    login_window_seconds: int = env_field(15 * 60, "LOGIN_WINDOW_SECONDS", gt=0)
    login_block_seconds: int = env_field(30 * 60, "LOGIN_BLOCK_SECONDS", gt=0)
    login_extended_block_seconds: int = env_field(
        2 * 60 * 60,
        "LOGIN_EXTENDED_BLOCK_SECONDS",
        gt=0,
        description="Account-level block applied once the failure threshold is reached",
    )
    # Verification / reset token requests
    token_max_attempts: int = env_field(5, "TOKEN_MAX_ATTEMPTS", gt=0)
    token_window_seconds: int = env_field(15 * 60, "TOKEN_WINDOW_SECONDS", gt=0)
    token_block_seconds: int = env_field(30 * 60, "TOKEN_BLOCK_SECONDS", gt=0)
    verification_ttl_seconds: int = env_field(24 * 60 * 60, "VERIFICATION_TTL_SECONDS", gt=0)
    reset_ttl_seconds: int = env_field(15 * 60, "RESET_TTL_SECONDS", gt=0)
    access_token_ttl_seconds: int = env_field(24 * 60 * 60, "ACCESS_TOKEN_TTL_SECONDS", gt=0)
    # API keys
    api_key_max_attempts: int = env_field(5, "API_KEY_MAX_ATTEMPTS", gt=0)
    api_key_window_seconds: int = env_field(60, "API_KEY_WINDOW_SECONDS", gt=0)
    api_key_block_seconds: int = env_field(15 * 60, "API_KEY_BLOCK_SECONDS", gt=0)
    api_key_cache_ttl_seconds: int = env_field(10 * 60, "API_KEY_CACHE_TTL_SECONDS", gt=0)
    api_key_default_days: int = env_field(365, "API_KEY_DEFAULT_DAYS", gt=0)
    attempt_log_key: str = env_field("auth:attempt_log", "LOGGER_REDIS_KEY")
    attempt_log_ttl_seconds: int = env_field(7 * 24 * 60 * 60, "LOGGER_REDIS_TTL", gt=0)
    # User read cache
    user_cache_ttl_seconds: int = env_field(60 * 60, "USER_CACHE_TTL_SECONDS", gt=0)
    user_list_cache_ttl_seconds: int = env_field(10 * 60, "USER_LIST_CACHE_TTL_SECONDS", gt=0)

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

    @field_validator("redis_url", "smtp_host", "state_path")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    def login_rate_limit(self) -> RateLimitConfig:
        return RateLimitConfig(
            max_attempts=self.login_max_attempts,
            window_seconds=self.login_window_seconds,
            block_seconds=self.login_block_seconds,
        )

    def token_rate_limit(self) -> RateLimitConfig:
        return RateLimitConfig(
            max_attempts=self.token_max_attempts,
            window_seconds=self.token_window_seconds,
            block_seconds=self.token_block_seconds,
        )

    def api_key_rate_limit(self) -> RateLimitConfig:
        return RateLimitConfig(
            max_attempts=self.api_key_max_attempts,
            window_seconds=self.api_key_window_seconds,
            block_seconds=self.api_key_block_seconds,
        )


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
