from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from notekeeper.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_from_env(model_cls: type[BaseModel]) -> dict[str, str]:
    env_file_values = dotenv_values(".env")
    merged: dict[str, str] = {}
    for name, field in model_cls.model_fields.items():
        extra = field.json_schema_extra or {}
        env_key = extra.get("env") if isinstance(extra, dict) else None
        env_name = env_key or name.upper()
        if env_name in os.environ:
            merged[name] = os.environ[env_name]
        elif env_name in env_file_values and env_file_values[env_name] is not None:
            merged[name] = env_file_values[env_name]
    return merged


class Settings(BaseModel):
    """Server runtime settings read from the environment and an optional .env file."""

    redis_url: str | None = env_field(None, "REDIS_URL")
    redis_socket_timeout_seconds: float = env_field(2.0, "REDIS_SOCKET_TIMEOUT_SECONDS")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviour for CI: in-process limiter and store, no SMTP.",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    store_path: str | None = env_field(
        None,
        "STORE_PATH",
        description="Directory for the JSON snapshot of users and sessions; unset keeps state in memory",
    )

    session_ttl_minutes: int = env_field(
        7 * 24 * 60, "SESSION_TTL_MINUTES", description="Lifetime of a bearer session token"
    )
    password_reset_ttl_minutes: int = env_field(15, "PASSWORD_RESET_TTL_MINUTES")
    email_verification_ttl_minutes: int = env_field(
        24 * 60, "EMAIL_VERIFICATION_TTL_MINUTES"
    )

    # Sign-in and sign-up share this policy; every request counts.
    auth_rate_limit_max: int = env_field(5, "AUTH_RATE_LIMIT_MAX")
    auth_rate_limit_window_seconds: int = env_field(60, "AUTH_RATE_LIMIT_WINDOW_SECONDS")
    # Password reset and email verification; only failed attempts count.
    reset_rate_limit_max: int = env_field(3, "RESET_RATE_LIMIT_MAX")
    reset_rate_limit_window_seconds: int = env_field(60, "RESET_RATE_LIMIT_WINDOW_SECONDS")

    state_cleanup_interval_seconds: int = env_field(300, "STATE_CLEANUP_INTERVAL_SECONDS")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Notekeeper", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    cors_allow_origins: list[str] = env_field(
        ["http://localhost:8081"],
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of origins allowed to call the API",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(**_load_from_env(cls))

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "session_ttl_minutes",
        "password_reset_ttl_minutes",
        "email_verification_ttl_minutes",
        "auth_rate_limit_max",
        "auth_rate_limit_window_seconds",
        "reset_rate_limit_max",
        "reset_rate_limit_window_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value


class ClientSettings(BaseModel):
    """Settings for the notekeeper client (API base URL and credential storage)."""

    api_url: str = env_field("http://localhost:8000", "NOTEKEEPER_API_URL")
    credential_path: str = env_field(
        os.path.join(os.path.expanduser("~"), ".notekeeper", "credentials.bin"),
        "NOTEKEEPER_CREDENTIAL_PATH",
    )
    credential_key: str | None = env_field(
        None,
        "NOTEKEEPER_CREDENTIAL_KEY",
        description="Fernet key used to encrypt stored credentials",
    )
    http_timeout_seconds: float = env_field(10.0, "NOTEKEEPER_HTTP_TIMEOUT")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "ClientSettings":
        return cls(**_load_from_env(cls))


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            test_mode=_settings_cache.test_mode,
            redis_configured=bool(_settings_cache.redis_url),
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
