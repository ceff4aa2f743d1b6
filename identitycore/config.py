from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from identitycore.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/identitycore", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and the in-memory fallbacks.",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("identitycore", "JWT_ISSUER")
    jwt_audience: str = env_field("identitycore-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    max_refresh_tokens_per_account: int = env_field(
        5,
        "MAX_REFRESH_TOKENS_PER_ACCOUNT",
        description="Older refresh tokens are pruned at login beyond this count",
    )

    # Credentials
    password_min_length: int = env_field(MIN_PASSWORD_LENGTH, "PASSWORD_MIN_LENGTH")
    password_require_complexity: bool = env_field(
        True,
        "PASSWORD_REQUIRE_COMPLEXITY",
        description="Require upper, lower, digit and special characters",
    )
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(64 * 1024, "ARGON2_MEMORY_COST")
    argon2_parallelism: int = env_field(2, "ARGON2_PARALLELISM")

    # Password reset
    password_reset_token_ttl_minutes: int = env_field(
        30, "PASSWORD_RESET_TOKEN_TTL_MINUTES"
    )
    password_reset_rate_limit: int = env_field(5, "PASSWORD_RESET_RATE_LIMIT")
    password_reset_rate_window_seconds: int = env_field(
        60 * 60, "PASSWORD_RESET_RATE_WINDOW_SECONDS"
    )

    # Invitations
    invitation_ttl_hours: int = env_field(48, "INVITATION_TTL_HOURS")
    invitation_require_names: bool = env_field(
        True,
        "INVITATION_REQUIRE_NAMES",
        description="Reject acceptance when first or last name cannot be resolved",
    )
    default_role_name: str = env_field("user", "DEFAULT_ROLE_NAME")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Identity", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    notifier_max_attempts: int = env_field(3, "NOTIFIER_MAX_ATTEMPTS")
    notifier_retry_backoff_seconds: list[float] = env_field(
        [1.0, 5.0, 15.0],
        "NOTIFIER_RETRY_BACKOFF_SECONDS",
        description="Comma separated delays between delivery attempts",
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

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    @field_validator("password_min_length")
    @classmethod
    def _enforce_min_password_length(cls, value: int) -> int:
        if value < MIN_PASSWORD_LENGTH:
            raise ValueError(
                f"password_min_length must be at least {MIN_PASSWORD_LENGTH}"
            )
        return value

    @field_validator("notifier_retry_backoff_seconds", mode="before")
    @classmethod
    def _parse_backoff(cls, value: Any) -> Any:
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(",")]
            return [float(part) for part in parts if part]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Tokens signed with a generated secret do not survive a restart
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET is not set; using a per-process secret",
        )
        return secrets.token_urlsafe(64)


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
