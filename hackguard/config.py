from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from hackguard.logging import get_logger

logger = get_logger(__name__)


class Role(str, Enum):
    """User roles; each role lives in its own storage partition."""

    PARTICIPANT = "participant"
    ORGANIZER = "organizer"
    ADMIN = "admin"


# Fan-out order for token lookups when the role is not yet known.
PARTITION_ORDER: tuple[str, ...] = (
    Role.PARTICIPANT.value,
    Role.ORGANIZER.value,
    Role.ADMIN.value,
)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for session security and abuse prevention."""

    app_env: str = env_field(
        "development",
        "APP_ENV",
        description="'production' enforces secure cookies and makes missing secrets fatal",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    # Secrets are resolved at runtime construction; see service.crypto.resolve_secret
    session_secret: str | None = env_field(None, "SESSION_SECRET")
    csrf_secret: str | None = env_field(None, "CSRF_SECRET")

    session_ttl_minutes: int = env_field(
        60, "SESSION_TTL_MINUTES", description="Sliding (relative) session lifetime"
    )
    session_absolute_ttl_minutes: int = env_field(
        24 * 60,
        "SESSION_ABSOLUTE_TTL_MINUTES",
        description="Hard ceiling from session creation, never extended",
    )
    session_refresh_threshold_minutes: int = env_field(
        15,
        "SESSION_REFRESH_THRESHOLD_MINUTES",
        description="Refresh a session when it is this close to relative expiry",
    )
    csrf_token_ttl_minutes: int = env_field(24 * 60, "CSRF_TOKEN_TTL_MINUTES")

    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS")
    login_lockout_minutes: int = env_field(15, "LOGIN_LOCKOUT_MINUTES")
    login_lockout_extend_on_attempt: bool = env_field(
        False,
        "LOGIN_LOCKOUT_EXTEND_ON_ATTEMPT",
        description="Re-arm the lock on every attempt made while already locked",
    )
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    login_rate_limit_window_seconds: int = env_field(
        60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS"
    )

    session_cookie_name: str = env_field("hackathon_session", "SESSION_COOKIE_NAME")
    csrf_cookie_name: str = env_field("hackathon_csrf", "CSRF_COOKIE_NAME")
    session_cookie_domain: str | None = env_field(None, "SESSION_COOKIE_DOMAIN")

    redis_url: str | None = env_field(None, "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    participant_database_url: str | None = env_field(None, "PARTICIPANT_DATABASE_URL")
    organizer_database_url: str | None = env_field(None, "ORGANIZER_DATABASE_URL")
    admin_database_url: str | None = env_field(None, "ADMIN_DATABASE_URL")

    cleanup_interval_seconds: int = env_field(
        300,
        "CLEANUP_INTERVAL_SECONDS",
        description="Period of the expired rate-limit/lockout record sweep",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    trust_proxy_headers: bool = env_field(
        False,
        "TRUST_PROXY_HEADERS",
        description="Key per-IP limits on X-Forwarded-For / X-Real-IP; only behind a proxy that sets them",
    )

    model_config = ConfigDict(extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.app_env.strip().lower() == "production"

    def partition_dsns(self) -> dict[str, str | None]:
        return {
            Role.PARTICIPANT.value: self.participant_database_url,
            Role.ORGANIZER.value: self.organizer_database_url,
            Role.ADMIN.value: self.admin_database_url,
        }

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "session_ttl_minutes",
        "session_absolute_ttl_minutes",
        "csrf_token_ttl_minutes",
        "login_max_attempts",
        "login_lockout_minutes",
        "login_rate_limit_window_seconds",
        "cleanup_interval_seconds",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _check_session_windows(self) -> "Settings":
        if self.session_ttl_minutes > self.session_absolute_ttl_minutes:
            raise ValueError(
                "SESSION_TTL_MINUTES cannot exceed SESSION_ABSOLUTE_TTL_MINUTES"
            )
        if not 0 <= self.session_refresh_threshold_minutes < self.session_ttl_minutes:
            raise ValueError(
                "SESSION_REFRESH_THRESHOLD_MINUTES must be below SESSION_TTL_MINUTES"
            )
        return self


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
