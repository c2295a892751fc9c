from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core, read from the environment."""

    database_url: str = env_field(
        "postgresql://localhost:5432/clinauth", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and in-memory stores for test runs.",
    )

    access_token_secret: str | None = env_field(None, "ACCESS_TOKEN_SECRET")
    refresh_token_secret: str | None = env_field(None, "REFRESH_TOKEN_SECRET")
    jwt_issuer: str = env_field("clinauth", "JWT_ISSUER")
    jwt_audience: str = env_field("clinauth-clients", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(
        15 * 60, "ACCESS_TOKEN_TTL_SECONDS", description="Access token lifetime"
    )
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60,
        "REFRESH_TOKEN_TTL_SECONDS",
        description="Refresh token lifetime; also the session TTL in the store",
    )

    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD")
    lockout_duration_seconds: int = env_field(30 * 60, "LOCKOUT_DURATION_SECONDS")

    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_require_upper: bool = env_field(True, "PASSWORD_REQUIRE_UPPER")
    password_require_lower: bool = env_field(True, "PASSWORD_REQUIRE_LOWER")
    password_require_digit: bool = env_field(True, "PASSWORD_REQUIRE_DIGIT")
    password_require_special: bool = env_field(True, "PASSWORD_REQUIRE_SPECIAL")

    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        description="Upper bound on any single credential or session store call",
    )
    default_role: str = env_field("patient", "DEFAULT_ROLE")
    revoke_all_on_refresh_reuse: bool = env_field(
        True,
        "REVOKE_ALL_ON_REFRESH_REUSE",
        description="Invalidate every session of a user when a rotated refresh token is replayed",
    )
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"], "CORS_ALLOW_ORIGINS"
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        if isinstance(merged.get("cors_allow_origins"), str):
            merged["cors_allow_origins"] = [
                origin.strip()
                for origin in merged["cors_allow_origins"].split(",")
                if origin.strip()
            ]
        return cls(**merged)

    @field_validator("access_token_secret", "refresh_token_secret")
    @classmethod
    def _ensure_secret(cls, value: str | None, info) -> str:
        if not value:
            raise ValueError(f"{info.field_name} must be set")
        if len(value) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"{info.field_name} must be at least {MIN_SECRET_LENGTH} characters"
            )
        return value

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "lockout_duration_seconds",
        "lockout_threshold",
        "password_min_length",
    )
    @classmethod
    def _ensure_positive(cls, value: int, info) -> int:
        if value < 1:
            raise ValueError(f"{info.field_name} must be >= 1")
        return value

    @field_validator("store_timeout_seconds")
    @classmethod
    def _ensure_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("store_timeout_seconds must be positive")
        return value

    @model_validator(mode="after")
    def _secrets_differ(self) -> "Settings":
        if not self.access_token_secret or not self.refresh_token_secret:
            raise ValueError("access and refresh token secrets must be set")
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("access and refresh token secrets must differ")
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
