from __future__ import annotations

import os
import secrets
from datetime import timedelta
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from intelliguard.logging import get_logger

logger = get_logger(__name__)

_MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity core.

    Values are read once at startup and the model is frozen afterwards, so
    token lifetimes and lockout thresholds cannot drift while serving.
    """

    database_url: str = env_field(
        "postgresql://localhost:5432/intelliguard", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    state_dir: str | None = env_field(
        None,
        "STATE_DIR",
        description="Directory for the memory store's JSON snapshot; unset keeps state in-process only",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow an ephemeral JWT secret when JWT_SECRET is unset",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("intelliguard", "JWT_ISSUER")
    jwt_audience: str = env_field("intelliguard-clients", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(
        60 * 60,
        "ACCESS_TOKEN_TTL_SECONDS",
        description="Access token lifetime in seconds",
    )
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60,
        "REFRESH_TOKEN_TTL_SECONDS",
        description="Refresh token lifetime in seconds",
    )
    lockout_max_attempts: int = env_field(
        5,
        "LOCKOUT_MAX_ATTEMPTS",
        description="Consecutive failed logins before the account is locked",
    )
    lockout_duration_minutes: int = env_field(
        15,
        "LOCKOUT_DURATION_MINUTES",
        description="How long a lock lasts once triggered",
    )
    default_role: str = env_field("VIEWER", "DEFAULT_ROLE")
    seed_roles: str = env_field(
        "ADMIN,ANALYST,VIEWER",
        "SEED_ROLES",
        description="Comma separated role names created by bootstrap and the memory store",
    )
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    model_config = ConfigDict(extra="ignore", frozen=True)

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

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "lockout_max_attempts",
        "lockout_duration_minutes",
        "argon2_time_cost",
        "argon2_memory_cost",
        "argon2_parallelism",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("default_role")
    @classmethod
    def _normalize_role(cls, value: str) -> str:
        value = value.strip().upper()
        if not value:
            raise ValueError("default_role must not be empty")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < _MIN_JWT_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {_MIN_JWT_SECRET_LENGTH} characters"
                )
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET is required unless TEST_MODE is enabled")
        # Ephemeral secret: tokens do not survive a restart in test mode
        logger.warning("jwt_secret_generated", reason="test_mode")
        object.__setattr__(self, "jwt_secret", secrets.token_urlsafe(64))
        return self

    @property
    def access_token_ttl(self) -> timedelta:
        return timedelta(seconds=self.access_token_ttl_seconds)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return timedelta(seconds=self.refresh_token_ttl_seconds)

    @property
    def lockout_duration(self) -> timedelta:
        return timedelta(minutes=self.lockout_duration_minutes)

    @property
    def seed_role_names(self) -> list[str]:
        names = [name.strip().upper() for name in self.seed_roles.split(",")]
        return [name for name in names if name]


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
