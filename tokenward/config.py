from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tokenward.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


class RefreshStoreMode(str, Enum):
    """Refresh-token persistence strategies.

    - DURABLE: relational table keyed by subject (Postgres, or the in-memory
      store when ``USE_MEMORY_STORE`` is set)
    - CACHE: Redis key per subject with native TTL
    - STATELESS: nothing persisted; logout is advisory and rotation cannot
      detect replay
    """

    DURABLE = "durable"
    CACHE = "cache"
    STATELESS = "stateless"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the token lifecycle service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tokenward", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    refresh_store: RefreshStoreMode = env_field(
        RefreshStoreMode.DURABLE,
        "REFRESH_STORE",
        description="Refresh token strategy: durable, cache, or stateless",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Generate ephemeral signing secrets when none are configured",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("tokenward", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", gt=0
    )
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", gt=0)
    clock_skew_leeway_seconds: int = env_field(
        120,
        "CLOCK_SKEW_LEEWAY_SECONDS",
        ge=0,
        description="Grace applied to token expiry to tolerate drift between nodes",
    )

    # argon2id cost; None keeps the argon2-cffi defaults
    password_time_cost: int | None = env_field(None, "PASSWORD_TIME_COST")
    password_memory_cost: int | None = env_field(None, "PASSWORD_MEMORY_COST")
    password_parallelism: int | None = env_field(None, "PASSWORD_PARALLELISM")
    hash_workers: int = env_field(
        4, "HASH_WORKERS", gt=0, description="Threads reserved for password hashing"
    )
    hash_timeout_seconds: float = env_field(10.0, "HASH_TIMEOUT_SECONDS", gt=0)
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        gt=0,
        description="Upper bound for any identity or token store call",
    )

    # credential endpoints, per email and client address; 0 disables
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE", ge=0)
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE", ge=0)

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("refresh_store", mode="before")
    @classmethod
    def _validate_refresh_store(cls, value: Any) -> RefreshStoreMode:
        if isinstance(value, str):
            value = value.strip().lower()
        return RefreshStoreMode(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @model_validator(mode="after")
    def _ensure_signing_secrets(self) -> "Settings":
        if self.test_mode:
            if not self.jwt_secret:
                self.jwt_secret = secrets.token_urlsafe(48)
            if not self.jwt_refresh_secret:
                self.jwt_refresh_secret = secrets.token_urlsafe(48)
        for field_name in ("jwt_secret", "jwt_refresh_secret"):
            value = getattr(self, field_name)
            if not value:
                raise ValueError(f"{field_name.upper()} must be set")
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(
                    f"{field_name.upper()} must be at least {_MIN_SECRET_LENGTH} characters"
                )
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        if self.refresh_store == RefreshStoreMode.STATELESS:
            logger.warning(
                "refresh_store_stateless",
                message="logout is advisory and refresh replay cannot be detected",
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
