from __future__ import annotations

import os
from datetime import timedelta
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authcore.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment mode; production switches credential cookies to Secure."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide configuration, resolved once at startup and never mutated.

    Components receive the instance by injection; nothing below the entry
    point reads the environment on its own. Secrets are optional at the model
    level so tests can fabricate partial configs; the runtime refuses to start
    without them.
    """

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    api_version: str = env_field("1", "API_VERSION")
    database_url: str = env_field(
        "postgresql://localhost:5432/authcore", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Synchronous Redis client and tolerated cache absence for test runs.",
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_algorithm: str = env_field("HS256", "JWT_ALGORITHM")
    hash_pepper: str | None = env_field(None, "HASH_PEPPER")
    hash_cost: int = env_field(
        3, "HASH_COST", description="argon2 time cost (adaptive cost factor)"
    )
    hash_memory_kib: int = env_field(65536, "HASH_MEMORY_KIB")

    cache_ttl_seconds: int = env_field(
        900, "CACHE_TTL", description="Cache entry TTL; unrelated to session expiry"
    )
    token_duration_seconds: int = env_field(5 * 60, "JWT_DURATION_SECONDS")
    rotation_threshold_seconds: int = env_field(30, "JWT_REFRESH_THRESHOLD_SECONDS")
    session_duration_seconds: int = env_field(
        28 * 24 * 60 * 60, "SESSION_DURATION_SECONDS"
    )
    session_expiry_grace_seconds: int = env_field(
        60,
        "SESSION_EXPIRY_GRACE_SECONDS",
        description="How long a session past expires_at is still honoured (sweep cadence)",
    )
    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")
    log_dev_mode: bool = env_field(False, "LOG_DEV_MODE")

    dependency_timeout_seconds: float = env_field(3.0, "DEPENDENCY_TIMEOUT_SECONDS")
    resolution_timeout_seconds: float = env_field(7.0, "RESOLUTION_TIMEOUT_SECONDS")

    cors_allow_origins: list[str] = env_field(
        [
            "http://localhost",
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        "CORS_ALLOW_ORIGINS",
    )

    model_config = ConfigDict(extra="ignore", frozen=True)

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
        return cls(**merged)

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            value = value.strip().lower()
        return Environment(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_secret", "hash_pepper", mode="before")
    @classmethod
    def _blank_secret_is_missing(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator(
        "token_duration_seconds",
        "session_duration_seconds",
        "cache_ttl_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("duration must be positive")
        return value

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def token_duration(self) -> timedelta:
        return timedelta(seconds=self.token_duration_seconds)

    @property
    def rotation_threshold(self) -> timedelta:
        return timedelta(seconds=self.rotation_threshold_seconds)

    @property
    def session_duration(self) -> timedelta:
        return timedelta(seconds=self.session_duration_seconds)

    @property
    def session_expiry_grace(self) -> timedelta:
        return timedelta(seconds=self.session_expiry_grace_seconds)


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
