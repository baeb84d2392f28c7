from __future__ import annotations

import os
from datetime import timedelta
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ssoauth.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments the service knows how to run in."""

    LOCAL = "local"
    DEV = "dev"
    PROD = "prod"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session engine."""

    environment: Environment = env_field(Environment.LOCAL, "ENV")
    token_ttl_minutes: int = env_field(
        60,
        "TOKEN_TTL_MINUTES",
        description="Access token lifetime; also the session's active window",
    )
    refresh_token_ttl_minutes: int = env_field(
        24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token lifetime; the session's refreshable window",
    )
    jwt_issuer: str = env_field("ssoauth", "JWT_ISSUER")
    # argon2id work factor (RFC 9106 second recommended option)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(
        64 * 1024, "PASSWORD_HASH_MEMORY_COST", description="KiB"
    )
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")
    state_path: str | None = env_field(
        None,
        "STATE_PATH",
        description="JSON snapshot for the memory store; in-process only when unset",
    )
    store_secret_key: str | None = env_field(
        None,
        "STORE_SECRET_KEY",
        description="Key material used to encrypt app secrets in the snapshot",
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

    @field_validator("environment")
    @classmethod
    def _validate_environment(cls, value: Environment) -> Environment:
        return Environment(value)

    @field_validator(
        "token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "password_hash_time_cost",
        "password_hash_memory_cost",
        "password_hash_parallelism",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @property
    def token_ttl(self) -> timedelta:
        return timedelta(minutes=self.token_ttl_minutes)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return timedelta(minutes=self.refresh_token_ttl_minutes)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        if _settings_cache.refresh_token_ttl < _settings_cache.token_ttl:
            logger.warning(
                "refresh_ttl_shorter_than_token_ttl",
                token_ttl_minutes=_settings_cache.token_ttl_minutes,
                refresh_token_ttl_minutes=_settings_cache.refresh_token_ttl_minutes,
            )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
