from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

_MIN_SECRET_LENGTH = 16


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core and its collaborators."""

    # token.*
    token_secret: str | None = env_field(
        None,
        "TOKEN_SECRET",
        description="HMAC key used to sign bearer tokens",
        validate_default=True,
    )
    token_duration_minutes: int = env_field(
        60, "TOKEN_DURATION_MINUTES", description="Lifetime of minted tokens"
    )
    token_issuer: str | None = env_field(
        None,
        "TOKEN_ISSUER",
        description="Value stamped into and required from the iss claim",
        validate_default=True,
    )
    # cache.user.* / cache.deny.*
    user_cache_prefix: str | None = env_field(
        None,
        "USER_CACHE_PREFIX",
        description="Namespace for user records, pointers and pages",
        validate_default=True,
    )
    user_cache_ttl_minutes: int = env_field(10, "USER_CACHE_TTL_MINUTES")
    deny_cache_prefix: str | None = env_field(
        None,
        "DENY_CACHE_PREFIX",
        description="Namespace for revoked token ids",
        validate_default=True,
    )
    # repository.*
    database_url: str = env_field("postgresql://localhost:5432/todo", "DATABASE_URL")
    repository_min_conns: int = env_field(1, "POSTGRES_POOL_MIN_CONN")
    repository_max_conns: int = env_field(10, "POSTGRES_POOL_MAX_CONN")

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    default_page_limit: int = env_field(10, "DEFAULT_PAGE_LIMIT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as runtime resets.",
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

    @field_validator("token_secret")
    @classmethod
    def _require_token_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("TOKEN_SECRET must be set")
        if len(value) < _MIN_SECRET_LENGTH:
            raise ValueError(
                f"TOKEN_SECRET must be at least {_MIN_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("token_issuer")
    @classmethod
    def _require_token_issuer(cls, value: str | None) -> str:
        if not value or not value.strip():
            raise ValueError("TOKEN_ISSUER must be set")
        return value.strip()

    @field_validator("user_cache_prefix", "deny_cache_prefix")
    @classmethod
    def _require_prefix(cls, value: str | None, info: ValidationInfo) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError(f"{info.field_name.upper()} must be set")
        return value

    @field_validator(
        "token_duration_minutes",
        "user_cache_ttl_minutes",
        "repository_min_conns",
        "repository_max_conns",
        "default_page_limit",
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("value must be positive")
        return value

    @model_validator(mode="after")
    def _validate_pool_bounds(self):
        if self.repository_min_conns > self.repository_max_conns:
            raise ValueError("POSTGRES_POOL_MIN_CONN cannot exceed POSTGRES_POOL_MAX_CONN")
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
