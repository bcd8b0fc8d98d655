from __future__ import annotations

import os
from typing import Any, Literal

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth backend, read from the environment."""

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and the in-memory store fallback for test runs.",
    )
    # Signing secrets have no default: a missing secret is a fatal configuration error
    access_token_secret: str | None = env_field(None, "ACCESS_TOKEN_SEED")
    refresh_token_secret: str | None = env_field(None, "REFRESH_TOKEN_SEED")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    session_ttl_minutes: int = env_field(
        24 * 60,
        "SESSION_TTL_MINUTES",
        description="Lifetime of a stored auth session; refreshed on every deny-list write.",
    )
    session_update_retries: int = env_field(5, "SESSION_UPDATE_RETRIES")
    session_list_limit: int = env_field(10, "SESSION_LIST_LIMIT")
    unify_credential_errors: bool = env_field(
        True,
        "UNIFY_CREDENTIAL_ERRORS",
        description="Report unknown email and wrong password as the same login failure.",
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cookie_samesite: Literal["strict", "lax", "none"] = env_field(
        "strict", "COOKIE_SAMESITE"
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

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "session_ttl_minutes",
        "session_update_retries",
        "session_list_limit",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("access_token_secret", "refresh_token_secret")
    @classmethod
    def _blank_secret_is_missing(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value

    @property
    def session_ttl_ms(self) -> int:
        return self.session_ttl_minutes * 60 * 1000


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
