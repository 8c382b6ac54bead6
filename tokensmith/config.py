from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core and the gateway."""

    # Credential store
    database_url: str = env_field(
        "postgresql://localhost:5432/tokensmith", "DATABASE_URL"
    )
    database_pool_timeout_seconds: float = env_field(5.0, "DATABASE_POOL_TIMEOUT_SECONDS")
    database_statement_timeout_ms: int = env_field(5000, "DATABASE_STATEMENT_TIMEOUT_MS")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    store_fs_root: str | None = env_field(
        None,
        "STORE_FS_ROOT",
        description="Directory where the in-memory store persists its state; unset keeps it in memory only",
    )

    # Cache
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviour: ephemeral signing keys, in-process cache fallback.",
    )
    cache_key_prefix: str = env_field("tokensmith:", "CACHE_KEY_PREFIX")
    cache_default_ttl_seconds: int = env_field(300, "CACHE_DEFAULT_TTL_SECONDS")

    # Signing keys, one active key per token class
    access_private_key_path: str | None = env_field(None, "JWT_ACCESS_PRIVATE_KEY_PATH")
    access_public_key_path: str | None = env_field(None, "JWT_ACCESS_PUBLIC_KEY_PATH")
    access_private_key: str | None = env_field(None, "JWT_ACCESS_PRIVATE_KEY")
    access_key_id: str = env_field("access-v1", "JWT_ACCESS_KID")
    refresh_private_key_path: str | None = env_field(None, "JWT_REFRESH_PRIVATE_KEY_PATH")
    refresh_public_key_path: str | None = env_field(None, "JWT_REFRESH_PUBLIC_KEY_PATH")
    refresh_private_key: str | None = env_field(None, "JWT_REFRESH_PRIVATE_KEY")
    refresh_key_id: str = env_field("refresh-v1", "JWT_REFRESH_KID")
    access_token_ttl_seconds: int = env_field(15 * 60, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS"
    )

    # Advisory cache lifetimes
    session_ttl_seconds: int = env_field(60 * 60, "SESSION_TTL_SECONDS")
    account_cache_ttl_seconds: int = env_field(30 * 60, "ACCOUNT_CACHE_TTL_SECONDS")

    # Gateway throttles
    login_failure_threshold: int = env_field(5, "LOGIN_FAILURE_THRESHOLD")
    login_failure_window_seconds: int = env_field(30 * 60, "LOGIN_FAILURE_WINDOW_SECONDS")
    register_cooldown_seconds: int = env_field(
        5 * 60,
        "REGISTER_COOLDOWN_SECONDS",
        description="Per-email registration cooldown; 0 disables it",
    )
    ip_rate_limit: int = env_field(10, "IP_RATE_LIMIT")
    ip_rate_window_seconds: int = env_field(60, "IP_RATE_WINDOW_SECONDS")
    user_list_cache_seconds: int = env_field(5 * 60, "USER_LIST_CACHE_SECONDS")

    # Gateway → auth core channel
    auth_core_url: str | None = env_field(
        None,
        "AUTH_CORE_URL",
        description="Base URL of a remote auth core; unset dispatches in-process",
    )
    upstream_timeout_seconds: float = env_field(10.0, "UPSTREAM_TIMEOUT_SECONDS")
    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")

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
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "session_ttl_seconds",
        "account_cache_ttl_seconds",
        "cache_default_ttl_seconds",
        "login_failure_window_seconds",
        "ip_rate_window_seconds",
        "database_statement_timeout_ms",
    )
    @classmethod
    def _positive_seconds(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("TTL and window values must be positive")
        return value

    @field_validator("upstream_timeout_seconds", "database_pool_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value

    @field_validator(
        "redis_url",
        "auth_core_url",
        "store_fs_root",
        "access_private_key_path",
        "access_public_key_path",
        "access_private_key",
        "refresh_private_key_path",
        "refresh_public_key_path",
        "refresh_private_key",
    )
    @classmethod
    def _blank_is_unset(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]


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
