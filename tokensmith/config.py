from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

# RSA moduli below this are rejected for RS256 signing keys
MIN_SIGNING_KEY_BITS = 2048


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and token service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tokensmith", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    cache_namespace: str = env_field(
        "tokensmith",
        "CACHE_NAMESPACE",
        description="Prefix prepended to every ephemeral cache key",
    )
    key_dir: str = env_field(
        "/srv/tokensmith/keys",
        "PEM_EXPORT_PATH",
        description="Directory holding one sub-directory per signing key id",
    )
    signing_key_bits: int = env_field(4096, "SIGNING_KEY_BITS")
    keys_cache_ttl_seconds: int = env_field(600, "KEYS_CACHE_TTL_SECONDS")
    jwks_cache_ttl_seconds: int = env_field(300, "JWKS_CACHE_TTL_SECONDS")
    access_token_ttl_seconds: int = env_field(300, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_days: int = env_field(90, "REFRESH_TOKEN_TTL_DAYS")
    refresh_token_prefix: str = env_field("refresh_", "REFRESH_TOKEN_PREFIX")
    attempt_throttle_ttl_seconds: int = env_field(
        300,
        "ATTEMPT_THROTTLE_TTL_SECONDS",
        description="Window during which an identical register/login attempt is refused",
    )
    verify_failure_ttl_seconds: int = env_field(
        60,
        "VERIFY_FAILURE_TTL_SECONDS",
        description="How long a failed access-token verification stays memoized",
    )
    password_hash_cost: int = env_field(
        10,
        "PASSWORD_HASH_COST",
        description=(
            "argon2id time cost used when hashing new passwords; login latency grows "
            "roughly linearly with it (10 is about 3x the argon2-cffi default of 3)"
        ),
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (sync Redis client, memory cache fallback)",
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

    @field_validator("signing_key_bits")
    @classmethod
    def _validate_key_bits(cls, value: int) -> int:
        if value < MIN_SIGNING_KEY_BITS:
            raise ValueError(
                f"signing_key_bits must be at least {MIN_SIGNING_KEY_BITS}"
            )
        return value

    @field_validator(
        "keys_cache_ttl_seconds",
        "jwks_cache_ttl_seconds",
        "access_token_ttl_seconds",
        "refresh_token_ttl_days",
        "attempt_throttle_ttl_seconds",
        "verify_failure_ttl_seconds",
        "password_hash_cost",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value


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
