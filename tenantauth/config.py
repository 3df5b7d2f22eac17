from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tenantauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the tenant auth service."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_cache: bool = env_field(
        False,
        "USE_MEMORY_CACHE",
        description="Keep revocations, counters and tenant keys in process memory (single instance only)",
    )
    credential_store_root: str | None = env_field(
        None,
        "CREDENTIAL_STORE_ROOT",
        description="Directory for the credential store snapshot; unset keeps users in memory only",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors; allows generated signing secrets.",
    )

    # Token signing: one secret per token kind
    access_token_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    refresh_token_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("multi-tenant-crm", "JWT_ISSUER")
    access_token_ttl_seconds: int = env_field(15 * 60, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(7 * 24 * 3600, "REFRESH_TOKEN_TTL_SECONDS")
    token_leeway_seconds: int = env_field(
        0,
        "TOKEN_LEEWAY_SECONDS",
        description="Clock skew tolerated when checking token expiry",
    )

    # Login throttling
    rate_limit_max_attempts: int = env_field(5, "LOGIN_RATE_LIMIT_MAX_ATTEMPTS")
    rate_limit_window_seconds: int = env_field(15 * 60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS")

    # Password policy and hashing work factor
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH")
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(64 * 1024, "PASSWORD_HASH_MEMORY_COST")

    # Tenant field encryption
    key_rotation_interval_seconds: int = env_field(
        30 * 24 * 3600, "KEY_ROTATION_INTERVAL_SECONDS"
    )
    key_retention_versions: int = env_field(
        0,
        "KEY_RETENTION_VERSIONS",
        description="Number of key versions kept per tenant; 0 keeps every version",
    )

    # MFA
    mfa_issuer: str = env_field("CRM", "MFA_ISSUER")
    mfa_skew_steps: int = env_field(1, "MFA_SKEW_STEPS")

    # External call policy
    operation_timeout_seconds: float = env_field(5.0, "AUTH_OPERATION_TIMEOUT_SECONDS")
    operation_max_retries: int = env_field(2, "AUTH_OPERATION_MAX_RETRIES")
    operation_backoff_seconds: float = env_field(0.05, "AUTH_OPERATION_BACKOFF_SECONDS")
    circuit_failure_threshold: int = env_field(5, "AUTH_CIRCUIT_FAILURE_THRESHOLD")
    circuit_cooldown_seconds: int = env_field(30, "AUTH_CIRCUIT_COOLDOWN_SECONDS")

    # Background maintenance
    maintenance_enabled: bool = env_field(True, "MAINTENANCE_ENABLED")
    revocation_sweep_interval_seconds: int = env_field(
        3600, "REVOCATION_SWEEP_INTERVAL_SECONDS"
    )
    key_rotation_check_interval_seconds: int = env_field(
        24 * 3600, "KEY_ROTATION_CHECK_INTERVAL_SECONDS"
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
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "rate_limit_max_attempts",
        "rate_limit_window_seconds",
        "key_rotation_interval_seconds",
        "revocation_sweep_interval_seconds",
        "key_rotation_check_interval_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("key_retention_versions", "mfa_skew_steps", "token_leeway_seconds")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @model_validator(mode="after")
    def _ensure_signing_secrets(self) -> "Settings":
        if not self.access_token_secret or not self.refresh_token_secret:
            if not self.test_mode:
                raise ValueError(
                    "JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must both be set"
                )
            # Ephemeral secrets are only acceptable for tests and local runs
            logger.warning("jwt_secrets_generated", test_mode=self.test_mode)
            self.access_token_secret = self.access_token_secret or secrets.token_urlsafe(48)
            self.refresh_token_secret = self.refresh_token_secret or secrets.token_urlsafe(48)
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("access and refresh tokens must use independent secrets")
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
