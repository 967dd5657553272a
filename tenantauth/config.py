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
    """Runtime settings for the auth core, read from the environment and `.env`."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tenantauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors: generated secrets, in-process cache",
    )

    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_access_expiration: str = env_field(
        "15m", "JWT_ACCESS_EXPIRATION", description="Shorthand duration: Ns, Nm, Nh or Nd"
    )
    jwt_refresh_expiration: str = env_field("7d", "JWT_REFRESH_EXPIRATION")
    jwt_issuer: str = env_field("tenantauth", "JWT_ISSUER")

    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting TOTP secrets at rest",
    )
    mfa_session_ttl_seconds: int = env_field(600, "MFA_SESSION_TTL_SECONDS")
    mfa_setup_ttl_seconds: int = env_field(600, "MFA_SETUP_TTL_SECONDS")
    mfa_code_ttl_seconds: int = env_field(300, "MFA_CODE_TTL_SECONDS")
    mfa_max_attempts: int = env_field(5, "MFA_MAX_ATTEMPTS")
    mfa_lockout_seconds: int = env_field(300, "MFA_LOCKOUT_SECONDS")
    totp_issuer: str = env_field("Multi-Tenant-System", "TOTP_ISSUER")

    password_reset_ttl_hours: int = env_field(24, "PASSWORD_RESET_TTL_HOURS")
    default_login_attempts: int = env_field(5, "DEFAULT_LOGIN_ATTEMPTS")
    default_lockout_minutes: int = env_field(30, "DEFAULT_LOCKOUT_MINUTES")
    revocation_lookup_timeout_seconds: float = env_field(
        0.5,
        "REVOCATION_LOOKUP_TIMEOUT_SECONDS",
        description="Upper bound for a revocation check before it fails closed",
    )
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

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
        "mfa_session_ttl_seconds",
        "mfa_setup_ttl_seconds",
        "mfa_code_ttl_seconds",
        "mfa_max_attempts",
        "mfa_lockout_seconds",
        "password_reset_ttl_hours",
        "default_login_attempts",
        "default_lockout_minutes",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("revocation_lookup_timeout_seconds")
    @classmethod
    def _bounded_timeout(cls, value: float) -> float:
        if value <= 0 or value > 5:
            raise ValueError("revocation lookup timeout must be within (0, 5] seconds")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secrets(self) -> "Settings":
        # Generated secrets do not survive a restart; only acceptable in tests
        if not self.jwt_access_secret or not self.jwt_refresh_secret:
            if not self.test_mode:
                raise ValueError(
                    "JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must be set outside TEST_MODE"
                )
            logger.warning("jwt_secret_generated_for_test_mode")
            if not self.jwt_access_secret:
                self.jwt_access_secret = secrets.token_urlsafe(64)
            if not self.jwt_refresh_secret:
                self.jwt_refresh_secret = secrets.token_urlsafe(64)
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("access and refresh tokens must be signed with different secrets")
        return self

    @property
    def mfa_cipher_material(self) -> str:
        return self.mfa_secret_key or self.jwt_access_secret or ""


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
