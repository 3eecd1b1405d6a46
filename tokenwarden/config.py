from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tokenwarden.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitSetting:
    """Limit/window pair for one rate-limited scope."""

    limit: int
    window_seconds: int


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process settings read from the environment (and `.env` as a fallback)."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tokenwarden", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviour; permits running without Redis.",
    )
    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")

    # Signing keys
    jwt_private_key: str | None = env_field(
        None,
        "JWT_PRIVATE_KEY",
        description="RSA private key, PKCS#8 or PKCS#1, PEM or bare base64 DER",
    )
    jwt_public_key: str | None = env_field(
        None,
        "JWT_PUBLIC_KEY",
        description="RSA public key, X.509 SubjectPublicKeyInfo, PEM or bare base64 DER",
    )
    jwt_key_id: str = env_field("tokenwarden-key-1", "JWT_KEY_ID")
    require_persistent_keys: bool = env_field(
        False,
        "REQUIRE_PERSISTENT_KEYS",
        description="Refuse to start with a generated (ephemeral) key pair",
    )
    log_ephemeral_key_pem: bool = env_field(
        False,
        "LOG_EPHEMERAL_KEY_PEM",
        description="Log the PEM of a generated key pair so it can be pinned (development only)",
    )

    # Token lifetimes
    access_token_ttl_minutes: int = env_field(30, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    revoke_all_on_refresh_replay: bool = env_field(
        False,
        "REVOKE_ALL_ON_REFRESH_REPLAY",
        description="Revoke every refresh token of a user when a rotated token is replayed",
    )

    # Account lockout
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD")
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES")

    # Rate limits (requests per window, window in seconds). The login limit
    # must stay above the lockout threshold or lockout is never reported.
    login_rate_limit: int = env_field(10, "LOGIN_RATE_LIMIT")
    login_rate_limit_window_seconds: int = env_field(300, "LOGIN_RATE_LIMIT_WINDOW_SECONDS")
    register_rate_limit: int = env_field(3, "REGISTER_RATE_LIMIT")
    register_rate_limit_window_seconds: int = env_field(
        900, "REGISTER_RATE_LIMIT_WINDOW_SECONDS"
    )
    verify_email_rate_limit: int = env_field(3, "VERIFY_EMAIL_RATE_LIMIT")
    verify_email_rate_limit_window_seconds: int = env_field(
        300, "VERIFY_EMAIL_RATE_LIMIT_WINDOW_SECONDS"
    )
    resend_verification_rate_limit: int = env_field(3, "RESEND_VERIFICATION_RATE_LIMIT")
    resend_verification_rate_limit_window_seconds: int = env_field(
        300, "RESEND_VERIFICATION_RATE_LIMIT_WINDOW_SECONDS"
    )
    forgot_password_rate_limit: int = env_field(3, "FORGOT_PASSWORD_RATE_LIMIT")
    forgot_password_rate_limit_window_seconds: int = env_field(
        900, "FORGOT_PASSWORD_RATE_LIMIT_WINDOW_SECONDS"
    )
    refresh_rate_limit: int = env_field(30, "REFRESH_RATE_LIMIT")
    refresh_rate_limit_window_seconds: int = env_field(60, "REFRESH_RATE_LIMIT_WINDOW_SECONDS")

    # Secondary credentials
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    verification_code_ttl_minutes: int = env_field(15, "VERIFICATION_CODE_TTL_MINUTES")
    verification_max_attempts: int = env_field(3, "VERIFICATION_MAX_ATTEMPTS")

    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    # Email delivery; an empty SMTP_HOST switches to log-only dev mode
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("TokenWarden", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

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
        "refresh_token_ttl_days",
        "lockout_threshold",
        "lockout_duration_minutes",
        "login_rate_limit",
        "login_rate_limit_window_seconds",
        "register_rate_limit",
        "register_rate_limit_window_seconds",
        "verify_email_rate_limit",
        "verify_email_rate_limit_window_seconds",
        "resend_verification_rate_limit",
        "resend_verification_rate_limit_window_seconds",
        "forgot_password_rate_limit",
        "forgot_password_rate_limit_window_seconds",
        "refresh_rate_limit",
        "refresh_rate_limit_window_seconds",
        "password_reset_ttl_minutes",
        "verification_code_ttl_minutes",
        "verification_max_attempts",
    )
    @classmethod
    def _require_positive(cls, value: int, info) -> int:
        if value <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return value

    @field_validator("redis_url", "jwt_private_key", "jwt_public_key", "smtp_host")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @model_validator(mode="after")
    def _login_limit_above_lockout(self):
        if self.login_rate_limit <= self.lockout_threshold:
            raise ValueError(
                "login_rate_limit must exceed lockout_threshold "
                f"({self.login_rate_limit} <= {self.lockout_threshold})"
            )
        return self

    def rate_limit(self, scope: str) -> RateLimitSetting:
        """Return the configured limit/window for a named scope."""
        limit = getattr(self, f"{scope}_rate_limit", None)
        window = getattr(self, f"{scope}_rate_limit_window_seconds", None)
        if limit is None or window is None:
            logger.warning("rate_limit_scope_unknown", scope=scope)
            raise KeyError(scope)
        return RateLimitSetting(limit=limit, window_seconds=window)


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
