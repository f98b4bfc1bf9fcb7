from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from zentik_auth.logging import get_logger

logger = get_logger(__name__)

# Signing secrets used when nothing is configured. Tokens signed with these
# are forgeable by anyone who has read the source.
FALLBACK_JWT_SECRET = "fallback-secret"
FALLBACK_JWT_REFRESH_SECRET = "fallback-refresh-secret"


class CookieSameSite(str, Enum):
    """Accepted SameSite policies for the session cookies."""

    LAX = "lax"
    STRICT = "strict"
    NONE = "none"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication subsystem.

    Values are read from the process environment first, then from ``.env``.
    JWT secrets and TTLs may additionally be overridden at runtime through the
    store's system settings (see ``TokenIssuer``).
    """

    database_url: str | None = env_field(None, "DATABASE_URL")
    shared_fs_root: str = env_field("/tmp/zentik", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (no startup delays, no background sweep).",
    )
    public_backend_url: str = env_field("http://localhost:3000", "PUBLIC_BACKEND_URL")
    cors_allow_origins: str | None = env_field(
        None, "CORS_ALLOW_ORIGINS", description="Comma-separated origins allowed to send credentials"
    )

    # Token issuer
    jwt_secret: str = env_field(FALLBACK_JWT_SECRET, "JWT_SECRET")
    jwt_refresh_secret: str = env_field(FALLBACK_JWT_REFRESH_SECRET, "JWT_REFRESH_SECRET")
    jwt_access_token_expiration: str = env_field(
        "15m",
        "JWT_ACCESS_TOKEN_EXPIRATION",
        description="Access token lifetime, e.g. 15m, 1h (overridable via system settings)",
    )
    jwt_refresh_token_expiration: str = env_field(
        "7d",
        "JWT_REFRESH_TOKEN_EXPIRATION",
        description="Refresh token lifetime, e.g. 7d (overridable via system settings)",
    )

    # Opaque credentials
    access_token_prefix: str = env_field("zat_", "ACCESS_TOKEN_PREFIX")
    system_token_prefix: str = env_field("sat_", "SYSTEM_TOKEN_PREFIX")

    # Redirect handoff
    mobile_app_scheme: str = env_field("zentik", "MOBILE_APP_SCHEME")
    exchange_code_ttl_seconds: int = env_field(30, "EXCHANGE_CODE_TTL_SECONDS")
    exchange_code_cleanup_seconds: int = env_field(31, "EXCHANGE_CODE_CLEANUP_SECONDS")

    # Cookies
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")
    cookie_samesite: CookieSameSite = env_field(CookieSameSite.LAX, "COOKIE_SAMESITE")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    # Session sweep
    session_retention_days: int = env_field(14, "SESSION_RETENTION_DAYS")
    session_sweep_hour: int = env_field(3, "SESSION_SWEEP_HOUR")
    session_sweep_offset_minutes: int = env_field(15, "SESSION_SWEEP_OFFSET_MINUTES")
    session_sweep_jitter_seconds: int = env_field(300, "SESSION_SWEEP_JITTER_SECONDS")

    # Provider registry
    provider_startup_delay_seconds: float = env_field(2.0, "PROVIDER_STARTUP_DELAY_SECONDS")
    provider_startup_max_retries: int = env_field(3, "PROVIDER_STARTUP_MAX_RETRIES")
    provider_startup_backoff_seconds: float = env_field(1.0, "PROVIDER_STARTUP_BACKOFF_SECONDS")

    # Password reset / email confirmation
    email_enabled: bool = env_field(False, "EMAIL_ENABLED")
    password_reset_rate_limit_seconds: int = env_field(
        60, "PASSWORD_RESET_RATE_LIMIT_SECONDS"
    )
    code_validity_hours: int = env_field(24, "CODE_VALIDITY_HOURS")

    # Email collaborator
    smtp_host: str | None = env_field(None, "SMTP_HOST", description="SMTP server host")
    smtp_port: int = env_field(587, "SMTP_PORT", description="SMTP server port")
    smtp_user: str | None = env_field(None, "SMTP_USER", description="SMTP username")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD", description="SMTP password")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS", description="Use STARTTLS for SMTP")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Zentik", "EMAIL_FROM_NAME")

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

    @field_validator("cookie_samesite", mode="before")
    @classmethod
    def _validate_samesite(cls, value: Any) -> CookieSameSite:
        if isinstance(value, str):
            value = value.lower()
        return CookieSameSite(value)

    @field_validator("jwt_secret", "jwt_refresh_secret", mode="before")
    @classmethod
    def _default_blank_secret(cls, value: str | None, info) -> str:
        if value:
            return value
        if info.field_name == "jwt_refresh_secret":
            return FALLBACK_JWT_REFRESH_SECRET
        return FALLBACK_JWT_SECRET

    @field_validator("mobile_app_scheme")
    @classmethod
    def _strip_scheme_suffix(cls, value: str) -> str:
        # Accept "zentik", "zentik:" and "zentik://"
        return value.split(":", 1)[0] or "zentik"

    def allowed_origins(self) -> list[str]:
        if self.cors_allow_origins:
            return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]
        return ["http://localhost:3000", "http://localhost:5173", "http://127.0.0.1:3000"]

    def unsafe_defaults(self) -> list[str]:
        """Names of settings still carrying an insecure fallback value."""
        unsafe: list[str] = []
        if self.jwt_secret == FALLBACK_JWT_SECRET:
            unsafe.append("JWT_SECRET")
        if self.jwt_refresh_secret == FALLBACK_JWT_REFRESH_SECRET:
            unsafe.append("JWT_REFRESH_SECRET")
        if self.jwt_secret == self.jwt_refresh_secret:
            unsafe.append("JWT_REFRESH_SECRET_EQUALS_JWT_SECRET")
        return unsafe


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
