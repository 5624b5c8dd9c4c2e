"""Application settings and logging configuration."""

from __future__ import annotations

import ipaddress
import logging
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any, Literal

import structlog
from pydantic import AnyHttpUrl, BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOG_CONTEXT: dict[str, str] = {"environment": "development", "service": "storefront-auth"}


class AppSettings(BaseModel):
    """Application identity and runtime settings."""

    environment: Literal["development", "staging", "production"]
    service: str = "storefront-auth"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class StoreSettings(BaseModel):
    """Backing store selection for sessions, pending logins, and rate limits."""

    backend: Literal["memory", "redis"] = "memory"


class DatabaseSettings(BaseModel):
    """Database connection settings for durable two-factor enrollments."""

    url: str | None = Field(default=None, description="Async SQLAlchemy URL using asyncpg driver.")

    @field_validator("url")
    @classmethod
    def validate_asyncpg_url(cls, value: str | None) -> str | None:
        """Ensure SQLAlchemy uses the asyncpg driver."""
        if value is not None and not value.startswith("postgresql+asyncpg://"):
            raise ValueError("database.url must start with 'postgresql+asyncpg://'.")
        return value


class RedisSettings(BaseModel):
    """Redis connection settings."""

    url: str | None = Field(default=None, description="Redis URL.")

    @field_validator("url")
    @classmethod
    def validate_redis_url(cls, value: str | None) -> str | None:
        """Ensure the Redis URL uses a supported scheme."""
        if value is not None and not value.startswith(("redis://", "rediss://")):
            raise ValueError("redis.url must start with 'redis://' or 'rediss://'.")
        return value


class TokenSettings(BaseModel):
    """Client token signing settings."""

    algorithm: Literal["RS256"] = "RS256"
    private_key_pem: SecretStr
    public_key_pem: SecretStr
    issuer: str = "storefront-auth"


class SessionSettings(BaseModel):
    """Session lifetime and per-user policy."""

    max_age_seconds: int = Field(default=30 * 24 * 3600, ge=60)
    max_idle_seconds: int = Field(default=7 * 24 * 3600, ge=60)
    max_sessions_per_user: int | None = Field(default=None, ge=1)


class TwoFactorSettings(BaseModel):
    """TOTP enrollment and challenge settings."""

    issuer_name: str = "Storefront"
    pending_login_ttl_seconds: int = Field(default=600, ge=30)
    backup_code_count: int = Field(default=10, ge=1, le=50)
    max_verify_attempts: int = Field(default=5, ge=1)
    verify_window_seconds: int = Field(default=600, ge=1)


class RateLimitSettings(BaseModel):
    """Rate limiting thresholds."""

    default_requests_per_minute: int = Field(default=120, ge=1)
    login_max_attempts: int = Field(default=5, ge=1)
    login_window_seconds: int = Field(default=900, ge=1)
    trusted_proxies: list[str] = Field(
        default_factory=list,
        description="CIDRs of reverse proxies allowed to set X-Forwarded-For.",
    )

    @field_validator("trusted_proxies")
    @classmethod
    def validate_trusted_proxies(cls, value: list[str]) -> list[str]:
        """Reject entries that are not IP networks."""
        for item in value:
            try:
                ipaddress.ip_network(item, strict=False)
            except ValueError as exc:
                raise ValueError(f"rate_limit.trusted_proxies entry {item!r} is not a CIDR.") from exc
        return value


class StaticIdentity(BaseModel):
    """Development-only identity record checked by the static verifier."""

    user_id: str
    email: str
    password_hash: SecretStr
    role: Literal["admin", "user"] = "user"


class IdentitySettings(BaseModel):
    """External primary-credential verifier settings."""

    provider: Literal["http", "static"] = "http"
    base_url: AnyHttpUrl | None = None
    verify_path: str = "/credentials/verify"
    timeout_seconds: float = Field(default=5.0, gt=0)
    static_identities: list[StaticIdentity] = Field(default_factory=list)


class CookieSettings(BaseModel):
    """Client token cookie attributes."""

    session_cookie_name: str = "session_token"
    challenge_cookie_name: str = "twofa_challenge"
    secure: bool = True
    same_site: Literal["lax", "strict"] = "lax"
    domain: str | None = None
    path: str = "/"


class LocationRange(BaseModel):
    """Offline CIDR-to-location mapping entry."""

    network: str
    city: str | None = None
    region: str | None = None
    country: str | None = None


class Settings(BaseSettings):
    """Root application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app: AppSettings
    tokens: TokenSettings
    store: StoreSettings = Field(default_factory=StoreSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    sessions: SessionSettings = Field(default_factory=SessionSettings)
    two_factor: TwoFactorSettings = Field(default_factory=TwoFactorSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    identity: IdentitySettings = Field(default_factory=IdentitySettings)
    cookies: CookieSettings = Field(default_factory=CookieSettings)
    location_ranges: list[LocationRange] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_backend_requirements(self) -> Settings:
        """Require connection URLs for the backends that need them."""
        if self.store.backend == "redis":
            if self.redis.url is None:
                raise ValueError("redis.url is required when store.backend is 'redis'.")
            if self.database.url is None:
                raise ValueError("database.url is required when store.backend is 'redis'.")
        if self.identity.provider == "http" and self.identity.base_url is None:
            raise ValueError("identity.base_url is required when identity.provider is 'http'.")
        return self


def _standard_log_fields(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Inject required structured logging fields."""
    context_vars = structlog.contextvars.get_contextvars()
    event_dict.setdefault("correlation_id", str(context_vars.get("correlation_id", "unknown")))
    event_dict.setdefault("environment", _LOG_CONTEXT["environment"])
    event_dict.setdefault("service", _LOG_CONTEXT["service"])
    event_dict.setdefault("timestamp", datetime.now(UTC).isoformat())
    return event_dict


def configure_structlog(settings: Settings) -> None:
    """Configure structlog for JSON output with required fields."""
    _LOG_CONTEXT["environment"] = settings.app.environment
    _LOG_CONTEXT["service"] = settings.app.service

    log_level = getattr(logging, settings.app.log_level, logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            _standard_log_fields,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@lru_cache
def get_settings() -> Settings:
    """Load and cache application settings from environment variables."""
    return Settings()
