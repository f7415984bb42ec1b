"""Application configuration using Pydantic Settings."""

import json
import os
import secrets
import warnings
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from entitlement_engine.exceptions import DefaultSecretKeyError, ShortSecretKeyError

# Minimum length for JWT secret key in production
MIN_JWT_SECRET_LENGTH = 32

STORE_BACKENDS = frozenset({"sql", "memory"})

# SECURITY: Generate a random secret for development if not explicitly set
_ENV_JWT_SECRET = os.environ.get("JWT_SECRET_KEY")
if _ENV_JWT_SECRET:
    _DEV_JWT_SECRET = _ENV_JWT_SECRET
else:
    _DEV_JWT_SECRET = secrets.token_urlsafe(48)
    if os.environ.get("ENVIRONMENT", "development") != "test":
        warnings.warn(
            "JWT_SECRET_KEY not set - using auto-generated secret. "
            "Tokens issued by the identity provider will not validate.",
            stacklevel=2,
        )


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    SERVICE_NAME: str = "entitlement-engine"
    VERSION: str = "0.1.0"
    ENVIRONMENT: str = "development"
    PORT: int = 3001
    LOG_LEVEL: str = "INFO"

    CORS_ORIGINS_RAW: str = Field(
        default='["http://localhost:3000"]',
        validation_alias="CORS_ORIGINS",
    )

    @property
    def CORS_ORIGINS(self) -> list[str]:  # noqa: N802 - matches env var name
        """Parse CORS origins from JSON array, comma-separated, or plain string."""
        v = self.CORS_ORIGINS_RAW.strip() if self.CORS_ORIGINS_RAW else ""
        if not v:
            return ["http://localhost:3000"]
        if v.startswith("["):
            try:
                parsed = json.loads(v)
                return [str(x) for x in parsed] if isinstance(parsed, list) else [v]
            except json.JSONDecodeError:
                pass
        if "," in v:
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return [v]

    # Entitlement store
    STORE_BACKEND: str = "sql"
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/entitlements"
    DB_POOL_SIZE: int = 10
    DB_POOL_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800
    DB_ECHO: bool = False

    # Redis (reconciliation lock, rate limit storage)
    REDIS_URL: str = "redis://localhost:6379"

    # Auth
    JWT_SECRET_KEY: str = _DEV_JWT_SECRET
    JWT_ALGORITHM: str = "HS256"

    @field_validator("JWT_SECRET_KEY")
    @classmethod
    def validate_jwt_secret(cls, v: str, _info: object) -> str:
        """Validate JWT secret meets security requirements in production."""
        if os.environ.get("ENVIRONMENT", "development") == "production":
            if not os.environ.get("JWT_SECRET_KEY"):
                raise DefaultSecretKeyError
            if len(v) < MIN_JWT_SECRET_LENGTH:
                raise ShortSecretKeyError
        return v

    # Stripe
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_API_TIMEOUT_SECONDS: float = 10.0

    # Sentry
    SENTRY_DSN: str | None = None
    SENTRY_TRACES_SAMPLE_RATE: float | None = None

    # ============== Quota Settings ==============
    FREE_TIER_ALLOWANCE: int = 3
    STORE_CONFLICT_RETRIES: int = 5
    WEBHOOK_TIMEOUT_SECONDS: float = 10.0
    QUOTA_TIMEOUT_SECONDS: float = 5.0
    USAGE_HISTORY_LIMIT: int = 50

    @field_validator(
        "FREE_TIER_ALLOWANCE",
        "STORE_CONFLICT_RETRIES",
        "WEBHOOK_TIMEOUT_SECONDS",
        "QUOTA_TIMEOUT_SECONDS",
        "USAGE_HISTORY_LIMIT",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Reject zero or negative limits."""
        if v <= 0:
            raise ValueError("must be greater than zero")  # noqa: TRY003
        return v

    @field_validator("STORE_BACKEND")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        """Only the known store backends can be selected."""
        backend = v.strip().lower()
        if backend not in STORE_BACKENDS:
            raise ValueError(f"STORE_BACKEND must be one of {sorted(STORE_BACKENDS)}")  # noqa: TRY003
        return backend

    # ============== Reconciliation Settings ==============
    RECONCILIATION_ENABLED: bool = True
    RECONCILIATION_INTERVAL_SECONDS: int = 3600
    RECONCILIATION_BATCH_SIZE: int = 100
    RECONCILIATION_LOCK_TIMEOUT_SECONDS: int = 900

    # Rate limits
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_DOWNLOADS: str = "30/minute"
    RATE_LIMIT_STANDARD: str = "100/minute"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
