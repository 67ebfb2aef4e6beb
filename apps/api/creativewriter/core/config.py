"""
Central configuration & settings for CreativeWriter API
Loads from environment variables with strict validation (pydantic-settings v2+).
Secrets are SecretStr and only unwrapped at the point of use.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    CreativeWriter API Settings
    All values loaded from environment variables (.env or platform secrets).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore unknown env vars
    )

    # ────────────────────────────────────────────────
    # Core App
    # ────────────────────────────────────────────────
    ENVIRONMENT: str = Field(
        "development",
        description="Runtime environment (development, staging, production, test)"
    )
    APP_VERSION: str = "1.0.0"
    LOG_LEVEL: str = Field("INFO", pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")

    # ────────────────────────────────────────────────
    # Database (PostgreSQL + asyncpg, SQLite + aiosqlite for local/tests)
    # ────────────────────────────────────────────────
    DATABASE_URL: str = Field(
        "sqlite+aiosqlite:///./creativewriter.db",
        description="Async SQLAlchemy connection string"
    )
    DB_CREATE_TABLES: bool = Field(False, description="Create missing tables on startup")
    SEED_DEFAULT_PLANS: bool = Field(False, description="Insert the default plan catalog on startup")

    @field_validator("DATABASE_URL")
    @classmethod
    def validate_db_url(cls, v: str) -> str:
        if not v.startswith(("postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must use an async driver (postgresql+asyncpg:// or sqlite+aiosqlite://)")
        return v

    # ────────────────────────────────────────────────
    # Payment Gateway (Razorpay-compatible REST API)
    # ────────────────────────────────────────────────
    PAYMENT_GATEWAY_KEY_ID: str = Field("", description="Public key id, returned to clients for checkout")
    PAYMENT_GATEWAY_KEY_SECRET: SecretStr = Field(SecretStr(""), description="Used for API auth and payment signatures")
    PAYMENT_GATEWAY_WEBHOOK_SECRET: SecretStr = Field(SecretStr(""), description="Used for webhook signatures")
    PAYMENT_GATEWAY_BASE_URL: str = "https://api.razorpay.com/v1"
    PAYMENT_GATEWAY_TIMEOUT: float = Field(30.0, gt=0)
    DEFAULT_CURRENCY: str = Field("INR", min_length=3, max_length=3)

    # ────────────────────────────────────────────────
    # JWT (tokens are issued elsewhere; we only verify)
    # ────────────────────────────────────────────────
    JWT_SECRET_KEY: SecretStr = Field(SecretStr("change-me-in-production-please-32chars"))
    JWT_ALGORITHM: str = "HS256"

    @field_validator("JWT_SECRET_KEY")
    @classmethod
    def validate_secrets(cls, v: SecretStr) -> SecretStr:
        if len(v.get_secret_value()) < 32:
            raise ValueError("Secrets must be at least 32 characters long")
        return v

    # ────────────────────────────────────────────────
    # Observability
    # ────────────────────────────────────────────────
    SENTRY_DSN: Optional[str] = None
    SENTRY_TRACES_SAMPLE_RATE: float = Field(0.1, ge=0.0, le=1.0)

    # ────────────────────────────────────────────────
    # Rate limiting
    # ────────────────────────────────────────────────
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_DEFAULT: str = "100/minute"
    RATE_LIMIT_STORAGE_URI: str = "memory://"
    RATE_LIMIT_PAYMENTS: str = "10/minute"

    # ────────────────────────────────────────────────
    # CORS
    # ────────────────────────────────────────────────
    CORS_ORIGINS: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    # ────────────────────────────────────────────────
    # Validation & Computed Properties
    # ────────────────────────────────────────────────
    @field_validator("ENVIRONMENT", mode="before")
    @classmethod
    def validate_env(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in ["development", "staging", "production", "test"]:
            raise ValueError("Invalid ENVIRONMENT value")
        return v

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_dev(self) -> bool:
        return self.ENVIRONMENT == "development"


# ────────────────────────────────────────────────
# Cached accessor (no import-time instance)
# ────────────────────────────────────────────────
@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
