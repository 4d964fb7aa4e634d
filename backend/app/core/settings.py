"""
Application settings with validation using pydantic-settings.
Validates all required environment variables at startup.
"""
import socket
from decimal import Decimal
from urllib.parse import quote_plus
from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _resolve_db_host(host: str) -> str:
    """Resolve DB host to IP so asyncpg avoids getaddrinfo in asyncio context (e.g. in Docker)."""
    if not host or host in ("localhost", "127.0.0.1"):
        return host
    try:
        return socket.gethostbyname(host)
    except socket.gaierror:
        return host


class Settings(BaseSettings):
    """Application settings with validation."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    DB_USER: str = Field(..., description="PostgreSQL username")
    DB_PASSWORD: str = Field(..., description="PostgreSQL password")
    DB_NAME: str = Field(..., description="PostgreSQL database name")
    DB_HOST: str = Field(default="localhost", description="PostgreSQL host")
    DB_PORT: str = Field(default="5432", description="PostgreSQL port")

    # Database pool configuration
    DB_POOL_SIZE: int = Field(default=20, description="Database connection pool size")
    DB_MAX_OVERFLOW: int = Field(default=40, description="Database max overflow connections")
    DB_POOL_RECYCLE: int = Field(default=3600, description="Database connection recycle time (seconds)")

    # Redis configuration (run-lock for the daily accrual job)
    REDIS_HOST: str = Field(default="localhost", description="Redis host")
    REDIS_PORT: int = Field(default=6379, description="Redis port")
    REDIS_DB: int = Field(default=0, description="Redis database number")

    # Security configuration
    ADMIN_SECRET: Optional[str] = Field(default=None, description="Admin secret token (required in production)")

    # CORS configuration
    ALLOWED_ORIGINS: str = Field(default="", description="Comma-separated list of allowed CORS origins")

    # Environment
    ENVIRONMENT: str = Field(default="production", description="Environment: development or production")
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    # Referral program defaults (applied when a purchase omits its own terms)
    REFERRAL_DEFAULT_DAILY_AMOUNT: Decimal = Field(default=Decimal("100"), description="Default daily installment amount")
    REFERRAL_DEFAULT_DAYS: int = Field(default=30, description="Default number of installment days")
    REFERRAL_DEFAULT_COMMISSION_PERCENT: Decimal = Field(default=Decimal("30"), description="Default commission percentage")
    REFERRAL_LIMIT: int = Field(default=50, description="How many users one referrer may invite")

    # Daily accrual job
    ACCRUAL_SCHEDULER_ENABLED: bool = Field(default=True, description="Start the in-process daily scheduler")
    ACCRUAL_RUN_HOUR: int = Field(default=0, description="UTC hour at which the daily accrual runs")
    ACCRUAL_LOCK_TIMEOUT: int = Field(default=600, description="Run-lock expiry in seconds")
    ACCRUAL_USE_REDIS_LOCK: bool = Field(default=True, description="Use Redis for the run-lock (process-local lock otherwise)")

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        if v not in ("development", "production"):
            raise ValueError("ENVIRONMENT must be 'development' or 'production'")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @field_validator("ACCRUAL_RUN_HOUR")
    @classmethod
    def validate_run_hour(cls, v: int) -> int:
        if not 0 <= v <= 23:
            raise ValueError("ACCRUAL_RUN_HOUR must be between 0 and 23")
        return v

    @field_validator("REFERRAL_DEFAULT_DAYS")
    @classmethod
    def validate_default_days(cls, v: int) -> int:
        if v < 1:
            raise ValueError("REFERRAL_DEFAULT_DAYS must be positive")
        return v

    def validate_production_settings(self) -> list[str]:
        """
        Validate that all required settings are present in production.
        Returns list of missing settings.
        """
        errors = []

        if self.ENVIRONMENT == "production":
            if not self.ADMIN_SECRET:
                errors.append("ADMIN_SECRET is required in production")
            if not self.ALLOWED_ORIGINS:
                errors.append("ALLOWED_ORIGINS is required in production")

        return errors

    @property
    def db_url(self) -> str:
        """Get database URL. Resolve host to IP so connections work in Docker/async context."""
        host = _resolve_db_host(self.DB_HOST)
        password = quote_plus(self.DB_PASSWORD)
        return f"postgresql+asyncpg://{self.DB_USER}:{password}@{host}:{self.DB_PORT}/{self.DB_NAME}"

    @property
    def sync_db_url(self) -> str:
        """Synchronous URL for Alembic (psycopg2)."""
        password = quote_plus(self.DB_PASSWORD)
        return f"postgresql+psycopg2://{self.DB_USER}:{password}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.ENVIRONMENT == "production"

    @property
    def allowed_origins_list(self) -> list[str]:
        """Get list of allowed CORS origins."""
        if not self.ALLOWED_ORIGINS:
            return []
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get application settings (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()
        errors = _settings.validate_production_settings()
        if errors:
            error_msg = "Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
            raise ValueError(error_msg)
    return _settings
