"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
This is the single source of truth for all billing engine configuration.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Main application settings.

    All settings can be overridden via environment variables.
    For nested settings, use double underscore: BILLING__INVOICE_DUE_DAYS=14
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Core Application Settings
    # ============================================================

    app_name: str = Field("cadence-billing", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    debug: bool = Field(False, description="Debug mode")
    testing: bool = Field(False, description="Testing mode")

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str | None = Field(None, description="Full async SQLAlchemy database URL")
        host: str = Field("localhost", description="Database host")
        port: int = Field(5432, description="Database port")
        database: str = Field("cadence", description="Database name")
        username: str = Field("cadence", description="Database username")
        password: str = Field("", description="Database password")

        # Connection pool
        pool_size: int = Field(10, description="Connection pool size")
        max_overflow: int = Field(20, description="Max overflow connections")
        pool_timeout: int = Field(30, description="Pool timeout in seconds")
        pool_recycle: int = Field(3600, description="Recycle connections after seconds")
        pool_pre_ping: bool = Field(True, description="Test connections before use")

        # Options
        echo: bool = Field(False, description="Echo SQL statements")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Celery (periodic renewal trigger)
    # ============================================================

    class CelerySettings(BaseModel):
        """Celery configuration."""

        broker_url: str = Field("redis://localhost:6379/0", description="Celery broker URL")
        result_backend: str = Field(
            "redis://localhost:6379/1", description="Celery result backend URL"
        )
        renewal_interval_seconds: float = Field(3600.0, description="Renewal pass interval")
        trial_conversion_interval_seconds: float = Field(
            3600.0, description="Trial conversion pass interval"
        )
        payment_retry_interval_seconds: float = Field(
            21600.0, description="Payment retry pass interval"
        )

    celery: CelerySettings = CelerySettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Logging configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or text)")
        enable_correlation_ids: bool = Field(True, description="Add thread name to log records")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Billing Configuration
    # ============================================================

    class BillingSettings(BaseModel):
        """Billing engine configuration."""

        default_currency: str = Field("USD", description="Default currency for plans")

        # Invoicing
        invoice_due_days: int = Field(7, description="Payment terms for generated invoices")
        invoice_number_prefix: str = Field("INV", description="Invoice number prefix")
        uncollectible_after_days: int = Field(
            180, description="Days past due before an open invoice becomes uncollectible"
        )

        # Proration
        proration_grace_hours: int = Field(
            24, description="Plan changes this close to period start are not prorated (0 disables)"
        )

        # Renewal orchestration
        renewal_lookahead_hours: int = Field(
            24, description="Renew subscriptions whose period ends within this window"
        )
        renewal_max_attempts: int = Field(3, description="Attempts per subscription on conflict")
        renewal_retry_delay_seconds: float = Field(
            0.0, description="Deterministic delay between conflict retries in batch passes"
        )
        renewal_batch_size: int = Field(500, description="Maximum subscriptions per pass")

        # Collaborators
        collaborator_timeout_seconds: float = Field(
            10.0, description="Deadline for tax/coupon collaborator calls"
        )
        fallback_country_code: str = Field(
            "US", description="Tax jurisdiction used when the user's address is unknown"
        )
        fallback_state_code: str | None = Field("CA", description="Fallback tax state/region")
        tax_rates: dict[str, Decimal] = Field(
            default_factory=dict,
            description="Tax rate percentages keyed by 'CC' or 'CC-ST' jurisdiction",
        )

        # Payments
        payment_max_retries: int = Field(3, description="Maximum payment retry attempts")
        payment_retry_schedule_days: list[int] = Field(
            default_factory=lambda: [2, 4, 7],
            description="Days to wait before each payment retry",
        )

        @field_validator("default_currency", "fallback_country_code")
        @classmethod
        def upper_code(cls, v: str) -> str:
            """Normalize ISO codes."""
            return v.upper()

    billing: BillingSettings = BillingSettings()  # type: ignore[call-arg]

    # ============================================================
    # Validation & Helpers
    # ============================================================

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: Any) -> Any:
        """Validate environment."""
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.testing or self.environment == Environment.TEST


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None


# Convenience export
settings = get_settings()
