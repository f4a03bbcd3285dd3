"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
This is the single source of truth for the billing service configuration.
"""

from __future__ import annotations

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
    For nested settings, use double underscore: GATEWAY__API_KEY=...
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

    app_name: str = Field("invow-billing", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    debug: bool = Field(False, description="Debug mode")
    testing: bool = Field(False, description="Testing mode")

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str | None = Field(None, description="Full database URL")
        host: str = Field("localhost", description="Database host")
        port: int = Field(5432, description="Database port")
        database: str = Field("invow", description="Database name")
        username: str = Field("invow", description="Database username")
        password: str = Field("", description="Database password")

        # Connection pool
        pool_size: int = Field(10, description="Connection pool size")
        max_overflow: int = Field(20, description="Max overflow connections")
        pool_timeout: int = Field(30, description="Pool timeout in seconds")
        pool_recycle: int = Field(3600, description="Recycle connections after seconds")
        pool_pre_ping: bool = Field(True, description="Test connections before use")

        echo: bool = Field(False, description="Echo SQL statements")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Logging configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or text)")
        enable_callsite_info: bool = Field(
            False, description="Add module/function/line to every log entry"
        )

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Billing Configuration
    # ============================================================

    class BillingSettings(BaseModel):
        """Subscription tiers and quota configuration."""

        free_invoice_limit: int = Field(10, ge=0, description="Invoices per cycle on free tier")
        premium_invoice_limit: int = Field(
            200, ge=0, description="Invoices granted per premium purchase"
        )
        premium_price: int = Field(
            15000, gt=0, description="Premium price in minor currency units"
        )
        currency: str = Field("IDR", description="Billing currency")
        subscription_period_days: int = Field(
            30, gt=0, description="Length of a purchased subscription period"
        )
        expiring_soon_days: int = Field(
            7, ge=0, description="Window for flagging subscriptions as expiring soon"
        )

    billing: BillingSettings = BillingSettings()  # type: ignore[call-arg]

    # ============================================================
    # Payment Gateway
    # ============================================================

    class GatewaySettings(BaseModel):
        """Payment gateway configuration."""

        api_url: str = Field("https://api.mayar.id", description="Gateway API base URL")
        api_key: str | None = Field(None, description="Gateway API key")
        webhook_secret: str | None = Field(None, description="Shared webhook signing secret")
        redirect_url: str = Field(
            "http://localhost:3000/dashboard?payment=success",
            description="Where the gateway sends the customer after checkout",
        )
        timeout_seconds: float = Field(30.0, gt=0, description="HTTP timeout")
        max_retries: int = Field(3, ge=1, description="Attempts for retryable gateway calls")
        retry_base_delay: float = Field(1.0, ge=0, description="Initial backoff in seconds")
        retry_max_delay: float = Field(10.0, ge=0, description="Backoff ceiling in seconds")
        transactions_page_size: int = Field(50, gt=0, description="Page size for listings")

        # Transaction lookup cache
        cache_enabled: bool = Field(True, description="Cache gateway transaction lookups")
        cache_ttl_seconds: int = Field(30, gt=0, description="Lookup cache TTL")
        cache_max_entries: int = Field(1000, gt=0, description="Lookup cache size")

    gateway: GatewaySettings = GatewaySettings()  # type: ignore[call-arg]

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
