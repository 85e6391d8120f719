"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    payment_retry_max_attempts: int = Field(
        default=3, description="Max attempts for retryable Stripe reads"
    )
    payment_retry_base_delay: float = Field(
        default=0.5, description="Base delay for retry backoff (seconds)"
    )

    # Database Configuration
    database_url: str = Field(..., description="PostgreSQL connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=10, description="Max database connection overflow")
    database_pool_timeout: float = Field(
        default=5.0, description="Seconds to wait for a pooled connection"
    )
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Application Configuration
    app_name: str = Field(default="order-backend", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=3001, description="API port")
    frontend_url: str = Field(
        default="http://localhost:3000", description="Frontend origin allowed by CORS"
    )

    # Orders
    default_currency: str = Field(default="usd", description="Currency for new payment intents")
    tax_rate: Decimal = Field(
        default=Decimal("0"), ge=0, description="Flat tax rate applied to order subtotals"
    )
    order_id_prefix: str = Field(default="ORD", description="Prefix for stored order IDs")
    fallback_order_id_prefix: str = Field(
        default="KK", description="Prefix for order IDs issued when the store is unavailable"
    )
    order_id_max_attempts: int = Field(
        default=3, ge=1, description="Order ID generation attempts on collision"
    )
    estimated_delivery: str = Field(
        default="3-5 business days", description="Delivery estimate shown to customers"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that the Stripe secret key is a test or live key."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("order_id_prefix", "fallback_order_id_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        v = v.strip().upper()
        if not v.isalnum():
            raise ValueError("Order ID prefixes must be alphanumeric")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
