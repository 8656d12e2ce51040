"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_publishable_key: str = Field(..., description="Stripe publishable key (pk_test_...)")
    stripe_webhook_secret: str = Field(..., description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2024-06-20", description="Stripe API version")
    stripe_connect_refresh_url: str = Field(
        default="http://localhost:3000/seller/onboarding/refresh",
        description="URL Stripe sends sellers to when an onboarding link expires",
    )
    stripe_connect_return_url: str = Field(
        default="http://localhost:3000/seller/onboarding/complete",
        description="URL Stripe sends sellers to after onboarding",
    )
    default_seller_country: str = Field(default="FR", description="Country for new connected accounts")

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL (async driver)")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration (optional read-through cache for idempotency outcomes)
    redis_url: Optional[str] = Field(default=None, description="Redis connection URL")
    idempotency_cache_ttl: int = Field(
        default=86400, description="Idempotency cache TTL (seconds)"
    )

    # Application Configuration
    app_name: str = Field(default="marketplace-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Gateway retry policy
    gateway_retry_max_attempts: int = Field(default=4, description="Max attempts per gateway call")
    gateway_retry_base_delay: float = Field(
        default=0.5, description="Base delay for retry backoff (seconds)"
    )
    gateway_retry_max_delay: float = Field(default=8.0, description="Backoff cap (seconds)")
    gateway_retry_jitter: float = Field(default=0.5, description="Max random jitter (seconds)")
    circuit_breaker_failure_threshold: int = Field(default=5, description="Failures before opening")
    circuit_breaker_timeout: int = Field(default=60, description="Seconds before half-open")

    # Webhooks
    webhook_tolerance_seconds: int = Field(
        default=300, description="Max clock distance of a webhook signature timestamp"
    )
    webhook_conflict_retries: int = Field(
        default=3, description="Re-read attempts when an event hits a version conflict"
    )

    # Idempotency
    idempotency_reservation_lease_seconds: int = Field(
        default=120, description="Age after which an unfinished reservation can be taken over"
    )
    idempotency_retention_seconds: int = Field(
        default=30 * 86400,
        description="Retention of idempotency records (longer than the processor redelivery window)",
    )

    # Timeouts and reconciliation
    payment_timeout_seconds: int = Field(
        default=3600, description="Wait for a terminal payment webhook before reconciling"
    )
    refund_timeout_seconds: int = Field(
        default=3600, description="Wait for a terminal refund webhook before reconciling"
    )
    checkout_expiry_seconds: int = Field(
        default=86400, description="Unpaid checkouts older than this are cancelled"
    )
    capability_freshness_seconds: int = Field(
        default=900, description="Max age of stored seller capability flags"
    )
    reconciliation_interval_seconds: int = Field(
        default=300, description="Interval between reconciliation sweeps"
    )
    reconciliation_hour: int = Field(default=2, description="Hour of the daily totals reconciliation")
    sweep_batch_size: int = Field(
        default=100, ge=1, description="Rows fetched per page by reconciliation sweeps"
    )

    # Payouts
    platform_fee_bps: int = Field(
        default=0, ge=0, le=10000, description="Platform fee withheld from seller transfers (bps)"
    )

    # Collaborators
    catalog_url: Optional[str] = Field(
        default=None, description="Catalog service base URL used for checkout price checks"
    )

    # Fulfillment signal
    fulfillment_webhook_url: Optional[str] = Field(
        default=None, description="Delivery subsystem endpoint notified when an order is paid"
    )
    notification_webhook_url: Optional[str] = Field(
        default=None, description="Notification service endpoint for buyer and seller messages"
    )

    # Outbox
    outbox_batch_size: int = Field(default=100, description="Outbox events per batch")
    outbox_poll_interval_seconds: float = Field(default=1.0, description="Outbox polling interval")

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

    @field_validator("default_seller_country")
    @classmethod
    def validate_country(cls, v: str) -> str:
        if len(v) != 2:
            raise ValueError("Country must be a 2-letter ISO code")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
