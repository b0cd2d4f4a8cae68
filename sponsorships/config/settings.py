"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./sponsorships.db",
        description="SQLAlchemy async database URL",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Key-value store (tokens, other volatile state)
    redis_url: Optional[str] = Field(
        default=None, description="Redis URL; an in-memory TTL store is used when unset"
    )

    # Stripe Configuration
    stripe_secret_key: str = Field(default="", description="Stripe secret API key (sk_test_...)")
    stripe_webhook_secret: str = Field(default="", description="Stripe webhook signing secret")
    stripe_webhook_tolerance_seconds: int = Field(
        default=300, description="Maximum age of a signed Stripe webhook (seconds)"
    )
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")

    # PayPal Configuration
    paypal_client_id: str = Field(default="", description="PayPal REST client id")
    paypal_client_secret: str = Field(default="", description="PayPal REST client secret")
    paypal_webhook_id: str = Field(default="", description="PayPal webhook id used for verification")
    paypal_mode: str = Field(default="sandbox", description="PayPal environment (sandbox/live)")

    # Gateway calls
    gateway_timeout_seconds: float = Field(
        default=30.0, description="Timeout for create-order and capture calls (seconds)"
    )
    gateway_read_timeout_seconds: float = Field(
        default=15.0, description="Timeout for retrieve and verify calls (seconds)"
    )

    # Reservation protocol
    reservation_poll_attempts: int = Field(
        default=10, ge=1, description="Polls a caller makes while another caller holds the reservation"
    )
    reservation_poll_delay_seconds: float = Field(
        default=0.05, ge=0, description="Fixed delay between reservation polls (seconds)"
    )
    reservation_lease_seconds: int = Field(
        default=60, ge=1, description="Age after which an order-less reservation may be taken over"
    )

    # Donation rules
    donation_min_amount: Decimal = Field(default=Decimal("1.00"), description="Minimum amount")
    donation_max_amount: Decimal = Field(default=Decimal("10000.00"), description="Maximum amount")
    donation_message_max_length: int = Field(default=500, description="Donor message limit")
    order_description_prefix: str = Field(
        default="Sponsorship", description="Prefix for remote order descriptions"
    )
    frontend_url: str = Field(
        default="http://localhost:8000", description="Base URL for checkout redirects"
    )

    # Application Configuration
    app_name: str = Field(default="sponsorship-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate the Stripe secret key format when one is configured."""
        if v and not v.startswith(("sk_test_", "sk_live_", "rk_test_", "rk_live_")):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("paypal_mode")
    @classmethod
    def validate_paypal_mode(cls, v: str) -> str:
        """Validate PayPal environment."""
        mode = v.lower()
        if mode not in ("sandbox", "live"):
            raise ValueError("Invalid PayPal mode. Must be 'sandbox' or 'live'")
        return mode

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def paypal_api_base(self) -> str:
        if self.paypal_mode == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
