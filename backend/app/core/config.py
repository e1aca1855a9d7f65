"""Application Configuration using Pydantic Settings."""

import os
from decimal import Decimal
from pathlib import Path
from typing import List
from urllib.parse import urlparse

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_env_file() -> str:
    """
    Determine which .env file to load based on APP_ENV.

    Returns:
        Path to the .env file to load
    """
    app_env = os.getenv("APP_ENV", "development")
    base_dir = Path(__file__).parent.parent.parent  # backend/

    if app_env == "test":
        env_file = base_dir / ".env.test"
        if env_file.exists():
            return str(env_file)

    if app_env == "production":
        env_file = base_dir / ".env.production"
        if env_file.exists():
            return str(env_file)

    # Default to .env
    return str(base_dir / ".env")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=get_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "Planora"
    APP_ENV: str = "development"
    DEBUG: bool = True
    SECRET_KEY: str
    API_V1_PREFIX: str = "/api/v1"

    # Security
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # Database
    # Note: Using str instead of PostgresDsn to support SQLite for testing
    DATABASE_URL: str

    # Redis (Celery broker, rate limiting, notification pub/sub)
    REDIS_URL: str = "redis://localhost:6379/0"

    # CORS
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]
    CORS_ALLOW_CREDENTIALS: bool = True
    CORS_MAX_AGE: int = 600  # Preflight cache duration in seconds

    # Billing provider (PayPal REST API)
    PAYPAL_CLIENT_ID: str = ""
    PAYPAL_CLIENT_SECRET: str = ""
    PAYPAL_MODE: str = "sandbox"  # sandbox, live
    PAYPAL_WEBHOOK_ID: str = ""  # Empty = signature verification skipped (with a warning)
    PAYPAL_PLAN_MONTHLY: str = "P-771756107T669132ENFBLY7Y"
    PAYPAL_PLAN_ANNUAL: str = "P-9EG97204XL0481249NFBMDTQ"
    WEBHOOK_REJECT_UNVERIFIED: bool = False

    # Plans
    PLAN_PRICE_MONTHLY: Decimal = Decimal("12.90")
    PLAN_PRICE_ANNUAL: Decimal = Decimal("118.80")
    BILLING_CURRENCY: str = "USD"

    # Trials, grants and refunds
    TRIAL_FALLBACK_DAYS: int = 5  # Assumed trial length when the provider never reported one
    NEW_SUBSCRIPTION_TRIAL_DAYS: int = 5
    FREE_ACCESS_DEFAULT_DAYS: int = 30
    REFUND_WINDOW_DAYS: int = 180

    # Provider calls
    BILLING_HTTP_TIMEOUT_SECONDS: float = 15.0
    BILLING_REMOTE_CALL_TIMEOUT_SECONDS: float = 20.0  # Upper bound per remote call inside batch jobs
    BILLING_RETRY_ATTEMPTS: int = 3
    BILLING_RETRY_BACKOFF_SECONDS: float = 0.5
    BILLING_TOKEN_REFRESH_MARGIN_SECONDS: int = 300

    # Webhook processing
    WEBHOOK_PROCESSING_LEASE_SECONDS: int = 300
    WEBHOOK_MAX_ATTEMPTS: int = 5

    # Scheduled jobs
    TRIAL_SWEEP_HOUR: int = 4  # UTC
    WEBHOOK_RETRY_INTERVAL_MINUTES: int = 15
    PAYMENT_SYNC_HOUR: int = 5  # UTC

    # Error Tracking (Sentry)
    SENTRY_DSN: str = ""  # Sentry Data Source Name (URL from sentry.io dashboard)
    SENTRY_ENVIRONMENT: str = "development"  # development, staging, production
    SENTRY_TRACES_SAMPLE_RATE: float = 0.1  # 10% of transactions for performance monitoring

    # Rate Limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_STORAGE_URI: str = ""  # Empty = use REDIS_URL
    RATE_LIMIT_COUPON_REDEEM: str = "5/minute"  # Coupon code guessing protection
    RATE_LIMIT_ADMIN: str = "50/minute"  # Admin endpoints
    RATE_LIMIT_API_DEFAULT: str = "100/minute"  # Default for all API endpoints

    @field_validator("PAYPAL_MODE")
    @classmethod
    def validate_paypal_mode(cls, v: str) -> str:
        """Only sandbox and live environments exist on the provider side."""
        mode = v.strip().lower()
        if mode not in ("sandbox", "live"):
            raise ValueError(f"PAYPAL_MODE must be 'sandbox' or 'live', got '{v}'")
        return mode

    @field_validator("ALLOWED_ORIGINS", mode="before")
    @classmethod
    def parse_allowed_origins(cls, v: str | List[str]) -> List[str]:
        """Parse allowed origins from string or list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    @field_validator("ALLOWED_ORIGINS", mode="after")
    @classmethod
    def validate_cors_origins(cls, origins: List[str], info) -> List[str]:
        """
        Validate CORS origins for security.

        Security rules:
        1. No wildcards ("*", "http://*", etc.)
        2. Valid URL format (scheme://host[:port])
        3. In production: HTTPS only (except localhost/127.0.0.1)

        Args:
            origins: List of origin URLs to validate
            info: ValidationInfo containing other field values

        Returns:
            Validated list of origins

        Raises:
            ValueError: If any origin violates security rules
        """
        if not origins:
            raise ValueError("ALLOWED_ORIGINS cannot be empty. At least one origin must be specified.")

        app_env = info.data.get("APP_ENV", "development")
        is_production = app_env == "production"

        validated_origins = []

        for origin in origins:
            origin = origin.strip()

            if not origin:
                raise ValueError("CORS origin cannot be empty or whitespace-only")

            if "*" in origin:
                raise ValueError(
                    f"CORS origin '{origin}' contains wildcard '*'. "
                    "Specify exact domains instead."
                )

            parsed = urlparse(origin)
            if not parsed.scheme or not parsed.netloc:
                raise ValueError(
                    f"CORS origin '{origin}' must include scheme and hostname. "
                    f"Example: https://app.planora.io"
                )

            if is_production:
                is_localhost = parsed.netloc.startswith("localhost") or parsed.netloc.startswith("127.0.0.1")

                if parsed.scheme != "https" and not is_localhost:
                    raise ValueError(
                        f"CORS origin '{origin}' must use HTTPS in production. "
                        f"Change to: https://{parsed.netloc}"
                    )

            validated_origins.append(origin)

        return validated_origins

    @property
    def paypal_api_base_url(self) -> str:
        """REST API base URL for the configured provider environment."""
        if self.PAYPAL_MODE == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"

    @property
    def paypal_web_base_url(self) -> str:
        """Dashboard base URL used to build transaction/subscription links."""
        if self.PAYPAL_MODE == "live":
            return "https://www.paypal.com"
        return "https://www.sandbox.paypal.com"


# Create global settings instance
settings = Settings()  # type: ignore
