"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the application.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    # DATABASE_URL wins when set (tests use in-memory SQLite).
    DATABASE_URL: Optional[str] = Field(default=None)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="studio")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour
    STORE_TIMEOUT_S: int = Field(default=3)

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")

    # JWT Authentication - REQUIRED for token signing
    # Must be set via environment variable, never use default in production
    SECRET_KEY: str = Field(
        default=...,  # Required - no default
        description="JWT signing key. Must be cryptographically secure (32+ chars). "
                    "Generate with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
    )
    ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(default=60, ge=1)
    TOKEN_CLOCK_SKEW_S: int = Field(default=30, ge=0)
    EMAIL_OTP_EXPIRE_MINUTES: int = Field(default=10, ge=1)
    PASSWORD_RESET_EXPIRE_MINUTES: int = Field(default=30, ge=1)

    # Password hashing work factor (bcrypt log rounds, 4..31)
    BCRYPT_ROUNDS: int = Field(default=12, ge=4, le=31)

    # Password policy overrides
    PASSWORD_MIN_LENGTH: int = Field(default=8, ge=8, le=72)
    PASSWORD_REQUIRE_UPPER: bool = Field(default=True)
    PASSWORD_REQUIRE_LOWER: bool = Field(default=True)
    PASSWORD_REQUIRE_DIGIT: bool = Field(default=True)
    PASSWORD_REQUIRE_SPECIAL: bool = Field(default=True)

    # Account lockout
    LOCKOUT_THRESHOLD: int = Field(default=5, ge=1)
    LOCKOUT_WINDOW_MINUTES: int = Field(default=15, ge=1)

    # API Configuration
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000)
    API_RELOAD: bool = Field(default=False)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text
    LOG_BUFFER_SIZE: int = Field(default=500, ge=10)

    # Rate Limiting (per-endpoint token buckets)
    RATE_LIMIT_ENABLED: bool = Field(default=True)
    RATE_LIMIT_BACKEND: str = Field(default="redis")  # redis or memory
    RATE_LIMIT_LOGIN_CAPACITY: int = Field(default=10)
    RATE_LIMIT_LOGIN_REFILL_PER_S: float = Field(default=1 / 60)
    RATE_LIMIT_VERIFY_EMAIL_CAPACITY: int = Field(default=6)
    RATE_LIMIT_VERIFY_EMAIL_REFILL_PER_S: float = Field(default=1 / 60)
    RATE_LIMIT_RESEND_VERIFICATION_CAPACITY: int = Field(default=3)
    RATE_LIMIT_RESEND_VERIFICATION_REFILL_PER_S: float = Field(default=1 / 600)
    RATE_LIMIT_FORGOT_PASSWORD_CAPACITY: int = Field(default=3)
    RATE_LIMIT_FORGOT_PASSWORD_REFILL_PER_S: float = Field(default=1 / 3600)
    RATE_LIMIT_RESET_PASSWORD_CAPACITY: int = Field(default=10)
    RATE_LIMIT_RESET_PASSWORD_REFILL_PER_S: float = Field(default=1 / 3600)
    RATE_LIMIT_SIGNUP_CAPACITY: int = Field(default=20)
    RATE_LIMIT_SIGNUP_REFILL_PER_S: float = Field(default=1 / 60)
    RATE_LIMIT_PAYMENT_WEBHOOK_CAPACITY: int = Field(default=120)
    RATE_LIMIT_PAYMENT_WEBHOOK_REFILL_PER_S: float = Field(default=2.0)

    # Outbound call deadlines and retry policy
    PAYMENT_TIMEOUT_S: int = Field(default=5)
    MAIL_TIMEOUT_S: int = Field(default=10)
    UPSTREAM_RETRY_ATTEMPTS: int = Field(default=2, ge=0, le=5)
    UPSTREAM_RETRY_BASE_S: float = Field(default=0.2, ge=0)

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # Email Configuration
    EMAIL_ENABLED: bool = Field(default=False)
    SMTP_SERVER: str = Field(default="localhost")
    SMTP_PORT: int = Field(default=587)
    SMTP_USERNAME: Optional[str] = Field(default=None)
    SMTP_PASSWORD: Optional[str] = Field(default=None)
    FROM_EMAIL: str = Field(default="noreply@jefitness.com")
    FROM_NAME: str = Field(default="JE Fitness")

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # CORS - comma-separated list of allowed origins for production
    CORS_ORIGINS: Optional[str] = Field(default=None)

    # Web app base URL (reset links, checkout redirects).
    WEB_APP_BASE_URL: str = Field(default="http://localhost:3000")

    # Stripe (hosted checkout + webhooks)
    STRIPE_SECRET_KEY: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_SECRET: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_TOLERANCE_S: int = Field(default=300)
    STRIPE_PRICE_1_MONTH: Optional[str] = Field(default=None)
    STRIPE_PRICE_3_MONTH: Optional[str] = Field(default=None)
    STRIPE_PRICE_6_MONTH: Optional[str] = Field(default=None)
    STRIPE_PRICE_12_MONTH: Optional[str] = Field(default=None)
    STRIPE_CHECKOUT_SUCCESS_URL: Optional[str] = Field(default=None)
    STRIPE_CHECKOUT_CANCEL_URL: Optional[str] = Field(default=None)
    PROCESSED_EVENT_TTL_DAYS: int = Field(default=30, ge=1)
    PAST_DUE_GRACE_DAYS: int = Field(default=30, ge=1)

    # Sentry Error Tracking
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.1)  # 10% of transactions


# Global settings instance
settings = Settings()
