"""Application configuration and settings management.

This module defines the application settings loaded from environment
variables and provides helper functions for accessing cached settings
and email configuration.
"""

from datetime import timedelta
from functools import lru_cache
from typing import List

from fastapi_mail import ConnectionConfig
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables.

    Attributes:
        DATABASE_URL: Database connection string.
        SECRET_KEY: Secret key used for JWT signing.
        ALGORITHM: Algorithm used to encode JWT tokens.
        ACCESS_TOKEN_EXPIRE_MINUTES: Access token lifetime in minutes.
        REFRESH_TOKEN_EXPIRE_MINUTES: Refresh token lifetime in minutes.
        ALLOWED_ORIGINS: Allowed origins for CORS.
        REDIS_URL: Redis connection URL for rate limiting and caching.
        SMTP_FROM_EMAIL: Sender email address for outgoing emails.
        SMTP_USER: SMTP username.
        SMTP_PASSWORD: SMTP password.
        SMTP_PORT: SMTP server port.
        SMTP_HOST: SMTP server host.
        BASE_URL: Base URL of the application.
        LOG_LEVEL: Root log level.
        LOG_JSON: Render log lines as JSON instead of console output.
        EMERGENCY_MAX_CONTACTS: Maximum emergency contacts per owner.
        EMERGENCY_TOKEN_EXPIRY_DAYS: Lifetime of a contact verification token.
        EMERGENCY_LIMIT_COUNTS_PENDING: Count pending invitations toward
            the contact limit.
        NOTIFY_MAX_ATTEMPTS: Delivery attempts per outgoing message.
        NOTIFY_RETRY_DELAY_SECONDS: Pause between delivery attempts.
        RATE_LIMIT_PER_MINUTE: Requests per minute allowed on profile reads.
        TOKEN_RATE_LIMIT_PER_MINUTE: Requests per minute allowed on the public
            invitation accept and decline endpoints.
        CELERY_BROKER_URL: Broker used by the periodic task worker.
        CELERY_RESULT_BACKEND: Result backend of the task worker.
        CLEANUP_INTERVAL_MINUTES: How often expired invitations are swept.
    """

    DATABASE_URL: str = "sqlite:///./safetrack.db"
    SECRET_KEY: str = "dev-secret"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    REFRESH_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7
    ALLOWED_ORIGINS: List[str] = ["*"]
    REDIS_URL: str = "redis://redis:6379"
    SMTP_FROM_EMAIL: str = "noreply@example.com"
    SMTP_USER: str = "user"
    SMTP_PASSWORD: str = "password"
    SMTP_PORT: str = "1025"
    SMTP_HOST: str = "localhost"
    BASE_URL: str = "http://localhost:8000"

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    EMERGENCY_MAX_CONTACTS: int = 5
    EMERGENCY_TOKEN_EXPIRY_DAYS: int = 7
    EMERGENCY_LIMIT_COUNTS_PENDING: bool = True

    NOTIFY_MAX_ATTEMPTS: int = 3
    NOTIFY_RETRY_DELAY_SECONDS: float = 5.0

    RATE_LIMIT_PER_MINUTE: int = 5
    TOKEN_RATE_LIMIT_PER_MINUTE: int = 10

    CELERY_BROKER_URL: str | None = None
    CELERY_RESULT_BACKEND: str | None = None
    CLEANUP_INTERVAL_MINUTES: int = 60

    class Config:
        """Pydantic configuration for loading environment variables."""

        env_file = ".env"
        extra = "allow"

    @property
    def token_expiry(self) -> timedelta:
        """Verification token lifetime as a ``timedelta``."""
        return timedelta(days=self.EMERGENCY_TOKEN_EXPIRY_DAYS)


@lru_cache()
def get_settings() -> Settings:
    """Return cached application settings.

    The settings object is cached to prevent reloading environment
    variables multiple times during application lifetime.
    """

    return Settings()


def get_mail_config() -> ConnectionConfig:
    """Create and return email configuration for FastAPI-Mail.

    Returns:
        ConnectionConfig: Configured email connection settings.
    """

    settings = get_settings()
    return ConnectionConfig(
        MAIL_USERNAME=settings.SMTP_USER,
        MAIL_PASSWORD=settings.SMTP_PASSWORD,
        MAIL_FROM=settings.SMTP_FROM_EMAIL,
        MAIL_PORT=settings.SMTP_PORT,
        MAIL_SERVER=settings.SMTP_HOST,
        MAIL_STARTTLS=True,
        MAIL_SSL_TLS=False,
        USE_CREDENTIALS=True,
    )
