"""
smsdesk/core/config.py

Purpose: Application configuration

- Loads environment variables
- Centralizes config values (DB URI, secrets, queue tunables)
- Validates configuration on startup
- Environment-specific settings
"""

from pydantic import Field, validator
from pydantic_settings import BaseSettings
from typing import Optional, Literal


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Validates all required configs on startup.
    """

    # Environment
    ENVIRONMENT: Literal["development", "staging", "production"] = "development"

    # MongoDB
    MONGODB_URL: str = Field(
        default="mongodb://localhost:27017",
        description="MongoDB connection URI"
    )
    MONGODB_DB_NAME: str = Field(
        default="smsdesk",
        description="MongoDB database name"
    )

    # Delivery webhook
    WEBHOOK_SECRET: Optional[str] = Field(
        default=None,
        description="HMAC secret used to verify delivery report signatures"
    )
    WEBHOOK_REQUIRE_SIGNATURE: bool = Field(
        default=False,
        description="Reject delivery reports without an X-Webhook-Signature header"
    )
    WEBHOOK_BASE_URL: str = Field(
        default="http://localhost:8000",
        description="Public base URL of this service (simulated delivery reports post here)"
    )

    # SMS queue worker
    SMS_QUEUE_ENABLED: bool = Field(
        default=True,
        description="Start the background queue worker with the application"
    )
    SMS_QUEUE_BATCH_SIZE: int = Field(
        default=25,
        description="Maximum queued messages picked per queue tick"
    )
    SMS_QUEUE_INTERVAL_SECONDS: float = Field(
        default=2.0,
        description="Pause between queue ticks"
    )
    SMS_QUEUE_SEND_DELAY_SECONDS: float = Field(
        default=1.0,
        description="Pause between consecutive sends to the same provider"
    )
    SMS_RETRY_DELAY_SECONDS: int = Field(
        default=30,
        description="Minimum wait before a failed message is retried"
    )
    SMS_RETRY_TIMEOUT_SECONDS: int = Field(
        default=300,
        description="Queued retries untouched for this long are force-failed"
    )
    SMS_PROCESSING_TIMEOUT_SECONDS: int = Field(
        default=600,
        description="Messages stuck in processing for this long are failed"
    )
    SMS_MAX_RETRIES: int = Field(
        default=3,
        description="Maximum send attempts per message"
    )
    SMS_FANOUT_BATCH_SIZE: int = Field(
        default=500,
        description="Contacts read per batch when a campaign is fanned out"
    )
    SMS_COUNTER_SYNC_INTERVAL_SECONDS: int = Field(
        default=600,
        description="Interval of campaign counter reconciliation"
    )
    SMS_TRACKING_CLEANUP_INTERVAL_SECONDS: int = Field(
        default=300,
        description="Interval of in-memory processed-id cleanup"
    )

    # Providers
    PROVIDER_HTTP_TIMEOUT: float = Field(
        default=10.0,
        description="Timeout in seconds for provider API calls"
    )
    TWILIO_API_BASE_URL: str = Field(
        default="https://api.twilio.com",
        description="Twilio REST API base URL"
    )
    MESSAGEBIRD_API_BASE_URL: str = Field(
        default="https://rest.messagebird.com",
        description="MessageBird REST API base URL"
    )
    SMSENVOI_API_BASE_URL: str = Field(
        default="https://api.smsenvoi.com/API/v1.0/REST",
        description="SMSenvoi REST API base URL"
    )

    # Campaign progress stream
    PROGRESS_STREAM_INTERVAL_SECONDS: float = Field(
        default=2.0,
        description="Interval between Server-Sent Events progress updates"
    )
    PROGRESS_STREAM_MAX_SECONDS: int = Field(
        default=300,
        description="Maximum lifetime of a progress stream"
    )

    # Application
    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    API_PREFIX: str = Field(
        default="/api/v1",
        description="API route prefix"
    )
    CORS_ORIGINS: list = Field(
        default=["*"],
        description="Allowed CORS origins"
    )

    # Security
    SECRET_KEY: str = Field(
        default="change-me-in-production",
        description="Application secret key"
    )
    ADMIN_API_KEY: Optional[str] = Field(
        default=None,
        description="Key required in X-Admin-Key for admin endpoints"
    )

    @validator("SECRET_KEY")
    def validate_secret_key(cls, v, values):
        """Ensure secret key is changed in production."""
        if values.get("ENVIRONMENT") == "production" and v == "change-me-in-production":
            raise ValueError("SECRET_KEY must be changed in production environment")
        return v

    @validator("ADMIN_API_KEY")
    def validate_admin_key(cls, v, values):
        """Ensure the admin key is set in production."""
        if values.get("ENVIRONMENT") == "production" and not v:
            raise ValueError("ADMIN_API_KEY is required in production environment")
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    class Config:
        env_file = ".env"
        case_sensitive = True
        env_file_encoding = "utf-8"


# Global settings instance
settings = Settings()


def validate_settings():
    """
    Validates critical settings on application startup.
    Raises ValueError if any required setting is missing or invalid.
    """
    errors = []

    if not settings.MONGODB_URL:
        errors.append("MONGODB_URL is required")

    if settings.SMS_MAX_RETRIES < 1:
        errors.append("SMS_MAX_RETRIES must be at least 1")

    if settings.SMS_QUEUE_BATCH_SIZE < 1:
        errors.append("SMS_QUEUE_BATCH_SIZE must be at least 1")

    if settings.WEBHOOK_REQUIRE_SIGNATURE and not settings.WEBHOOK_SECRET:
        errors.append("WEBHOOK_SECRET is required when WEBHOOK_REQUIRE_SIGNATURE is set")

    # Production-specific validations
    if settings.is_production:
        if not settings.ADMIN_API_KEY:
            errors.append("ADMIN_API_KEY is required in production")

    if errors:
        raise ValueError(f"Configuration validation failed: {', '.join(errors)}")

    return True
