"""
app/core/config.py

Purpose: Application configuration

- Loads environment variables
- Centralizes config values (DB URI, bot and payment tokens, pricing)
- Validates configuration on startup
- Environment-specific settings
"""

from pydantic import Field, validator
from pydantic_settings import BaseSettings
from typing import Optional, Literal

from app.core.exceptions import ConfigurationError


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
        default="telegram_bot",
        description="MongoDB database name"
    )

    # Telegram
    TELEGRAM_BOT_TOKEN: Optional[str] = Field(
        default=None,
        description="Telegram Bot API token"
    )
    TELEGRAM_API_BASE_URL: str = Field(
        default="https://api.telegram.org",
        description="Telegram Bot API base URL"
    )
    TELEGRAM_WEBHOOK_SECRET: Optional[str] = Field(
        default=None,
        description="Expected X-Telegram-Bot-Api-Secret-Token header value"
    )
    TELEGRAM_GROUP_ID: Optional[int] = Field(
        default=None,
        description="Private group subscribers are granted access to"
    )
    OPERATOR_CHAT_ID: Optional[int] = Field(
        default=None,
        description="Chat that receives operator alerts"
    )

    # Mercado Pago
    MERCADOPAGO_ACCESS_TOKEN: Optional[str] = Field(
        default=None,
        description="Mercado Pago access token"
    )
    MERCADOPAGO_BASE_URL: str = Field(
        default="https://api.mercadopago.com",
        description="Mercado Pago API base URL"
    )
    MERCADOPAGO_NOTIFICATION_URL: Optional[str] = Field(
        default=None,
        description="Public URL of the /mp-webhook endpoint"
    )
    CHECKOUT_SUCCESS_URL: Optional[str] = Field(default=None)
    CHECKOUT_FAILURE_URL: Optional[str] = Field(default=None)
    CHECKOUT_PENDING_URL: Optional[str] = Field(default=None)

    # Subscription
    SUBSCRIPTION_TITLE: str = Field(
        default="Monthly Subscription",
        description="Checkout item title"
    )
    SUBSCRIPTION_PRICE: float = Field(
        default=29.90,
        description="Checkout item unit price"
    )
    SUBSCRIPTION_CURRENCY: str = Field(
        default="BRL",
        description="Checkout currency id"
    )

    # Session Management
    SESSION_TIMEOUT_MINUTES: float = Field(
        default=5,
        description="Intake session inactivity timeout in minutes"
    )
    INVITE_LINK_TTL_HOURS: int = Field(
        default=24,
        description="Lifetime of fallback single-use invite links"
    )

    # Payment lookup retries
    PAYMENT_LOOKUP_MAX_ATTEMPTS: int = Field(
        default=3,
        description="Maximum attempts for a payment status lookup"
    )
    PAYMENT_LOOKUP_RETRY_DELAY_SECONDS: float = Field(
        default=1.0,
        description="Initial backoff between payment lookup attempts"
    )
    HTTP_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for outbound HTTP calls"
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

    @validator("TELEGRAM_BOT_TOKEN")
    def validate_bot_token(cls, v, values):
        """Ensure the bot token is set in production."""
        if values.get("ENVIRONMENT") == "production" and not v:
            raise ValueError("TELEGRAM_BOT_TOKEN is required in production environment")
        return v

    @validator("SESSION_TIMEOUT_MINUTES")
    def validate_session_timeout(cls, v):
        if v <= 0:
            raise ValueError("SESSION_TIMEOUT_MINUTES must be positive")
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


def validate_settings(config: Optional[Settings] = None):
    """
    Validates critical settings on application startup.
    Raises ConfigurationError if any required setting is missing or invalid;
    the process must not serve traffic in that case.
    """
    config = config or settings
    errors = []

    if not config.MONGODB_URL:
        errors.append("MONGODB_URL is required")

    if config.SUBSCRIPTION_PRICE <= 0:
        errors.append("SUBSCRIPTION_PRICE must be positive")

    if config.PAYMENT_LOOKUP_MAX_ATTEMPTS < 1:
        errors.append("PAYMENT_LOOKUP_MAX_ATTEMPTS must be at least 1")

    # Production-specific validations
    if config.is_production:
        if not config.TELEGRAM_BOT_TOKEN:
            errors.append("TELEGRAM_BOT_TOKEN is required in production")
        if not config.TELEGRAM_WEBHOOK_SECRET:
            errors.append("TELEGRAM_WEBHOOK_SECRET is required in production")
        if not config.MERCADOPAGO_ACCESS_TOKEN:
            errors.append("MERCADOPAGO_ACCESS_TOKEN is required in production")
        if not config.MERCADOPAGO_NOTIFICATION_URL:
            errors.append("MERCADOPAGO_NOTIFICATION_URL is required in production")
        if config.TELEGRAM_GROUP_ID is None:
            errors.append("TELEGRAM_GROUP_ID is required in production")

    if errors:
        raise ConfigurationError(
            f"Configuration validation failed: {', '.join(errors)}",
            details=errors
        )

    return True
