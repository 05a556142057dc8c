"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No sensitive values should be hardcoded here.
"""

from typing import Optional
from pydantic_settings import BaseSettings


class ConfigurationError(RuntimeError):
    """Raised when a required setting is missing or malformed.

    Only raised during startup; a process that fails validation never serves.
    """
    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "Coaching Billing API"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Database - REQUIRED
    DATABASE_URL: str
    DATABASE_ECHO: bool = False

    # Stripe - REQUIRED
    STRIPE_SECRET_KEY: str = ""
    STRIPE_API_VERSION: str = "2024-06-20"
    STRIPE_REQUEST_TIMEOUT_SECONDS: float = 10.0

    # Default (free) plan provisioning
    DEFAULT_PLAN_NAME: str = "starter"
    DEFAULT_PRICE_ID: Optional[str] = None

    # Word limits come from product metadata
    WORD_LIMIT_METADATA_KEY: str = "Words"
    DEFAULT_WORD_LIMIT: int = 500

    # Payment method propagation polling
    PAYMENT_METHOD_POLL_ATTEMPTS: int = 3
    PAYMENT_METHOD_POLL_DELAY_SECONDS: float = 1.0

    # Historical usage
    DEFAULT_HISTORY_CYCLES: int = 3
    MAX_HISTORY_CYCLES: int = 24

    # Mobile entitlements (optional)
    REVENUECAT_API_KEY: str = ""

    # CORS
    CORS_ORIGINS: list[str] = []

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


def validate_settings(config: Settings) -> None:
    """Fail fast on settings the billing core cannot run without.

    Args:
        config: Loaded settings

    Raises:
        ConfigurationError: If a required secret is missing or malformed
    """
    key = config.STRIPE_SECRET_KEY.strip()
    if not key:
        raise ConfigurationError("STRIPE_SECRET_KEY is required")
    if not key.startswith(("sk_", "rk_")):
        raise ConfigurationError(
            "STRIPE_SECRET_KEY must be a Stripe secret (sk_) or restricted (rk_) key"
        )
    if config.PAYMENT_METHOD_POLL_ATTEMPTS < 1:
        raise ConfigurationError("PAYMENT_METHOD_POLL_ATTEMPTS must be at least 1")
    if config.MAX_HISTORY_CYCLES < 1:
        raise ConfigurationError("MAX_HISTORY_CYCLES must be at least 1")


settings = Settings()
