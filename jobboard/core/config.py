import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Auth (bearer JWTs issued by the identity provider)
    AUTH_JWT_SECRET: Optional[str] = None
    AUTH_JWT_AUDIENCE: Optional[str] = "authenticated"

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_API_VERSION: str = "2023-10-16"
    STRIPE_CURRENCY: str = "sek"

    # App URLs
    APP_BASE_URL: str = "http://localhost:8080"
    CORS_ORIGINS: str = "http://localhost:8080"  # comma-separated

    # Billing check cache (seconds a Stripe answer is reused unless forced)
    BILLING_CHECK_CACHE_TTL_SECONDS: float = 20.0

    # Refresh scheduling
    REFRESH_INTERVAL_SECONDS: float = 15.0
    REFRESH_MIN_INTERVAL_SECONDS: float = 1.0
    REFRESH_BACKOFF_STEP_SECONDS: float = 0.5
    REFRESH_MAX_DELAY_SECONDS: float = 5.0
    PAYMENT_RETURN_DELAY_SECONDS: float = 1.5

    # Remote calls (store + Stripe) that exceed this are treated as retryable failures
    REMOTE_CALL_TIMEOUT_SECONDS: float = 10.0

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("jobboard")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "AUTH_JWT_SECRET",
        "STRIPE_SECRET_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
