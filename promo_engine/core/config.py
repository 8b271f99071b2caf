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

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_CURRENCY: str = "usd"
    NEXT_PUBLIC_STRIPE_PUBLISHABLE_KEY: Optional[str] = None

    # Payment gateway call bounds
    GATEWAY_TIMEOUT_SECONDS: float = 10.0

    # Per-user purchase lease
    USER_LOCK_TTL_SECONDS: int = 60  # a lease older than this may be taken over
    USER_LOCK_WAIT_SECONDS: float = 5.0  # how long a second request waits for the lease

    # Commit point retries before a purchase is handed to reconciliation
    COMMIT_RETRY_ATTEMPTS: int = 3

    # Seed the launch catalog (plans + coupons) at startup
    SEED_CATALOG: bool = False

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = False
    RATE_LIMIT_PER_MINUTE_DEFAULT: int = 120
    RATE_LIMIT_BURST_DEFAULT: int = 30

    # Operator endpoints (X-Admin-Key); disabled when unset
    ADMIN_KEY: Optional[str] = None

    # CORS
    CORS_ALLOWED_ORIGINS: str = "http://localhost:5173"  # comma-separated

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
    log = logger or logging.getLogger("promo_engine")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.GATEWAY_TIMEOUT_SECONDS <= 0:
        message = "GATEWAY_TIMEOUT_SECONDS must be positive"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
