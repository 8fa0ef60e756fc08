import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"  # development | test | production
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Session tokens (issued by the auth provider, HS256)
    SESSION_SECRET: Optional[str] = None
    SESSION_COOKIE_NAMES: str = "next-auth.session-token,__Secure-next-auth.session-token"

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_API_VERSION: str = "2024-06-20"

    # App URLs
    BASE_URL: str = "http://localhost:3000"

    # Subscription access control
    SUBSCRIPTION_ALLOW_FREE_TIER: bool = True
    SUBSCRIPTION_REQUIRE_ACTIVE: bool = True
    SUBSCRIPTION_ADMIN_BYPASS: bool = False
    SUBSCRIPTION_REDIRECT_URL: str = "/pricing"
    SUBSCRIPTION_STATUS_HEADER: str = "x-subscription-status"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def session_cookie_names(self) -> List[str]:
        return [name.strip() for name in self.SESSION_COOKIE_NAMES.split(",") if name.strip()]


settings = Settings()


def is_development(settings_obj: Optional[Settings] = None) -> bool:
    cfg = settings_obj or settings
    return cfg.ENV.lower() in ("development", "dev")


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("restohub")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "SESSION_SECRET",
        "STRIPE_SECRET_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
