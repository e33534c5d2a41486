import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

VALID_CACHE_BACKENDS = {"memory", "redis"}
VALID_DISPATCH_MODES = {"inline", "thread", "rq"}
VALID_FAILURE_POLICIES = {"open", "closed"}


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database & Cache
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379"

    # Payment provider (Stripe-compatible signed webhooks)
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_PRICE_STARTER: Optional[str] = None
    STRIPE_PRICE_PROFESSIONAL: Optional[str] = None
    STRIPE_PRICE_ENTERPRISE: Optional[str] = None

    # Ingestion retries (transient store failures)
    INGEST_STORE_RETRIES: int = 3
    INGEST_RETRY_BASE_SECONDS: float = 0.05

    # Reconciliation
    RECONCILE_DISPATCH: str = "thread"  # inline | thread | rq
    RECONCILE_WORKERS: int = 4
    RECONCILE_MAX_RETRIES: int = 5
    RECONCILE_RETRY_BASE_SECONDS: float = 0.05
    RECONCILE_QUEUE_NAME: str = "reconcile"
    RECONCILE_LOCK_TIMEOUT_SECONDS: int = 60
    RECONCILE_MAX_DEFERRALS: int = 50
    SWEEP_OLDER_THAN_SECONDS: int = 60

    # Entitlements
    ENTITLEMENT_CACHE_BACKEND: str = "memory"  # memory | redis
    ENTITLEMENT_CACHE_TTL_SECONDS: int = 300

    # Usage gate behaviour when the counter store is down
    USAGE_FAILURE_POLICY: str = "closed"  # closed | open

    # Admin access (X-Admin-Key)
    ADMIN_API_KEY: Optional[str] = None

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()


def price_tier_map(settings_obj: Optional[Settings] = None) -> dict:
    """Map configured provider price IDs to tier names."""
    cfg = settings_obj or settings
    mapping = {
        cfg.STRIPE_PRICE_STARTER: "starter",
        cfg.STRIPE_PRICE_PROFESSIONAL: "professional",
        cfg.STRIPE_PRICE_ENTERPRISE: "enterprise",
    }
    return {price: tier for price, tier in mapping.items() if price}


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("mealplanner_billing")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    problems = []

    required_keys = [
        "DATABASE_URL",
        "STRIPE_WEBHOOK_SECRET",
    ]
    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        problems.append(f"Missing required configuration: {', '.join(missing)}")

    if cfg.ENTITLEMENT_CACHE_BACKEND not in VALID_CACHE_BACKENDS:
        problems.append(f"Invalid ENTITLEMENT_CACHE_BACKEND: {cfg.ENTITLEMENT_CACHE_BACKEND}")
    if cfg.RECONCILE_DISPATCH not in VALID_DISPATCH_MODES:
        problems.append(f"Invalid RECONCILE_DISPATCH: {cfg.RECONCILE_DISPATCH}")
    if cfg.USAGE_FAILURE_POLICY not in VALID_FAILURE_POLICIES:
        problems.append(f"Invalid USAGE_FAILURE_POLICY: {cfg.USAGE_FAILURE_POLICY}")
    if cfg.RECONCILE_MAX_DEFERRALS < 1:
        problems.append("RECONCILE_MAX_DEFERRALS must be >= 1")
    if cfg.RECONCILE_MAX_RETRIES < 1:
        problems.append("RECONCILE_MAX_RETRIES must be >= 1")

    for message in problems:
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return not problems
