from functools import lru_cache
from threading import Lock
from typing import Optional
import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator

# Environment Constants
ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"

SUPPORTED_GATEWAYS = {"paystack", "stripe"}


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


_settings_reload_lock = Lock()


def reload_settings_from_environment() -> "Settings":
    """
    Atomically rebuild and replace cached settings from environment values.

    This avoids mutating the cached singleton instance in-place. The dunning
    policy snapshot is rebuilt as well; engines constructed earlier keep the
    snapshot they were built with.
    """
    logger = structlog.get_logger()
    with _settings_reload_lock:
        logger.info("settings_reload_started")
        get_settings.cache_clear()
        refreshed = get_settings()
        from app.modules.billing.domain.billing.dunning_config import (
            get_dunning_config,
        )

        get_dunning_config.cache_clear()
        logger.info("settings_reload_completed")
        return refreshed


class Settings(BaseSettings):
    """
    Main configuration for the commerce dunning service.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "rcommerce-dunning"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False
    OTEL_EXPORTER_OTLP_ENDPOINT: Optional[str] = None
    OTEL_EXPORTER_OTLP_INSECURE: bool = False

    # Database
    DATABASE_URL: Optional[str] = None  # Required in prod, optional in dev/test
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600
    DB_ECHO: bool = False

    # Dunning policy (snapshot loaded once per process, see dunning_config.py)
    DUNNING_CONFIG_PATH: Optional[str] = None  # YAML document overrides the fields below
    DUNNING_MAX_RETRIES: int = 3
    DUNNING_RETRY_INTERVALS_DAYS: list[int] = [1, 3, 7]
    DUNNING_GRACE_PERIOD_DAYS: int = 14
    DUNNING_EMAIL_ON_FIRST_FAILURE: bool = True
    DUNNING_EMAIL_ON_FINAL_FAILURE: bool = True
    DUNNING_GATEWAY_TIMEOUT_SECONDS: float = 30.0
    DUNNING_GRACE_EXTENSION_POLICY: str = "postpone"
    DUNNING_LATE_FEE_AFTER_RETRY: Optional[int] = None
    DUNNING_LATE_FEE_AMOUNT: Optional[str] = None

    # Payment gateway
    PAYMENT_GATEWAY: str = "paystack"
    PAYSTACK_SECRET_KEY: Optional[str] = None
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    GATEWAY_CONNECT_RETRIES: int = 3

    # Retry scheduler (durable job queue)
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_POLL_INTERVAL_SECONDS: int = 30
    SCHEDULER_BATCH_SIZE: int = 10
    SCHEDULER_CONCURRENCY: int = 4
    SCHEDULER_LEASE_SECONDS: int = 600
    JOB_MAX_ATTEMPTS: int = 5
    JOB_BACKOFF_BASE_SECONDS: int = 60
    JOB_TIMEOUT_SECONDS: int = 300

    # Outbound customer notifications
    NOTIFICATION_WEBHOOK_URL: Optional[str] = None
    NOTIFICATION_WEBHOOK_TOKEN: Optional[str] = None
    WEBHOOK_ALLOWED_DOMAINS: list[str] = []
    WEBHOOK_REQUIRE_HTTPS: bool = True
    WEBHOOK_BLOCK_PRIVATE_IPS: bool = True

    # Inbound operator API
    INTERNAL_API_TOKEN: Optional[str] = None

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """
        Centralized validation orchestrator.
        Groups validation by concern for clarity and specificity.
        """
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )

        self._validate_scheduler_config()
        if self.TESTING:
            return self

        self._validate_database_config()
        self._validate_billing_config()
        self._validate_notification_config()
        return self

    def _validate_scheduler_config(self) -> None:
        if self.SCHEDULER_POLL_INTERVAL_SECONDS <= 0:
            raise ValueError("SCHEDULER_POLL_INTERVAL_SECONDS must be > 0.")
        if self.SCHEDULER_CONCURRENCY <= 0:
            raise ValueError("SCHEDULER_CONCURRENCY must be > 0.")
        if self.SCHEDULER_BATCH_SIZE <= 0:
            raise ValueError("SCHEDULER_BATCH_SIZE must be > 0.")
        if self.JOB_MAX_ATTEMPTS <= 0:
            raise ValueError("JOB_MAX_ATTEMPTS must be > 0.")
        if self.SCHEDULER_LEASE_SECONDS < self.JOB_TIMEOUT_SECONDS:
            raise ValueError(
                "SCHEDULER_LEASE_SECONDS must be >= JOB_TIMEOUT_SECONDS so a running job keeps its lease."
            )

    def _validate_database_config(self) -> None:
        if self.is_production and not self.DATABASE_URL:
            raise ValueError("DATABASE_URL is required in production.")

    def _validate_billing_config(self) -> None:
        """Validates gateway selection and credentials."""
        gateway = self.PAYMENT_GATEWAY.strip().lower()
        if gateway not in SUPPORTED_GATEWAYS:
            raise ValueError(
                f"PAYMENT_GATEWAY must be one of: {', '.join(sorted(SUPPORTED_GATEWAYS))}."
            )
        if not self.is_production:
            return
        if gateway == "paystack" and (
            not self.PAYSTACK_SECRET_KEY
            or self.PAYSTACK_SECRET_KEY.startswith("sk_test")
        ):
            raise ValueError(
                "PAYSTACK_SECRET_KEY must be a live key (sk_live_...) in production."
            )
        if gateway == "stripe":
            if not self.STRIPE_SECRET_KEY or self.STRIPE_SECRET_KEY.startswith(
                "sk_test"
            ):
                raise ValueError(
                    "STRIPE_SECRET_KEY must be a live key (sk_live_...) in production."
                )
            if not self.STRIPE_WEBHOOK_SECRET:
                raise ValueError("STRIPE_WEBHOOK_SECRET is required in production.")

    def _validate_notification_config(self) -> None:
        if self.is_production and self.NOTIFICATION_WEBHOOK_URL:
            if not self.WEBHOOK_REQUIRE_HTTPS:
                raise ValueError("WEBHOOK_REQUIRE_HTTPS cannot be disabled in production.")
            if not self.WEBHOOK_ALLOWED_DOMAINS:
                raise ValueError(
                    "WEBHOOK_ALLOWED_DOMAINS must be set when NOTIFICATION_WEBHOOK_URL is configured."
                )

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    @property
    def is_production(self) -> bool:
        """True only when ENVIRONMENT is explicitly set to 'production'."""
        return self.ENVIRONMENT == ENV_PRODUCTION
