"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
For nested settings, use double underscore: BILLING__GRACE_PERIOD_DAYS=5
"""

from enum import Enum

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Subscription billing settings.

    All settings can be overridden via environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Billing Rules
    # ============================================================

    class BillingSettings(BaseModel):
        """Billing lifecycle rules."""

        max_payment_attempts: int = Field(
            3, ge=1, description="Failed charges before a subscription is cancelled"
        )
        grace_period_days: int = Field(
            7, ge=0, description="Days a past-due subscription may still be retried"
        )
        max_active_subscriptions_per_customer: int = Field(
            10, ge=1, description="Active subscriptions allowed per customer"
        )
        default_currency: str = Field("USD", description="Currency for new subscriptions")
        default_payment_method_token: str = Field(
            "stored_payment_method",
            description="Token used when a subscription has no stored payment method",
        )
        max_write_attempts: int = Field(
            3, ge=1, description="Read-modify-write retries on concurrent modification"
        )
        claim_ttl_seconds: float = Field(
            900.0, gt=0, description="Seconds before an unfinished billing claim is abandoned"
        )

        @field_validator("default_currency")
        @classmethod
        def validate_currency(cls, v: str) -> str:
            if len(v) != 3 or not v.isalpha():
                raise ValueError("Currency must be a 3-letter ISO code")
            return v.upper()

    billing: BillingSettings = BillingSettings()  # type: ignore[call-arg]

    # ============================================================
    # Scheduler
    # ============================================================

    class SchedulerSettings(BaseModel):
        """Recurring job configuration."""

        daily_billing_hour: int = Field(8, ge=0, le=23, description="Daily billing hour")
        daily_billing_minute: int = Field(0, ge=0, le=59, description="Daily billing minute")
        retry_interval_hours: int = Field(6, ge=1, description="Hours between payment retries")
        grace_sweep_hour: int = Field(23, ge=0, le=23, description="Grace sweep hour")
        grace_sweep_minute: int = Field(0, ge=0, le=59, description="Grace sweep minute")
        worker_pool_size: int = Field(
            8, ge=1, description="Subscriptions processed concurrently per job run"
        )
        job_budget_seconds: float = Field(
            240.0, gt=0, description="Wall-clock budget for a single job run"
        )
        timezone: str = Field("UTC", description="Timezone for daily fire times")

    scheduler: SchedulerSettings = SchedulerSettings()  # type: ignore[call-arg]

    # ============================================================
    # Event Publishing
    # ============================================================

    class EventSettings(BaseModel):
        """Event publishing retry policy."""

        publish_max_retries: int = Field(3, ge=1, description="Publish attempts per event")
        retry_base_seconds: float = Field(0.5, ge=0, description="Initial backoff")
        retry_max_seconds: float = Field(8.0, ge=0, description="Backoff ceiling")

    events: EventSettings = EventSettings()  # type: ignore[call-arg]

    # ============================================================
    # Celery & Task Queue
    # ============================================================

    class CelerySettings(BaseModel):
        """Celery configuration."""

        broker_url: str = Field("redis://localhost:6379/0", description="Broker URL")
        result_backend: str = Field("redis://localhost:6379/1", description="Result backend")
        task_soft_time_limit: int = Field(300, description="Soft time limit")
        task_time_limit: int = Field(600, description="Hard time limit")

    celery: CelerySettings = CelerySettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Logging configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or console)")

        @field_validator("log_format")
        @classmethod
        def validate_log_format(cls, v: str) -> str:
            if v not in {"json", "console"}:
                raise ValueError("log_format must be 'json' or 'console'")
            return v

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None
