"""Configuration settings for the billing workflow engine."""

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Flat settings loaded from environment variables or a .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Tax: one rate for every call site (invoice creation, resync, reconciliation)
    tax_rate: Decimal = Field(
        default=Decimal("0.08"),
        ge=Decimal("0"),
        lt=Decimal("1"),
        validation_alias="BILLING_TAX_RATE",
    )

    # Business calendar
    business_timezone: str = Field(default="UTC", validation_alias="BUSINESS_TIMEZONE")

    # Sweeps
    sweep_concurrency: int = Field(default=8, ge=1, validation_alias="SWEEP_CONCURRENCY")
    sweep_deadline_seconds: float = Field(
        default=600.0, gt=0, validation_alias="SWEEP_DEADLINE_SECONDS"
    )
    external_call_timeout: float = Field(
        default=30.0, gt=0, validation_alias="EXTERNAL_CALL_TIMEOUT"
    )

    # Reminders
    reminder_cooldown_hours: int = Field(default=24, ge=0, validation_alias="REMINDER_COOLDOWN_HOURS")
    milestone_reminder_days: int = Field(default=3, ge=0, validation_alias="MILESTONE_REMINDER_DAYS")
    event_reminder_days: tuple[int, int] = Field(
        default=(7, 2), validation_alias="EVENT_REMINDER_DAYS"
    )

    # Notifier (mail relay)
    notifier_url: str | None = Field(default=None, validation_alias="NOTIFIER_URL")
    notifier_api_key: SecretStr | None = Field(default=None, validation_alias="NOTIFIER_API_KEY")
    notifier_max_retries: int = Field(default=3, ge=0, validation_alias="NOTIFIER_MAX_RETRIES")

    # Scheduler cadence
    automation_interval_minutes: int = Field(
        default=15, ge=1, validation_alias="AUTOMATION_INTERVAL_MINUTES"
    )
    reminder_interval_minutes: int = Field(
        default=60, ge=1, validation_alias="REMINDER_INTERVAL_MINUTES"
    )
    reconciliation_interval_minutes: int = Field(
        default=1440, ge=1, validation_alias="RECONCILIATION_INTERVAL_MINUTES"
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_format: Literal["json", "console"] = Field(
        default="console", validation_alias="LOG_FORMAT"
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
