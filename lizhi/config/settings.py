"""
Configuration Management for Lizhi Ledger

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Collaborators that used to be process-wide singletons (currency rates,
the scheduler) receive their settings explicitly, so tests can build
them with any base currency or iteration cap.
"""

from decimal import Decimal
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CurrencySettings(BaseSettings):
    """Currency normalization configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LIZHI_CURRENCY_",
        extra="ignore"
    )

    base_currency: str = Field(
        default="AUD",
        description="Reporting currency all metrics are normalized into"
    )
    live_pivot_currency: str = Field(
        default="EUR",
        description="Pivot currency of the live rate table"
    )
    fallback_pivot_currency: str = Field(
        default="USD",
        description="Pivot currency of the hardcoded fallback table"
    )
    rate_cache_ttl_seconds: int = Field(
        default=24 * 60 * 60,
        ge=0,
        description="How long fetched rates are considered fresh"
    )
    fetch_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per rate refresh before giving up"
    )

    @field_validator('base_currency', 'live_pivot_currency', 'fallback_pivot_currency')
    @classmethod
    def normalize_code(cls, v: str) -> str:
        """Currency codes are stored upper case."""
        code = v.strip().upper()
        if len(code) != 3 or not code.isalpha():
            raise ValueError(f"Currency must be a 3-letter ISO 4217 code, got {v!r}")
        return code


class SchedulerSettings(BaseSettings):
    """Recurring bill scheduler configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LIZHI_SCHEDULER_",
        extra="ignore"
    )

    max_catchup_iterations: int = Field(
        default=12,
        ge=1,
        le=366,
        description="Maximum bills materialized per rule per pass"
    )
    interval_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="Delay between periodic scheduler passes"
    )
    bill_subcategory: str = Field(
        default="Bills",
        description="Subcategory stamped on materialized bills"
    )


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_prefix="LIZHI_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    # Replay
    replay_yield_interval: int = Field(
        default=250,
        ge=1,
        description="Transactions replayed between cooperative yields"
    )

    # Metrics
    safe_withdrawal_rate: Decimal = Field(
        default=Decimal("0.04"),
        gt=0,
        le=1,
        description="Share of assets assumed withdrawable per year"
    )
    snapshot_read_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Retries for read-only snapshot queries"
    )
    future_date_tolerance_days: int = Field(
        default=366,
        description="How far in the future a transaction may be dated before a warning"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def currency(self) -> CurrencySettings:
        return CurrencySettings()

    @property
    def scheduler(self) -> SchedulerSettings:
        return SchedulerSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("currency", "scheduler", "app"):
        try:
            _ = getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
