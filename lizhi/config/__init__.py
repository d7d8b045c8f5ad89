"""Configuration package."""

from lizhi.config.settings import (
    AppSettings,
    CurrencySettings,
    SchedulerSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "CurrencySettings",
    "SchedulerSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
