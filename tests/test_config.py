"""Tests for settings loading."""

import pytest
from decimal import Decimal

from lizhi.config import (
    AppSettings,
    CurrencySettings,
    SchedulerSettings,
    get_settings,
    validate_all_settings,
)


class TestSettings:
    """Tests for pydantic-settings configuration."""

    def test_defaults(self, monkeypatch):
        for name in ("LIZHI_CURRENCY_BASE_CURRENCY", "LIZHI_SCHEDULER_MAX_CATCHUP_ITERATIONS"):
            monkeypatch.delenv(name, raising=False)

        assert CurrencySettings().base_currency == "AUD"
        assert CurrencySettings().fallback_pivot_currency == "USD"
        assert SchedulerSettings().max_catchup_iterations == 12
        assert AppSettings(_env_file=None).safe_withdrawal_rate == Decimal("0.04")

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("LIZHI_CURRENCY_BASE_CURRENCY", "usd")
        monkeypatch.setenv("LIZHI_SCHEDULER_MAX_CATCHUP_ITERATIONS", "24")

        assert CurrencySettings().base_currency == "USD"
        assert SchedulerSettings().max_catchup_iterations == 24

    def test_invalid_currency_rejected(self):
        with pytest.raises(ValueError):
            CurrencySettings(base_currency="dollars")

    def test_catchup_cap_must_be_positive(self):
        with pytest.raises(ValueError):
            SchedulerSettings(max_catchup_iterations=0)

    def test_root_settings_expose_sections(self):
        get_settings.cache_clear()
        settings = get_settings()
        assert settings is get_settings()
        assert isinstance(settings.currency, CurrencySettings)
        assert isinstance(settings.scheduler, SchedulerSettings)
        assert isinstance(settings.app, AppSettings)

    def test_validate_all_settings(self):
        results = validate_all_settings()
        assert results == {"currency": True, "scheduler": True, "app": True}
