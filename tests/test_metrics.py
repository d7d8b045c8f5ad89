"""Tests for the period metrics aggregator."""

import pytest
from datetime import date
from decimal import Decimal

from lizhi.config import AppSettings, CurrencySettings
from lizhi.metrics import MetricsWindow, PeriodMetricsAggregator, ratio
from lizhi.models.ledger import (
    Account,
    AssetType,
    Transaction,
    TransactionCategory,
    TransactionType,
)
from lizhi.models.reports import MetricsGranularity
from lizhi.services.currency import CurrencyNormalizer


FEB = MetricsWindow.for_period(date(2025, 2, 14))


def tx(amount, kind, day, category=TransactionCategory.SURVIVAL, currency="AUD"):
    return Transaction(
        amount=Decimal(amount),
        type=kind,
        category=category,
        occurred_on=day,
        currency=currency,
    )


@pytest.fixture
def aggregator():
    normalizer = CurrencyNormalizer(settings=CurrencySettings(base_currency="AUD"))
    return PeriodMetricsAggregator(normalizer, AppSettings(safe_withdrawal_rate=Decimal("0.04")))


class TestRatioPolicy:
    """Tests for the shared zero-denominator rule."""

    def test_plain_division(self):
        assert ratio(Decimal("5000"), Decimal("2500")) == Decimal("2")

    def test_zero_denominator_with_positive_numerator(self):
        assert ratio(Decimal("5000"), Decimal("0")) == Decimal("100")

    def test_zero_over_zero(self):
        assert ratio(Decimal("0"), Decimal("0")) == Decimal("0")


class TestMetricsWindow:
    """Tests for window construction."""

    def test_month_window(self):
        assert FEB.start == date(2025, 2, 1)
        assert FEB.end == date(2025, 3, 1)
        assert FEB.trailing_start == date(2024, 3, 1)

    def test_year_window(self):
        window = MetricsWindow.for_period(date(2025, 7, 4), MetricsGranularity.YEAR)
        assert window.start == date(2025, 1, 1)
        assert window.end == date(2026, 1, 1)
        assert window.trailing_start == date(2025, 1, 1)

    def test_december_rolls_into_next_year(self):
        window = MetricsWindow.for_period(date(2025, 12, 31))
        assert window.end == date(2026, 1, 1)

    def test_window_is_half_open(self):
        assert FEB.contains(date(2025, 2, 1)) is True
        assert FEB.contains(date(2025, 2, 28)) is True
        assert FEB.contains(date(2025, 3, 1)) is False


class TestActivityRatio:
    """Tests for income over non-investment expenses."""

    def test_income_only_is_capped_at_100(self, aggregator):
        txs = [tx("5000", TransactionType.INCOME, date(2025, 2, 3))]
        metrics = aggregator.compute(txs, [], FEB)
        assert metrics.activity_ratio == Decimal("100")

    def test_income_over_burn(self, aggregator):
        txs = [
            tx("5000", TransactionType.INCOME, date(2025, 2, 3)),
            tx("2500", TransactionType.EXPENSE, date(2025, 2, 10)),
        ]
        metrics = aggregator.compute(txs, [], FEB)
        assert metrics.activity_ratio == Decimal("2")
        assert metrics.active_income == Decimal("5000")
        assert metrics.expenses == Decimal("2500")

    def test_investment_expenses_are_not_burn(self, aggregator):
        txs = [
            tx("5000", TransactionType.INCOME, date(2025, 2, 3)),
            tx("2500", TransactionType.EXPENSE, date(2025, 2, 10)),
            tx("9000", TransactionType.EXPENSE, date(2025, 2, 11), category=TransactionCategory.INVESTMENT),
        ]
        metrics = aggregator.compute(txs, [], FEB)
        assert metrics.activity_ratio == Decimal("2")

    def test_transfers_and_purchases_are_ignored(self, aggregator):
        transfer = Transaction(
            amount=Decimal("700"),
            type=TransactionType.TRANSFER,
            occurred_on=date(2025, 2, 5),
            source_account="CBA",
            destination_account="AMEX",
        )
        metrics = aggregator.compute([transfer], [], FEB)
        assert metrics.active_income == Decimal("0")
        assert metrics.expenses == Decimal("0")
        assert metrics.activity_ratio == Decimal("0")

    def test_window_bounds(self, aggregator):
        txs = [
            tx("100", TransactionType.INCOME, date(2025, 2, 1)),
            tx("999", TransactionType.INCOME, date(2025, 3, 1)),
            tx("999", TransactionType.INCOME, date(2025, 1, 31)),
            tx("50", TransactionType.EXPENSE, date(2025, 2, 28)),
        ]
        metrics = aggregator.compute(txs, [], FEB)
        assert metrics.active_income == Decimal("100")
        assert metrics.activity_ratio == Decimal("2")

    def test_foreign_currency_is_normalized(self, aggregator):
        txs = [
            tx("100", TransactionType.INCOME, date(2025, 2, 3), currency="USD"),
            tx("79", TransactionType.EXPENSE, date(2025, 2, 4)),
        ]
        metrics = aggregator.compute(txs, [], FEB)
        assert metrics.reporting_currency == "AUD"
        assert metrics.active_income == Decimal("158")
        assert metrics.activity_ratio == Decimal("2")

    def test_unknown_currency_counts_unconverted_with_warning(self, aggregator):
        txs = [tx("100", TransactionType.INCOME, date(2025, 2, 3), currency="XYZ")]
        metrics = aggregator.compute(txs, [], FEB)
        assert metrics.active_income == Decimal("100")
        assert len(metrics.warnings) == 1


class TestCoverageRatio:
    """Tests for the projected passive income ratio."""

    def test_coverage_from_assets_and_trailing_expenses(self, aggregator):
        accounts = [
            Account(name="Savings", code="ING", market_value=Decimal("40000")),
            Account(name="VAS", type=AssetType.STOCK, holdings=Decimal("600"), market_value=Decimal("100")),
        ]
        txs = [
            tx("1500", TransactionType.EXPENSE, date(2024, 6, 1)),
            tx("500", TransactionType.EXPENSE, date(2025, 2, 2)),
            # Outside the trailing year
            tx("8000", TransactionType.EXPENSE, date(2024, 2, 29)),
        ]
        metrics = aggregator.compute(txs, accounts, FEB)

        assert metrics.total_asset_value == Decimal("100000")
        assert metrics.projected_passive_income == Decimal("4000")
        assert metrics.trailing_expenses == Decimal("2000")
        assert metrics.coverage_ratio == Decimal("2")

    def test_no_expenses_gives_100(self, aggregator):
        accounts = [Account(name="Savings", market_value=Decimal("1000"))]
        metrics = aggregator.compute([], accounts, FEB)
        assert metrics.coverage_ratio == Decimal("100")

    def test_foreign_assets_are_normalized(self, aggregator):
        accounts = [Account(name="Brokerage", currency="USD", market_value=Decimal("1000"))]
        metrics = aggregator.compute([], accounts, FEB)
        assert metrics.total_asset_value == Decimal("1580")

    def test_price_change_moves_only_coverage(self, aggregator):
        """Account values never reach the activity ratio."""
        txs = [
            tx("3000", TransactionType.INCOME, date(2025, 2, 3)),
            tx("1000", TransactionType.EXPENSE, date(2025, 2, 4)),
        ]
        stock = Account(name="VAS", type=AssetType.STOCK, holdings=Decimal("10"), market_value=Decimal("100"))
        before = aggregator.compute(txs, [stock], FEB)

        stock.market_value = Decimal("200")
        after = aggregator.compute(txs, [stock], FEB)

        assert before.activity_ratio == after.activity_ratio == Decimal("3")
        assert after.coverage_ratio == before.coverage_ratio * 2

    def test_standalone_helpers_agree_with_compute(self, aggregator):
        accounts = [Account(name="Savings", market_value=Decimal("50000"))]
        txs = [
            tx("4000", TransactionType.INCOME, date(2025, 2, 3)),
            tx("1000", TransactionType.EXPENSE, date(2025, 1, 4)),
            tx("1000", TransactionType.EXPENSE, date(2025, 2, 4)),
        ]
        metrics = aggregator.compute(txs, accounts, FEB)
        assert aggregator.activity_ratio(txs, FEB) == metrics.activity_ratio
        assert aggregator.coverage_ratio(txs, accounts, FEB) == metrics.coverage_ratio
