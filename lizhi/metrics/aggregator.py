"""
Period Metrics Aggregator

Two headline ratios over a half-open [start, end) window:

Activity ratio (Lizhi Index)
    active income / non-investment expenses, both read from the
    transaction log only.

Coverage ratio (FIRE projection)
    (total asset value x safe withdrawal rate) / non-investment
    expenses of the trailing twelve months ending at the window end.

DESIGN DECISION: The two ratios read disjoint inputs.
The activity ratio never looks at account values, so a market price
change can move the coverage ratio but never the activity ratio.

Both ratios share one zero-denominator policy: 100 when the numerator
is positive, otherwise 0.
"""

from datetime import date
from decimal import Decimal
from typing import Iterable, NamedTuple, Optional

import structlog

from lizhi.config import AppSettings, get_settings
from lizhi.models.ledger import Account, Transaction
from lizhi.models.reports import MetricsGranularity, PeriodMetrics
from lizhi.scheduling import add_months
from lizhi.services.currency import CurrencyNormalizer


logger = structlog.get_logger(__name__)

ZERO = Decimal("0")
UNBOUNDED = Decimal("100")


class MetricsWindow(NamedTuple):
    """Half-open date range [start, end)."""
    start: date
    end: date
    granularity: MetricsGranularity

    @classmethod
    def for_period(
        cls,
        anchor: date,
        granularity: MetricsGranularity = MetricsGranularity.MONTH,
    ) -> "MetricsWindow":
        """The calendar month or year containing `anchor`."""
        if granularity == MetricsGranularity.YEAR:
            start = date(anchor.year, 1, 1)
            return cls(start, date(anchor.year + 1, 1, 1), granularity)
        start = anchor.replace(day=1)
        return cls(start, add_months(start, 1), granularity)

    def contains(self, day: date) -> bool:
        return self.start <= day < self.end

    @property
    def trailing_start(self) -> date:
        """Start of the twelve months ending at the window end."""
        return add_months(self.end, -12)


class PeriodTotals(NamedTuple):
    active_income: Decimal
    expenses: Decimal
    warnings: list[str]


def ratio(numerator: Decimal, denominator: Decimal) -> Decimal:
    """Divide, mapping a zero denominator to 100 (numerator > 0) or 0."""
    if denominator > 0:
        return numerator / denominator
    return UNBOUNDED if numerator > 0 else ZERO


class PeriodMetricsAggregator:
    """
    Read-only metrics over a transaction log and account list.

    All amounts are normalized into the normalizer's base currency.
    """

    def __init__(
        self,
        normalizer: CurrencyNormalizer,
        settings: Optional[AppSettings] = None,
    ):
        self._normalizer = normalizer
        self._settings = settings or get_settings().app

    @property
    def reporting_currency(self) -> str:
        return self._normalizer.base_currency

    def _to_base(self, amount: Decimal, currency: str, label: str, warnings: list[str]) -> Decimal:
        result = self._normalizer.convert_to_base(amount, currency)
        if result.rate_unavailable:
            warnings.append(f"{label} counted unconverted: {result.message}")
        return result.amount

    def period_totals(
        self,
        transactions: Iterable[Transaction],
        start: date,
        end: date,
    ) -> PeriodTotals:
        """Normalized active income and non-investment expenses in [start, end)."""
        income = ZERO
        expenses = ZERO
        warnings: list[str] = []

        for tx in transactions:
            if not (start <= tx.occurred_on < end):
                continue
            if tx.is_active_income:
                income += self._to_base(tx.amount, tx.currency, f"Transaction {tx.id}", warnings)
            elif tx.is_burn:
                expenses += self._to_base(tx.amount, tx.currency, f"Transaction {tx.id}", warnings)

        return PeriodTotals(income, expenses, warnings)

    def total_asset_value(
        self,
        accounts: Iterable[Account],
        warnings: list[str],
    ) -> Decimal:
        """Normalized total value of every account."""
        total = ZERO
        for account in accounts:
            total += self._to_base(
                account.total_value, account.currency, f"Account {account.name}", warnings
            )
        return total

    def activity_ratio(
        self,
        transactions: Iterable[Transaction],
        window: MetricsWindow,
    ) -> Decimal:
        totals = self.period_totals(transactions, window.start, window.end)
        return ratio(totals.active_income, totals.expenses)

    def coverage_ratio(
        self,
        transactions: Iterable[Transaction],
        accounts: Iterable[Account],
        window: MetricsWindow,
    ) -> Decimal:
        warnings: list[str] = []
        projected = self.total_asset_value(accounts, warnings) * self._settings.safe_withdrawal_rate
        trailing = self.period_totals(transactions, window.trailing_start, window.end)
        return ratio(projected, trailing.expenses)

    def compute(
        self,
        transactions: list[Transaction],
        accounts: list[Account],
        window: MetricsWindow,
    ) -> PeriodMetrics:
        """Compute both ratios for one window."""
        period = self.period_totals(transactions, window.start, window.end)
        trailing = self.period_totals(transactions, window.trailing_start, window.end)

        warnings = list(period.warnings)
        for warning in trailing.warnings:
            if warning not in warnings:
                warnings.append(warning)

        total_assets = self.total_asset_value(accounts, warnings)
        projected = total_assets * self._settings.safe_withdrawal_rate

        metrics = PeriodMetrics(
            window_start=window.start,
            window_end=window.end,
            granularity=window.granularity,
            reporting_currency=self.reporting_currency,
            active_income=period.active_income,
            expenses=period.expenses,
            activity_ratio=ratio(period.active_income, period.expenses),
            total_asset_value=total_assets,
            projected_passive_income=projected,
            trailing_start=window.trailing_start,
            trailing_expenses=trailing.expenses,
            coverage_ratio=ratio(projected, trailing.expenses),
            warnings=warnings,
        )

        logger.info(
            "metrics_computed",
            window_start=window.start.isoformat(),
            window_end=window.end.isoformat(),
            activity_ratio=str(metrics.activity_ratio),
            coverage_ratio=str(metrics.coverage_ratio),
        )
        return metrics
