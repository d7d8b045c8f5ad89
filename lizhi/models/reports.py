"""
Result Models for Lizhi Ledger

Every core operation returns one of these instead of raising for
recoverable conditions. Financial display must degrade, not crash:
callers inspect `success`, `warnings` and the skipped lists.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from lizhi.models.ledger import Account, Transaction


class MetricsGranularity(str, Enum):
    """Length of a metrics window."""
    MONTH = "month"
    YEAR = "year"


# =============================================================================
# CURRENCY
# =============================================================================

class ConversionResult(BaseModel):
    """
    Outcome of one currency conversion.

    When `rate_unavailable` is True the amount is returned unconverted.
    """

    amount: Decimal
    source_currency: str
    target_currency: str
    rate_unavailable: bool = False
    degraded: bool = Field(
        default=False,
        description="Converted with the hardcoded fallback table"
    )
    message: Optional[str] = None


# =============================================================================
# COST BASIS
# =============================================================================

class CostBasisSummary(BaseModel):
    """Weighted-average cost basis of one asset."""

    asset_id: Optional[UUID] = None
    total_units: Decimal = Decimal("0")
    total_cost: Decimal = Field(
        default=Decimal("0"),
        description="Remaining cost pool after proportional sell reductions"
    )
    average_cost: Decimal = Decimal("0")
    total_invested: Decimal = Field(
        default=Decimal("0"),
        description="Buy totals minus sell totals"
    )
    realized_gain_loss: Decimal = Decimal("0")
    current_value: Decimal = Decimal("0")
    unrealized_gain_loss: Decimal = Decimal("0")
    unrealized_gain_loss_percent: Decimal = Decimal("0")
    lot_count: int = 0


class LotDelta(BaseModel):
    """Change one lot edit makes to its asset."""

    units: Decimal = Decimal("0")
    invested: Decimal = Decimal("0")


# =============================================================================
# RECONCILIATION
# =============================================================================

class SkippedTransaction(BaseModel):
    """A transaction whose effect was left out of a replay."""

    transaction_id: UUID
    reason: str


class ReconciliationResult(BaseModel):
    """
    Result of one full replay.

    On failure nothing was committed and `accounts` is empty;
    the previous derived state is still in the store.
    """

    reconciliation_id: UUID = Field(default_factory=uuid4)
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    success: bool
    error_message: Optional[str] = None

    transactions_replayed: int = 0
    lots_applied: int = 0
    accounts: list[Account] = Field(default_factory=list)
    skipped: list[SkippedTransaction] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    def balance_of(self, code: str) -> Optional[Decimal]:
        """Total value of the account with this short code, if present."""
        for account in self.accounts:
            if account.code == code:
                return account.total_value
        return None


# =============================================================================
# SCHEDULER
# =============================================================================

class DueBills(BaseModel):
    """Bills one rule owes as of a given day."""

    subscription_id: UUID
    transactions: list[Transaction] = Field(default_factory=list)
    next_runner_date: date
    truncated: bool = Field(
        default=False,
        description="The catch-up cap stopped materialization early"
    )


class SchedulerPassResult(BaseModel):
    """Result of one scheduler pass."""

    success: bool
    error_message: Optional[str] = None
    run_on: date
    rules_processed: int = 0
    bills_created: list[UUID] = Field(default_factory=list)
    truncated_rules: list[UUID] = Field(default_factory=list)
    reconciliation: Optional[ReconciliationResult] = None


# =============================================================================
# METRICS
# =============================================================================

class PeriodMetrics(BaseModel):
    """
    Headline ratios for one window.

    The activity ratio reads only the transaction log.
    The coverage ratio reads asset values plus trailing expenses.
    """

    window_start: date
    window_end: date
    granularity: MetricsGranularity
    reporting_currency: str
    computed_at: datetime = Field(default_factory=datetime.utcnow)

    active_income: Decimal = Decimal("0")
    expenses: Decimal = Decimal("0")
    activity_ratio: Decimal = Decimal("0")

    total_asset_value: Decimal = Decimal("0")
    projected_passive_income: Decimal = Decimal("0")
    trailing_start: date
    trailing_expenses: Decimal = Decimal("0")
    coverage_ratio: Decimal = Decimal("0")

    warnings: list[str] = Field(default_factory=list)


# =============================================================================
# VALIDATION
# =============================================================================

class ValidationIssue(BaseModel):
    """A single validation issue found."""

    field: str = Field(
        ...,
        description="Field with the issue"
    )
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'missing_reference', 'future_date')"
    )
    message: str = Field(
        ...,
        description="Human-readable description of the issue"
    )
    severity: str = Field(
        ...,
        pattern="^(error|warning|info)$",
        description="Issue severity"
    )
    suggested_fix: Optional[str] = Field(
        default=None,
        description="What the user can do to resolve it"
    )


class ValidationResult(BaseModel):
    """Result of validating a transaction against the current accounts."""

    transaction_id: UUID
    validated_at: datetime = Field(default_factory=datetime.utcnow)
    issues: list[ValidationIssue] = Field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        """Check if there are any error-level issues."""
        return any(issue.severity == "error" for issue in self.issues)

    @property
    def error_count(self) -> int:
        """Count error-level issues."""
        return sum(1 for issue in self.issues if issue.severity == "error")

    @property
    def is_valid(self) -> bool:
        return not self.has_errors

    @property
    def warnings(self) -> list[str]:
        return [issue.message for issue in self.issues if issue.severity == "warning"]


# =============================================================================
# MUTATIONS
# =============================================================================

class MutationResult(BaseModel):
    """Result of a ledger mutation and the replay it triggered."""

    entity_id: UUID
    correlation_id: UUID
    warnings: list[str] = Field(default_factory=list)
    lot_delta: Optional[LotDelta] = None
    reconciliation: Optional[ReconciliationResult] = Field(
        default=None,
        description="Replay triggered by the mutation; None when balances are unaffected"
    )


class ImportResult(BaseModel):
    """Result of a batch import."""

    correlation_id: UUID
    imported: list[UUID] = Field(default_factory=list)
    lots_created: int = 0
    warnings: list[str] = Field(default_factory=list)
    reconciliation: ReconciliationResult
