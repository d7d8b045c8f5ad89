"""
Data Models Package

This package contains all Pydantic models used in Lizhi Ledger.
All data flowing through the system must conform to these schemas.
"""

from lizhi.models.ledger import (
    Account,
    AssetType,
    BillingCycle,
    LotSide,
    StockLot,
    Subscription,
    Transaction,
    TransactionCategory,
    TransactionSource,
    TransactionType,
    normalize_currency,
)
from lizhi.models.reports import (
    ConversionResult,
    CostBasisSummary,
    DueBills,
    ImportResult,
    LotDelta,
    MetricsGranularity,
    MutationResult,
    PeriodMetrics,
    ReconciliationResult,
    SchedulerPassResult,
    SkippedTransaction,
    ValidationIssue,
    ValidationResult,
)
from lizhi.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger models
    "Account",
    "AssetType",
    "BillingCycle",
    "LotSide",
    "StockLot",
    "Subscription",
    "Transaction",
    "TransactionCategory",
    "TransactionSource",
    "TransactionType",
    "normalize_currency",
    # Result models
    "ConversionResult",
    "CostBasisSummary",
    "DueBills",
    "ImportResult",
    "LotDelta",
    "MetricsGranularity",
    "MutationResult",
    "PeriodMetrics",
    "ReconciliationResult",
    "SchedulerPassResult",
    "SkippedTransaction",
    "ValidationIssue",
    "ValidationResult",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
