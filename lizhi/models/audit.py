"""
Audit Models for Lizhi Ledger

Every significant ledger action is logged for audit purposes.
This provides:
1. Traceability of every mutation and the replay it triggered
2. Debugging information when a replay skips or fails
3. Visibility of degraded modes (fallback rates, truncated schedules)

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Every ledger mutation and every core pass has its own event type.
    """
    # Transaction log
    TRANSACTION_ADDED = "transaction_added"
    TRANSACTION_UPDATED = "transaction_updated"
    TRANSACTION_DELETED = "transaction_deleted"
    TRANSACTIONS_IMPORTED = "transactions_imported"

    # Cost basis
    LOT_ADDED = "lot_added"
    LOT_UPDATED = "lot_updated"
    LOT_DELETED = "lot_deleted"

    # Accounts
    ACCOUNT_SAVED = "account_saved"
    MARKET_PRICE_UPDATED = "market_price_updated"

    # Subscriptions
    SUBSCRIPTION_SAVED = "subscription_saved"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    BILL_MATERIALIZED = "bill_materialized"
    SCHEDULE_TRUNCATED = "schedule_truncated"

    # Reconciliation
    RECONCILIATION_COMPLETED = "reconciliation_completed"
    RECONCILIATION_FAILED = "reconciliation_failed"
    TRANSACTION_SKIPPED = "transaction_skipped"

    # Currency
    RATES_REFRESHED = "rates_refreshed"
    RATES_DEGRADED = "rates_degraded"
    RATE_UNAVAILABLE = "rate_unavailable"

    # Metrics
    METRICS_COMPUTED = "metrics_computed"

    # System events
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=datetime.utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'transaction', 'account', 'lot')"
    )
    entity_id: Optional[UUID] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - ties a mutation to the replay it triggered
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    error_code: Optional[str] = None
    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.transaction_changed("added", tx_id, ...)
        event = AuditEventBuilder.reconciliation_completed(run_id, ...)
    """

    _TRANSACTION_EVENTS = {
        "added": AuditEventType.TRANSACTION_ADDED,
        "updated": AuditEventType.TRANSACTION_UPDATED,
        "deleted": AuditEventType.TRANSACTION_DELETED,
    }
    _LOT_EVENTS = {
        "added": AuditEventType.LOT_ADDED,
        "updated": AuditEventType.LOT_UPDATED,
        "deleted": AuditEventType.LOT_DELETED,
    }

    @staticmethod
    def transaction_changed(
        action: str,
        transaction_id: UUID,
        transaction_type: str,
        amount: str,
        currency: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventBuilder._TRANSACTION_EVENTS[action],
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description=f"Transaction {action}: {transaction_type} {amount} {currency}",
            details={
                "transaction_type": transaction_type,
                "amount": amount,
                "currency": currency,
            },
            is_user_action=True,
        )

    @staticmethod
    def transactions_imported(
        count: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTIONS_IMPORTED,
            entity_type="transaction",
            correlation_id=correlation_id,
            description=f"Imported {count} transactions",
            details={"count": count},
            is_user_action=True,
        )

    @staticmethod
    def lot_changed(
        action: str,
        lot_id: UUID,
        asset_id: UUID,
        units_delta: str,
        invested_delta: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventBuilder._LOT_EVENTS[action],
            entity_type="lot",
            entity_id=lot_id,
            correlation_id=correlation_id,
            description=f"Stock lot {action}",
            details={
                "asset_id": str(asset_id),
                "units_delta": units_delta,
                "invested_delta": invested_delta,
            },
            is_user_action=True,
        )

    @staticmethod
    def account_saved(
        account_id: UUID,
        name: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACCOUNT_SAVED,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description=f"Account saved: {name}",
            details={"name": name},
            is_user_action=True,
        )

    @staticmethod
    def market_price_updated(
        account_id: UUID,
        old_price: str,
        new_price: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MARKET_PRICE_UPDATED,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description=f"Market price updated: {old_price} -> {new_price}",
            details={
                "old_price": old_price,
                "new_price": new_price,
            },
        )

    @staticmethod
    def subscription_changed(
        subscription_id: UUID,
        name: str,
        deleted: bool = False,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=(
                AuditEventType.SUBSCRIPTION_DELETED
                if deleted
                else AuditEventType.SUBSCRIPTION_SAVED
            ),
            entity_type="subscription",
            entity_id=subscription_id,
            correlation_id=correlation_id,
            description=f"Subscription {'deleted' if deleted else 'saved'}: {name}",
            details={"name": name},
            is_user_action=True,
        )

    @staticmethod
    def bill_materialized(
        subscription_id: UUID,
        transaction_id: UUID,
        due_on: str,
        amount: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BILL_MATERIALIZED,
            entity_type="subscription",
            entity_id=subscription_id,
            correlation_id=correlation_id,
            description=f"Bill materialized for {due_on}: {amount}",
            details={
                "transaction_id": str(transaction_id),
                "due_on": due_on,
                "amount": amount,
            },
        )

    @staticmethod
    def schedule_truncated(
        subscription_id: UUID,
        cap: int,
        next_runner_date: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SCHEDULE_TRUNCATED,
            severity=AuditSeverity.WARNING,
            entity_type="subscription",
            entity_id=subscription_id,
            correlation_id=correlation_id,
            description=f"Catch-up stopped after {cap} bills",
            details={
                "cap": cap,
                "next_runner_date": next_runner_date,
            },
        )

    @staticmethod
    def reconciliation_completed(
        reconciliation_id: UUID,
        transactions_replayed: int,
        accounts_updated: int,
        skipped: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECONCILIATION_COMPLETED,
            severity=AuditSeverity.WARNING if skipped else AuditSeverity.INFO,
            entity_type="reconciliation",
            entity_id=reconciliation_id,
            correlation_id=correlation_id,
            description=(
                f"Replayed {transactions_replayed} transactions into "
                f"{accounts_updated} accounts ({skipped} skipped)"
            ),
            details={
                "transactions_replayed": transactions_replayed,
                "accounts_updated": accounts_updated,
                "skipped": skipped,
            },
        )

    @staticmethod
    def reconciliation_failed(
        reconciliation_id: UUID,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECONCILIATION_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="reconciliation",
            entity_id=reconciliation_id,
            correlation_id=correlation_id,
            description="Reconciliation aborted; previous balances kept",
            error_message=error_message,
        )

    @staticmethod
    def transaction_skipped(
        transaction_id: UUID,
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_SKIPPED,
            severity=AuditSeverity.WARNING,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description=f"Transaction skipped during replay: {reason}",
            details={"reason": reason},
        )

    @staticmethod
    def rates_refreshed(
        pivot_currency: str,
        currency_count: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RATES_REFRESHED,
            entity_type="rates",
            description=f"Loaded {currency_count} rates against {pivot_currency}",
            details={
                "pivot_currency": pivot_currency,
                "currency_count": currency_count,
            },
        )

    @staticmethod
    def rates_degraded(
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RATES_DEGRADED,
            severity=AuditSeverity.WARNING,
            entity_type="rates",
            description="Live rates unavailable; using fallback table",
            error_message=error_message,
        )

    @staticmethod
    def rate_unavailable(
        message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RATE_UNAVAILABLE,
            severity=AuditSeverity.WARNING,
            entity_type="rates",
            correlation_id=correlation_id,
            description="Amount used unconverted",
            error_message=message,
        )

    @staticmethod
    def metrics_computed(
        window_start: str,
        window_end: str,
        activity_ratio: str,
        coverage_ratio: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.METRICS_COMPUTED,
            entity_type="metrics",
            correlation_id=correlation_id,
            description=f"Metrics computed for {window_start}..{window_end}",
            details={
                "activity_ratio": activity_ratio,
                "coverage_ratio": coverage_ratio,
            },
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
