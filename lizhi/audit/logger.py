"""
Audit Logger

DESIGN DECISION: Every significant ledger action is logged.
This provides:
1. Complete traceability of mutations and the replays they trigger
2. Debugging capability when a replay skips a transaction
3. Visibility of degraded modes (fallback rates, truncated schedules)

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (doesn't crash the app if logging fails)
- Supports correlation IDs to trace related events
"""

from typing import Optional
from uuid import UUID, uuid4

import structlog

from lizhi.models.audit import AuditEvent, AuditEventBuilder
from lizhi.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage (for persistence and user visibility)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger(__name__)

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity.value in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_transaction_changed(
        self,
        action: str,
        transaction_id: UUID,
        transaction_type: str,
        amount: str,
        currency: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a transaction insert, edit or delete."""
        event = AuditEventBuilder.transaction_changed(
            action=action,
            transaction_id=transaction_id,
            transaction_type=transaction_type,
            amount=amount,
            currency=currency,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_transactions_imported(
        self,
        count: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a batch import."""
        event = AuditEventBuilder.transactions_imported(
            count=count,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_lot_changed(
        self,
        action: str,
        lot_id: UUID,
        asset_id: UUID,
        units_delta: str,
        invested_delta: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a stock lot insert, edit or delete."""
        event = AuditEventBuilder.lot_changed(
            action=action,
            lot_id=lot_id,
            asset_id=asset_id,
            units_delta=units_delta,
            invested_delta=invested_delta,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_account_saved(
        self,
        account_id: UUID,
        name: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an account create or edit."""
        event = AuditEventBuilder.account_saved(
            account_id=account_id,
            name=name,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_market_price_updated(
        self,
        account_id: UUID,
        old_price: str,
        new_price: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a unit price change on a tradable asset."""
        event = AuditEventBuilder.market_price_updated(
            account_id=account_id,
            old_price=old_price,
            new_price=new_price,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_subscription_changed(
        self,
        subscription_id: UUID,
        name: str,
        deleted: bool = False,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a subscription save or delete."""
        event = AuditEventBuilder.subscription_changed(
            subscription_id=subscription_id,
            name=name,
            deleted=deleted,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_bill_materialized(
        self,
        subscription_id: UUID,
        transaction_id: UUID,
        due_on: str,
        amount: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a due bill inserted by the scheduler."""
        event = AuditEventBuilder.bill_materialized(
            subscription_id=subscription_id,
            transaction_id=transaction_id,
            due_on=due_on,
            amount=amount,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_schedule_truncated(
        self,
        subscription_id: UUID,
        cap: int,
        next_runner_date: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a catch-up loop that hit its iteration cap."""
        event = AuditEventBuilder.schedule_truncated(
            subscription_id=subscription_id,
            cap=cap,
            next_runner_date=next_runner_date,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_reconciliation_completed(
        self,
        reconciliation_id: UUID,
        transactions_replayed: int,
        accounts_updated: int,
        skipped: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a committed replay."""
        event = AuditEventBuilder.reconciliation_completed(
            reconciliation_id=reconciliation_id,
            transactions_replayed=transactions_replayed,
            accounts_updated=accounts_updated,
            skipped=skipped,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_reconciliation_failed(
        self,
        reconciliation_id: UUID,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an aborted replay."""
        event = AuditEventBuilder.reconciliation_failed(
            reconciliation_id=reconciliation_id,
            error_message=error_message,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_transaction_skipped(
        self,
        transaction_id: UUID,
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a transaction left out of a replay."""
        event = AuditEventBuilder.transaction_skipped(
            transaction_id=transaction_id,
            reason=reason,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_rates_refreshed(
        self,
        pivot_currency: str,
        currency_count: int,
    ) -> None:
        """Log a successful rate refresh."""
        event = AuditEventBuilder.rates_refreshed(
            pivot_currency=pivot_currency,
            currency_count=currency_count,
        )
        await self.log(event)

    async def log_rates_degraded(
        self,
        error_message: str,
    ) -> None:
        """Log a failed rate refresh."""
        event = AuditEventBuilder.rates_degraded(error_message=error_message)
        await self.log(event)

    async def log_rate_unavailable(
        self,
        message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an amount that had to be used unconverted."""
        event = AuditEventBuilder.rate_unavailable(
            message=message,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_metrics_computed(
        self,
        window_start: str,
        window_end: str,
        activity_ratio: str,
        coverage_ratio: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a metrics query."""
        event = AuditEventBuilder.metrics_computed(
            window_start=window_start,
            window_end=window_end,
            activity_ratio=activity_ratio,
            coverage_ratio=coverage_ratio,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        event = AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        )
        await self.log(event)


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new user action (e.g., adding a transaction).
    Pass it through the mutation and the replay it triggers.
    """
    return uuid4()
