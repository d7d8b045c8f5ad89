"""
Main Orchestrator for Lizhi Ledger

This module ties together all the components and defines the
end-to-end flows for:
1. Mutations (validate -> write -> audit -> reconcile)
2. Scheduler passes (due bills -> write -> reconcile)
3. Read-only queries (metrics, cost basis, next due date)

DESIGN DECISION: The orchestrator enforces the boundaries:
- One writer at a time: every mutation, replay and scheduler pass
  holds the same lock, so a replay never interleaves with a write
- Balances are only ever written by the replay
- Every mutation is audited under one correlation id, together with
  the replay it triggers

Read-only queries do not take the lock. They read a consistent store
snapshot, retried with tenacity if the store is briefly unavailable.
"""

import asyncio
from datetime import date
from decimal import Decimal
from typing import Callable, Iterable, Optional
from uuid import UUID, uuid4

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from lizhi.audit import AuditLogger, create_correlation_id
from lizhi.config import Settings, get_settings
from lizhi.metrics import MetricsWindow, PeriodMetricsAggregator
from lizhi.models.ledger import (
    Account,
    LotSide,
    StockLot,
    Subscription,
    Transaction,
    TransactionType,
)
from lizhi.models.reports import (
    CostBasisSummary,
    ImportResult,
    MetricsGranularity,
    MutationResult,
    PeriodMetrics,
    ReconciliationResult,
    SchedulerPassResult,
    ValidationResult,
)
from lizhi.portfolio import compute_cost_basis, lot_delta
from lizhi.reconciliation import BalanceReconciler
from lizhi.scheduling import RecurringBillScheduler
from lizhi.services.currency import CurrencyNormalizer, RateProvider
from lizhi.services.storage import (
    AuditStorageInterface,
    DuplicateError,
    InMemoryAuditStorage,
    InMemoryLedgerStore,
    LedgerSnapshot,
    LedgerStoreInterface,
    NotFoundError,
    StorageError,
)
from lizhi.validation import TransactionValidator


logger = structlog.get_logger(__name__)


class LedgerError(Exception):
    """Base exception for rejected ledger mutations."""
    pass


class LedgerValidationError(LedgerError):
    """A record failed validation. Nothing was written."""

    def __init__(self, result: ValidationResult):
        self.result = result
        messages = "; ".join(
            issue.message for issue in result.issues if issue.severity == "error"
        )
        super().__init__(f"Validation failed: {messages}")


class LinkedLotError(LedgerError):
    """A lot created from a transaction may only change through that transaction."""
    pass


class AssetTypeError(LedgerError):
    """Operation not valid for this kind of account."""
    pass


class LedgerEngine:
    """
    Single entry point for every ledger read and write.

    Flow of a mutation:
    1. Validate against current accounts (reject on errors)
    2. Write the record (and its linked lot) in one commit
    3. Audit the change
    4. Replay the whole log and commit derived balances
    """

    def __init__(
        self,
        store: LedgerStoreInterface,
        normalizer: Optional[CurrencyNormalizer] = None,
        scheduler: Optional[RecurringBillScheduler] = None,
        validator: Optional[TransactionValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], date]] = None,
        read_retry_wait=None,
    ):
        settings = settings or get_settings()
        self._app_settings = settings.app
        self._scheduler_settings = settings.scheduler
        self._clock = clock or date.today

        self._store = store
        self._normalizer = normalizer or CurrencyNormalizer(settings=settings.currency)
        self._scheduler = scheduler or RecurringBillScheduler(self._scheduler_settings)
        self._validator = validator or TransactionValidator(self._app_settings, self._clock)
        self._audit_logger = audit_logger or AuditLogger()  # Local-only logging
        self._reconciler = BalanceReconciler(store, self._normalizer, self._app_settings)
        self._aggregator = PeriodMetricsAggregator(self._normalizer, self._app_settings)
        self._read_retry_wait = read_retry_wait or wait_exponential(multiplier=0.1, max=2)

        self._lock = asyncio.Lock()

    @property
    def store(self) -> LedgerStoreInterface:
        return self._store

    @property
    def normalizer(self) -> CurrencyNormalizer:
        return self._normalizer

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    async def reconcile(self, correlation_id: Optional[UUID] = None) -> ReconciliationResult:
        """Replay the full log. Never raises."""
        correlation_id = correlation_id or create_correlation_id()
        async with self._lock:
            return await self._reconcile_locked(correlation_id)

    async def _reconcile_locked(self, correlation_id: UUID) -> ReconciliationResult:
        result = await self._reconciler.reconcile()

        if not result.success:
            await self._audit_logger.log_reconciliation_failed(
                reconciliation_id=result.reconciliation_id,
                error_message=result.error_message or "unknown error",
                correlation_id=correlation_id,
            )
            return result

        for skipped in result.skipped:
            await self._audit_logger.log_transaction_skipped(
                transaction_id=skipped.transaction_id,
                reason=skipped.reason,
                correlation_id=correlation_id,
            )
        await self._audit_logger.log_reconciliation_completed(
            reconciliation_id=result.reconciliation_id,
            transactions_replayed=result.transactions_replayed,
            accounts_updated=len(result.accounts),
            skipped=len(result.skipped),
            correlation_id=correlation_id,
        )
        return result

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    @staticmethod
    def _lot_for(tx: Transaction, lot_id: Optional[UUID] = None) -> StockLot:
        """The buy lot an Asset Purchase implies."""
        fees = tx.fees or Decimal("0")
        if tx.price_per_unit is not None:
            price = tx.price_per_unit
        else:
            price = max((tx.amount - fees) / tx.units, Decimal("0"))

        return StockLot(
            id=lot_id or uuid4(),
            asset_id=tx.target_asset_id,
            transaction_id=tx.id,
            side=LotSide.BUY,
            units=tx.units,
            price_per_unit=price,
            fees=fees,
            traded_on=tx.occurred_on,
            currency=tx.currency,
        )

    async def _linked_lots(self, transaction_id: UUID) -> list[StockLot]:
        return await self._store.fetch(
            StockLot, lambda lot: lot.transaction_id == transaction_id
        )

    async def _validate(self, tx: Transaction) -> ValidationResult:
        accounts = await self._store.fetch(Account)
        result = self._validator.validate(tx, accounts)
        if result.has_errors:
            raise LedgerValidationError(result)
        return result

    async def _audit_lot(
        self,
        action: str,
        old: Optional[StockLot],
        new: Optional[StockLot],
        correlation_id: UUID,
    ):
        delta = lot_delta(old, new)
        lot = new or old
        await self._audit_logger.log_lot_changed(
            action=action,
            lot_id=lot.id,
            asset_id=lot.asset_id,
            units_delta=str(delta.units),
            invested_delta=str(delta.invested),
            correlation_id=correlation_id,
        )
        return delta

    async def add_transaction(
        self,
        tx: Transaction,
        correlation_id: Optional[UUID] = None,
    ) -> MutationResult:
        """
        Insert a transaction and replay.

        An Asset Purchase also creates its linked buy lot.

        Raises:
            LedgerValidationError: If a destination or target is invalid
            DuplicateError: If the id is already used
        """
        correlation_id = correlation_id or create_correlation_id()

        async with self._lock:
            validation = await self._validate(tx)

            lot = self._lot_for(tx) if tx.type == TransactionType.ASSET_PURCHASE else None
            await self._store.commit(inserts=[tx] + ([lot] if lot else []))

            await self._audit_logger.log_transaction_changed(
                action="added",
                transaction_id=tx.id,
                transaction_type=tx.type.value,
                amount=str(tx.amount),
                currency=tx.currency,
                correlation_id=correlation_id,
            )
            delta = None
            if lot is not None:
                delta = await self._audit_lot("added", None, lot, correlation_id)

            reconciliation = await self._reconcile_locked(correlation_id)

        return MutationResult(
            entity_id=tx.id,
            correlation_id=correlation_id,
            warnings=validation.warnings,
            lot_delta=delta,
            reconciliation=reconciliation,
        )

    async def update_transaction(
        self,
        tx: Transaction,
        correlation_id: Optional[UUID] = None,
    ) -> MutationResult:
        """
        Replace a transaction (same id) and replay.

        The linked lot follows the transaction: it is updated in place,
        created if the transaction became an Asset Purchase, or removed
        if it stopped being one.

        Raises:
            NotFoundError: If no transaction has this id
            LedgerValidationError: If a destination or target is invalid
        """
        correlation_id = correlation_id or create_correlation_id()

        async with self._lock:
            if await self._store.get(Transaction, tx.id) is None:
                raise NotFoundError(f"Transaction not found: {tx.id}")
            validation = await self._validate(tx)

            old_lots = await self._linked_lots(tx.id)
            old_lot = old_lots[0] if old_lots else None

            inserts: list = []
            updates: list = [tx]
            deletes: list = []
            new_lot = None
            if tx.type == TransactionType.ASSET_PURCHASE:
                new_lot = self._lot_for(tx, old_lot.id if old_lot else None)
                (updates if old_lot else inserts).append(new_lot)
                deletes.extend((StockLot, lot.id) for lot in old_lots[1:])
            else:
                deletes.extend((StockLot, lot.id) for lot in old_lots)

            await self._store.commit(inserts=inserts, updates=updates, deletes=deletes)

            await self._audit_logger.log_transaction_changed(
                action="updated",
                transaction_id=tx.id,
                transaction_type=tx.type.value,
                amount=str(tx.amount),
                currency=tx.currency,
                correlation_id=correlation_id,
            )
            delta = None
            if old_lot is not None or new_lot is not None:
                action = "updated" if old_lot and new_lot else ("added" if new_lot else "deleted")
                delta = await self._audit_lot(action, old_lot, new_lot, correlation_id)

            reconciliation = await self._reconcile_locked(correlation_id)

        return MutationResult(
            entity_id=tx.id,
            correlation_id=correlation_id,
            warnings=validation.warnings,
            lot_delta=delta,
            reconciliation=reconciliation,
        )

    async def delete_transaction(
        self,
        transaction_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> MutationResult:
        """
        Delete a transaction and its linked lot, then replay.

        Raises:
            NotFoundError: If no transaction has this id
        """
        correlation_id = correlation_id or create_correlation_id()

        async with self._lock:
            tx = await self._store.get(Transaction, transaction_id)
            if tx is None:
                raise NotFoundError(f"Transaction not found: {transaction_id}")

            lots = await self._linked_lots(transaction_id)
            await self._store.commit(
                deletes=[(Transaction, transaction_id)] + [(StockLot, lot.id) for lot in lots]
            )

            await self._audit_logger.log_transaction_changed(
                action="deleted",
                transaction_id=tx.id,
                transaction_type=tx.type.value,
                amount=str(tx.amount),
                currency=tx.currency,
                correlation_id=correlation_id,
            )
            delta = None
            for lot in lots:
                delta = await self._audit_lot("deleted", lot, None, correlation_id)

            reconciliation = await self._reconcile_locked(correlation_id)

        return MutationResult(
            entity_id=transaction_id,
            correlation_id=correlation_id,
            lot_delta=delta,
            reconciliation=reconciliation,
        )

    async def import_transactions(
        self,
        transactions: Iterable[Transaction],
        correlation_id: Optional[UUID] = None,
    ) -> ImportResult:
        """
        Insert a batch of transactions with a single commit and replay.

        The whole batch is validated first; one invalid record rejects
        the batch and nothing is written.

        Raises:
            LedgerValidationError: For the first invalid record
            DuplicateError: If any id is already used
        """
        correlation_id = correlation_id or create_correlation_id()
        transactions = list(transactions)

        async with self._lock:
            accounts = await self._store.fetch(Account)
            warnings: list[str] = []
            inserts: list = []
            lots_created = 0

            for index, tx in enumerate(transactions, start=1):
                result = self._validator.validate(tx, accounts)
                if result.has_errors:
                    raise LedgerValidationError(result)
                warnings.extend(f"{tx.id}: {warning}" for warning in result.warnings)

                inserts.append(tx)
                if tx.type == TransactionType.ASSET_PURCHASE:
                    inserts.append(self._lot_for(tx))
                    lots_created += 1

                if index % self._app_settings.replay_yield_interval == 0:
                    await asyncio.sleep(0)

            await self._store.commit(inserts=inserts)
            await self._audit_logger.log_transactions_imported(
                count=len(transactions),
                correlation_id=correlation_id,
            )

            reconciliation = await self._reconcile_locked(correlation_id)

        return ImportResult(
            correlation_id=correlation_id,
            imported=[tx.id for tx in transactions],
            lots_created=lots_created,
            warnings=warnings,
            reconciliation=reconciliation,
        )

    # =========================================================================
    # ACCOUNTS
    # =========================================================================

    async def _check_code_unique(self, account: Account) -> None:
        if not account.code:
            return
        clashes = await self._store.fetch(
            Account, lambda a: a.code == account.code and a.id != account.id
        )
        if clashes:
            raise DuplicateError(f"Account code already in use: {account.code}")

    @staticmethod
    def _keep_derived(account: Account, stored: Optional[Account] = None) -> Account:
        """
        Copy of `account` with replay-owned fields taken from the store.

        A new account starts at its reset point. A unit price is
        user-editable, so tradable market values pass through.
        """
        derived = {
            "invested_capital": stored.invested_capital if stored else Decimal("0"),
        }
        if account.is_cash_like:
            derived["holdings"] = Decimal("1")
            derived["market_value"] = (
                stored.market_value
                if stored is not None and stored.is_cash_like
                else account.initial_balance
            )
        else:
            derived["holdings"] = (
                stored.holdings
                if stored is not None and stored.is_tradable
                else account.initial_holdings
            )
        return account.model_copy(update=derived)

    async def add_account(
        self,
        account: Account,
        correlation_id: Optional[UUID] = None,
    ) -> MutationResult:
        """
        Create an account and replay.

        Raises:
            DuplicateError: If the id or short code is already used
        """
        correlation_id = correlation_id or create_correlation_id()

        async with self._lock:
            await self._check_code_unique(account)
            await self._store.insert(self._keep_derived(account))
            await self._audit_logger.log_account_saved(
                account_id=account.id,
                name=account.name,
                correlation_id=correlation_id,
            )
            reconciliation = await self._reconcile_locked(correlation_id)

        return MutationResult(
            entity_id=account.id,
            correlation_id=correlation_id,
            reconciliation=reconciliation,
        )

    async def update_account(
        self,
        account: Account,
        correlation_id: Optional[UUID] = None,
    ) -> MutationResult:
        """
        Replace an account's user-editable fields and replay.

        Derived fields (holdings, cash balance, invested capital) keep
        their stored values until the replay recomputes them, so a
        failed replay never leaves caller-supplied balances behind.

        Raises:
            NotFoundError: If no account has this id
            DuplicateError: If the short code is used by another account
        """
        correlation_id = correlation_id or create_correlation_id()

        async with self._lock:
            stored = await self._store.get(Account, account.id)
            if stored is None:
                raise NotFoundError(f"Account not found: {account.id}")
            await self._check_code_unique(account)
            await self._store.save(self._keep_derived(account, stored))
            await self._audit_logger.log_account_saved(
                account_id=account.id,
                name=account.name,
                correlation_id=correlation_id,
            )
            reconciliation = await self._reconcile_locked(correlation_id)

        return MutationResult(
            entity_id=account.id,
            correlation_id=correlation_id,
            reconciliation=reconciliation,
        )

    async def update_market_price(
        self,
        account_id: UUID,
        price: Decimal,
        correlation_id: Optional[UUID] = None,
    ) -> MutationResult:
        """
        Set the unit price of a tradable asset.

        Holdings are untouched, so only valuation (and with it the
        coverage ratio) changes.

        Raises:
            NotFoundError: If no account has this id
            AssetTypeError: If the account is cash-like
        """
        correlation_id = correlation_id or create_correlation_id()

        async with self._lock:
            account = await self._store.get(Account, account_id)
            if account is None:
                raise NotFoundError(f"Account not found: {account_id}")
            if not account.is_tradable:
                raise AssetTypeError(
                    f"{account.name} is a {account.type.value} account; its value comes from transactions"
                )

            old_price = account.market_value
            account.market_value = price
            await self._store.save(account)
            await self._audit_logger.log_market_price_updated(
                account_id=account.id,
                old_price=str(old_price),
                new_price=str(price),
                correlation_id=correlation_id,
            )
            reconciliation = await self._reconcile_locked(correlation_id)

        return MutationResult(
            entity_id=account_id,
            correlation_id=correlation_id,
            reconciliation=reconciliation,
        )

    # =========================================================================
    # STOCK LOTS
    # =========================================================================

    async def _validate_lot(self, lot: StockLot) -> ValidationResult:
        accounts = await self._store.fetch(Account)
        result = self._validator.validate_lot(lot, accounts)
        if result.has_errors:
            raise LedgerValidationError(result)
        return result

    async def add_lot(
        self,
        lot: StockLot,
        correlation_id: Optional[UUID] = None,
    ) -> MutationResult:
        """
        Record a standalone buy or sell and replay.

        Raises:
            LinkedLotError: If the lot claims to come from a transaction
            LedgerValidationError: If the asset is missing or cash-like
        """
        correlation_id = correlation_id or create_correlation_id()
        if lot.transaction_id is not None:
            raise LinkedLotError("Lots linked to a transaction are created by that transaction")

        async with self._lock:
            await self._validate_lot(lot)
            await self._store.insert(lot)
            delta = await self._audit_lot("added", None, lot, correlation_id)
            reconciliation = await self._reconcile_locked(correlation_id)

        return MutationResult(
            entity_id=lot.id,
            correlation_id=correlation_id,
            lot_delta=delta,
            reconciliation=reconciliation,
        )

    async def update_lot(
        self,
        lot: StockLot,
        correlation_id: Optional[UUID] = None,
    ) -> MutationResult:
        """
        Replace a standalone lot and replay.

        The returned `lot_delta` is the change in units and invested
        capital between the old and new versions.

        Raises:
            NotFoundError: If no lot has this id
            LinkedLotError: If the lot belongs to a transaction
        """
        correlation_id = correlation_id or create_correlation_id()

        async with self._lock:
            existing = await self._store.get(StockLot, lot.id)
            if existing is None:
                raise NotFoundError(f"Stock lot not found: {lot.id}")
            if existing.transaction_id is not None or lot.transaction_id is not None:
                raise LinkedLotError("Edit the originating transaction instead")

            await self._validate_lot(lot)
            await self._store.save(lot)
            delta = await self._audit_lot("updated", existing, lot, correlation_id)
            reconciliation = await self._reconcile_locked(correlation_id)

        return MutationResult(
            entity_id=lot.id,
            correlation_id=correlation_id,
            lot_delta=delta,
            reconciliation=reconciliation,
        )

    async def delete_lot(
        self,
        lot_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> MutationResult:
        """
        Delete a standalone lot and replay.

        Raises:
            NotFoundError: If no lot has this id
            LinkedLotError: If the lot belongs to a transaction
        """
        correlation_id = correlation_id or create_correlation_id()

        async with self._lock:
            existing = await self._store.get(StockLot, lot_id)
            if existing is None:
                raise NotFoundError(f"Stock lot not found: {lot_id}")
            if existing.transaction_id is not None:
                raise LinkedLotError("Delete the originating transaction instead")

            await self._store.delete(StockLot, lot_id)
            delta = await self._audit_lot("deleted", existing, None, correlation_id)
            reconciliation = await self._reconcile_locked(correlation_id)

        return MutationResult(
            entity_id=lot_id,
            correlation_id=correlation_id,
            lot_delta=delta,
            reconciliation=reconciliation,
        )

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    async def add_subscription(
        self,
        rule: Subscription,
        correlation_id: Optional[UUID] = None,
    ) -> MutationResult:
        """Store a recurring rule. Bills appear on the next scheduler pass."""
        correlation_id = correlation_id or create_correlation_id()

        async with self._lock:
            await self._store.insert(rule)
            await self._audit_logger.log_subscription_changed(
                subscription_id=rule.id,
                name=rule.name,
                correlation_id=correlation_id,
            )

        return MutationResult(entity_id=rule.id, correlation_id=correlation_id)

    async def update_subscription(
        self,
        rule: Subscription,
        correlation_id: Optional[UUID] = None,
    ) -> MutationResult:
        """
        Replace a recurring rule.

        Raises:
            NotFoundError: If no rule has this id
        """
        correlation_id = correlation_id or create_correlation_id()

        async with self._lock:
            if await self._store.get(Subscription, rule.id) is None:
                raise NotFoundError(f"Subscription not found: {rule.id}")
            await self._store.save(rule)
            await self._audit_logger.log_subscription_changed(
                subscription_id=rule.id,
                name=rule.name,
                correlation_id=correlation_id,
            )

        return MutationResult(entity_id=rule.id, correlation_id=correlation_id)

    async def delete_subscription(
        self,
        subscription_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> MutationResult:
        """
        Delete a recurring rule. Bills it already created are kept.

        Raises:
            NotFoundError: If no rule has this id
        """
        correlation_id = correlation_id or create_correlation_id()

        async with self._lock:
            rule = await self._store.get(Subscription, subscription_id)
            if rule is None:
                raise NotFoundError(f"Subscription not found: {subscription_id}")
            await self._store.delete(Subscription, subscription_id)
            await self._audit_logger.log_subscription_changed(
                subscription_id=rule.id,
                name=rule.name,
                deleted=True,
                correlation_id=correlation_id,
            )

        return MutationResult(entity_id=subscription_id, correlation_id=correlation_id)

    # =========================================================================
    # SCHEDULER
    # =========================================================================

    async def run_scheduler_pass(
        self,
        today: Optional[date] = None,
        correlation_id: Optional[UUID] = None,
    ) -> SchedulerPassResult:
        """
        Materialize every due bill of every active rule, then replay.

        Bills and advanced runner dates are written in one commit.
        Never raises.
        """
        today = today or self._clock()
        correlation_id = correlation_id or create_correlation_id()

        async with self._lock:
            try:
                rules = await self._store.fetch(Subscription, lambda r: r.is_active)

                bills: list[Transaction] = []
                advanced: list[Subscription] = []
                truncated: list[Subscription] = []
                for rule in rules:
                    due = self._scheduler.due_bills(rule, today)
                    if due.truncated:
                        truncated.append(rule)
                    if due.transactions:
                        bills.extend(due.transactions)
                        rule.runner_date = due.next_runner_date
                        advanced.append(rule)

                if bills:
                    await self._store.commit(inserts=bills, updates=advanced)
            except Exception as e:
                logger.error("scheduler_pass_failed", error=str(e))
                await self._audit_logger.log_error(
                    error_type=type(e).__name__,
                    error_message=str(e),
                    details={"operation": "scheduler_pass"},
                    correlation_id=correlation_id,
                )
                return SchedulerPassResult(
                    success=False,
                    error_message=str(e),
                    run_on=today,
                )

            for bill in bills:
                await self._audit_logger.log_bill_materialized(
                    subscription_id=bill.subscription_id,
                    transaction_id=bill.id,
                    due_on=bill.occurred_on.isoformat(),
                    amount=str(bill.amount),
                    correlation_id=correlation_id,
                )
            for rule in truncated:
                await self._audit_logger.log_schedule_truncated(
                    subscription_id=rule.id,
                    cap=self._scheduler.max_catchup_iterations,
                    next_runner_date=rule.runner_date.isoformat(),
                    correlation_id=correlation_id,
                )

            reconciliation = None
            if bills:
                reconciliation = await self._reconcile_locked(correlation_id)

        return SchedulerPassResult(
            success=reconciliation is None or reconciliation.success,
            error_message=reconciliation.error_message if reconciliation else None,
            run_on=today,
            rules_processed=len(rules),
            bills_created=[bill.id for bill in bills],
            truncated_rules=[rule.id for rule in truncated],
            reconciliation=reconciliation,
        )

    async def run_scheduler_periodically(
        self,
        stop_event: asyncio.Event,
        interval_seconds: Optional[float] = None,
    ) -> int:
        """
        Refresh rates and run scheduler passes until `stop_event` is set.

        Returns:
            Number of passes run
        """
        interval = interval_seconds or self._scheduler_settings.interval_seconds
        passes = 0

        while not stop_event.is_set():
            await self.refresh_rates()
            await self.run_scheduler_pass()
            passes += 1
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        logger.info("scheduler_stopped", passes=passes)
        return passes

    async def effective_next_date(
        self,
        subscription_id: UUID,
        today: Optional[date] = None,
    ) -> date:
        """
        Next due date of a rule, for display. Nothing is written.

        Raises:
            NotFoundError: If no rule has this id
        """
        rule = await self._store.get(Subscription, subscription_id)
        if rule is None:
            raise NotFoundError(f"Subscription not found: {subscription_id}")
        return self._scheduler.effective_next_date(rule, today or self._clock())

    # =========================================================================
    # CURRENCY
    # =========================================================================

    async def refresh_rates(self, force: bool = False) -> bool:
        """
        Refresh the live rate table.

        Runs outside the writer lock so a slow provider never blocks
        balance computation. A newly loaded table triggers a replay,
        since converted balances depend on it.

        Returns:
            True if a live table is in use afterwards
        """
        previous = self._normalizer.last_updated
        live = await self._normalizer.refresh_rates(force=force)

        if not live:
            await self._audit_logger.log_rates_degraded(
                error_message="Using fallback rate table",
            )
            return False

        if self._normalizer.last_updated != previous:
            await self._audit_logger.log_rates_refreshed(
                pivot_currency=self._normalizer.pivot_currency,
                currency_count=len(self._normalizer.available_currencies),
            )
            await self.reconcile()
        return True

    # =========================================================================
    # READ-ONLY QUERIES
    # =========================================================================

    async def _read_snapshot(self) -> LedgerSnapshot:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._app_settings.snapshot_read_attempts),
            wait=self._read_retry_wait,
            retry=retry_if_exception_type(StorageError),
            reraise=True,
        ):
            with attempt:
                return await self._store.snapshot()

    async def compute_metrics(
        self,
        anchor: Optional[date] = None,
        granularity: MetricsGranularity = MetricsGranularity.MONTH,
        correlation_id: Optional[UUID] = None,
    ) -> PeriodMetrics:
        """
        Activity and coverage ratios for the month or year containing `anchor`.

        Never raises. If the store cannot be read the ratios are zero
        and the failure is reported in `warnings`.
        """
        window = MetricsWindow.for_period(anchor or self._clock(), granularity)

        try:
            snapshot = await self._read_snapshot()
        except Exception as e:
            logger.error("metrics_read_failed", error=str(e))
            return PeriodMetrics(
                window_start=window.start,
                window_end=window.end,
                granularity=window.granularity,
                reporting_currency=self._aggregator.reporting_currency,
                trailing_start=window.trailing_start,
                warnings=[f"Could not read ledger: {e}"],
            )

        metrics = self._aggregator.compute(snapshot.transactions, snapshot.accounts, window)

        for warning in metrics.warnings:
            await self._audit_logger.log_rate_unavailable(
                message=warning,
                correlation_id=correlation_id,
            )
        await self._audit_logger.log_metrics_computed(
            window_start=window.start.isoformat(),
            window_end=window.end.isoformat(),
            activity_ratio=str(metrics.activity_ratio),
            coverage_ratio=str(metrics.coverage_ratio),
            correlation_id=correlation_id,
        )
        return metrics

    def _in_currency(self, lot: StockLot, currency: str) -> StockLot:
        if lot.currency == currency:
            return lot
        return lot.model_copy(update={
            "price_per_unit": self._normalizer.convert(lot.price_per_unit, lot.currency, currency),
            "fees": self._normalizer.convert(lot.fees, lot.currency, currency),
            "currency": currency,
        })

    async def cost_basis(self, asset_id: UUID) -> CostBasisSummary:
        """
        Weighted-average cost basis of one asset, in the asset's currency.

        Raises:
            NotFoundError: If no account has this id
        """
        snapshot = await self._read_snapshot()
        asset = next((a for a in snapshot.accounts if a.id == asset_id), None)
        if asset is None:
            raise NotFoundError(f"Asset not found: {asset_id}")

        lots = [
            self._in_currency(lot, asset.currency)
            for lot in snapshot.lots
            if lot.asset_id == asset_id
        ]
        return compute_cost_basis(lots, current_value=asset.total_value, asset_id=asset_id)


def create_ledger_engine(
    store: Optional[LedgerStoreInterface] = None,
    rate_provider: Optional[RateProvider] = None,
    audit_storage: Optional[AuditStorageInterface] = None,
    clock: Optional[Callable[[], date]] = None,
) -> LedgerEngine:
    """
    Factory function to create a fully wired engine.

    Args:
        store: Ledger storage. Defaults to in-memory.
        rate_provider: Live rate source. Without one the fallback
                       rate table is used.
        audit_storage: Audit persistence. Defaults to in-memory.
        clock: Returns today's date.

    Returns:
        LedgerEngine
    """
    settings = get_settings()
    audit_logger = AuditLogger(audit_storage or InMemoryAuditStorage())
    normalizer = CurrencyNormalizer(provider=rate_provider, settings=settings.currency)

    return LedgerEngine(
        store=store or InMemoryLedgerStore(),
        normalizer=normalizer,
        audit_logger=audit_logger,
        settings=settings,
        clock=clock,
    )
