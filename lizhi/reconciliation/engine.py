"""
Balance Reconciliation Engine

The only code path allowed to write account balances and holdings.

Replay algorithm:
1. Reset every account to its recorded opening state
   (cash-like: holdings 1, market value = initial balance;
   tradable: holdings = initial holdings, unit price untouched)
2. Apply every transaction in stored order
   - Income credits its source account, every other type debits it
   - Transfer also credits the destination account
   - Asset Purchase also adds units to the target asset
3. Add the signed units of stock lots not created from a transaction,
   and derive invested capital from all lots of each asset
4. Stamp every account and commit the batch in one atomic call

DESIGN DECISION: A transaction with a bad reference is skipped whole.
Applying the debit of a transfer whose destination is missing would
leave the ledger out of balance, so nothing of it is applied and the
skip is reported. One bad record never aborts the replay.

Any failure while reading, replaying or committing aborts the whole
run; the previously committed state stays untouched.
"""

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog

from lizhi.config import AppSettings, get_settings
from lizhi.models.ledger import Account, StockLot, Transaction, TransactionType
from lizhi.models.reports import ReconciliationResult, SkippedTransaction
from lizhi.portfolio import signed_amount
from lizhi.services.currency import CurrencyNormalizer
from lizhi.services.storage import LedgerSnapshot, LedgerStoreInterface


logger = structlog.get_logger(__name__)


class BalanceReconciler:
    """
    Full-replay derivation of balances and holdings.

    Callers must serialize `reconcile` against every other writer;
    the orchestrator does this with a single lock.
    """

    def __init__(
        self,
        store: LedgerStoreInterface,
        normalizer: CurrencyNormalizer,
        settings: Optional[AppSettings] = None,
    ):
        self._store = store
        self._normalizer = normalizer
        self._settings = settings or get_settings().app

    async def reconcile(self) -> ReconciliationResult:
        """
        Read the store, replay, and commit the derived accounts.

        Never raises. On failure `success` is False and nothing was
        written.
        """
        started_at = datetime.utcnow()

        try:
            snapshot = await self._store.snapshot()
            result = await self.replay(snapshot)
            await self._store.commit(updates=result.accounts)
        except Exception as e:
            logger.error(
                "reconciliation_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return ReconciliationResult(
                started_at=started_at,
                completed_at=datetime.utcnow(),
                success=False,
                error_message=str(e),
            )

        result.started_at = started_at
        result.completed_at = datetime.utcnow()
        logger.info(
            "reconciliation_completed",
            reconciliation_id=str(result.reconciliation_id),
            transactions_replayed=result.transactions_replayed,
            lots_applied=result.lots_applied,
            accounts_updated=len(result.accounts),
            skipped=len(result.skipped),
        )
        return result

    async def replay(self, snapshot: LedgerSnapshot) -> ReconciliationResult:
        """
        Derive account state from a snapshot without writing anything.

        The returned accounts are fresh copies; the snapshot is not
        modified.
        """
        accounts = [self._reset(account) for account in snapshot.accounts]
        by_code = {account.code: account for account in accounts if account.code}
        by_id = {account.id: account for account in accounts}

        skipped: list[SkippedTransaction] = []
        warnings: list[str] = []
        replayed = 0

        for index, tx in enumerate(snapshot.transactions, start=1):
            reason = self._apply(tx, by_code, by_id, warnings)
            if reason is None:
                replayed += 1
            else:
                skipped.append(SkippedTransaction(transaction_id=tx.id, reason=reason))
                logger.warning(
                    "transaction_skipped",
                    transaction_id=str(tx.id),
                    reason=reason,
                )

            if index % self._settings.replay_yield_interval == 0:
                await asyncio.sleep(0)

        lots_applied = self._apply_lots(snapshot.lots, by_id, warnings)

        now = datetime.utcnow()
        for account in accounts:
            account.last_updated = now

        return ReconciliationResult(
            success=True,
            transactions_replayed=replayed,
            lots_applied=lots_applied,
            accounts=accounts,
            skipped=skipped,
            warnings=warnings,
        )

    # =========================================================================
    # STEPS
    # =========================================================================

    @staticmethod
    def _reset(account: Account) -> Account:
        reset = account.model_copy(deep=True)
        if reset.is_cash_like:
            reset.holdings = Decimal("1")
            reset.market_value = reset.initial_balance
        else:
            reset.holdings = reset.initial_holdings
        reset.invested_capital = Decimal("0")
        return reset

    def _convert(
        self,
        amount: Decimal,
        currency: str,
        account: Account,
        label: str,
        warnings: list[str],
    ) -> Decimal:
        result = self._normalizer.convert_with_status(amount, currency, account.currency)
        if result.rate_unavailable:
            warnings.append(
                f"{label} applied unconverted to {account.currency}: {result.message}"
            )
        return result.amount

    def _apply(
        self,
        tx: Transaction,
        by_code: dict[str, Account],
        by_id: dict,
        warnings: list[str],
    ) -> Optional[str]:
        """
        Apply one transaction. Returns a skip reason, or None if applied.

        All references are resolved before any account is touched.
        """
        money_account = None
        if tx.source_account:
            money_account = by_code.get(tx.source_account)
            if money_account is None:
                return f"Unknown source account: {tx.source_account}"
            if money_account.is_tradable:
                return f"Source account {tx.source_account} is a tradable asset"

        destination = None
        if tx.type == TransactionType.TRANSFER:
            destination = by_code.get(tx.destination_account)
            if destination is None:
                return f"Unknown destination account: {tx.destination_account}"
            if destination.is_tradable:
                return f"Destination account {tx.destination_account} is a tradable asset"

        target = None
        if tx.type == TransactionType.ASSET_PURCHASE:
            target = by_id.get(tx.target_asset_id)
            if target is None:
                return f"Unknown target asset: {tx.target_asset_id}"
            if not target.is_tradable:
                return f"Target asset {target.name} is not tradable"

        if money_account is not None:
            amount = self._convert(
                tx.amount, tx.currency, money_account, f"Transaction {tx.id}", warnings
            )
            if tx.type == TransactionType.INCOME:
                money_account.market_value += amount
            else:
                money_account.market_value -= amount

        if destination is not None:
            destination.market_value += self._convert(
                tx.amount, tx.currency, destination, f"Transaction {tx.id}", warnings
            )

        if target is not None:
            target.holdings += tx.units

        return None

    def _apply_lots(
        self,
        lots: list[StockLot],
        by_id: dict,
        warnings: list[str],
    ) -> int:
        """Fold lots into holdings and invested capital. Returns lots applied."""
        applied = 0
        for lot in lots:
            asset = by_id.get(lot.asset_id)
            if asset is None or not asset.is_tradable:
                warnings.append(
                    f"Stock lot {lot.id} references missing or non-tradable asset {lot.asset_id}"
                )
                logger.warning(
                    "lot_skipped",
                    lot_id=str(lot.id),
                    asset_id=str(lot.asset_id),
                )
                continue

            # Linked lots already contributed units through their transaction
            if lot.transaction_id is None:
                asset.holdings += lot.signed_units

            asset.invested_capital += self._convert(
                signed_amount(lot), lot.currency, asset, f"Stock lot {lot.id}", warnings
            )
            applied += 1
        return applied
