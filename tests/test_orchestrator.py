"""
Integration tests for the ledger engine.

Every test runs against the in-memory store, the fallback rate table
(or a static provider) and a fixed clock.
"""

import asyncio
import pytest
from datetime import date
from decimal import Decimal
from uuid import uuid4

from tenacity import wait_none

from lizhi.audit import AuditLogger
from lizhi.config import CurrencySettings
from lizhi.models.audit import AuditEventType
from lizhi.models.ledger import (
    Account,
    AssetType,
    LotSide,
    StockLot,
    Subscription,
    Transaction,
    TransactionType,
)
from lizhi.orchestrator import (
    AssetTypeError,
    LedgerEngine,
    LedgerValidationError,
    LinkedLotError,
    create_ledger_engine,
)
from lizhi.services.currency import CurrencyNormalizer, StaticRateProvider
from lizhi.services.storage import (
    DuplicateError,
    InMemoryAuditStorage,
    InMemoryLedgerStore,
    NotFoundError,
    StorageError,
)


TODAY = date(2025, 6, 15)


class UnreadableStore(InMemoryLedgerStore):
    """Store whose snapshot always fails."""

    def __init__(self):
        super().__init__()
        self.snapshot_calls = 0

    async def snapshot(self):
        self.snapshot_calls += 1
        raise StorageError("connection reset")


class ReplayCommitFailingStore(InMemoryLedgerStore):
    """Store whose commit fails after a snapshot once `fail_replay` is set."""

    def __init__(self):
        super().__init__()
        self.fail_replay = False
        self._after_snapshot = False

    async def snapshot(self):
        self._after_snapshot = True
        return await super().snapshot()

    async def commit(self, inserts=(), updates=(), deletes=()):
        replaying, self._after_snapshot = self._after_snapshot, False
        if self.fail_replay and replaying:
            raise StorageError("disk full")
        await super().commit(inserts=inserts, updates=updates, deletes=deletes)


def make_engine(store=None, audit_storage=None, provider=None) -> LedgerEngine:
    settings = CurrencySettings(base_currency="AUD", fetch_attempts=1)
    return LedgerEngine(
        store=store or InMemoryLedgerStore(),
        normalizer=CurrencyNormalizer(provider=provider, settings=settings, retry_wait=wait_none()),
        audit_logger=AuditLogger(audit_storage or InMemoryAuditStorage()),
        clock=lambda: TODAY,
        read_retry_wait=wait_none(),
    )


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
def engine(audit_storage):
    return make_engine(audit_storage=audit_storage)


@pytest.fixture
def cba():
    return Account(name="Everyday", code="CBA", initial_balance=Decimal("1000"))


@pytest.fixture
def vas():
    return Account(name="VAS", type=AssetType.STOCK, market_value=Decimal("100"))


def income(amount, day=date(2025, 6, 2), account="CBA", currency="AUD"):
    return Transaction(
        amount=Decimal(amount),
        type=TransactionType.INCOME,
        occurred_on=day,
        source_account=account,
        currency=currency,
    )


def expense(amount, day=date(2025, 6, 3), account="CBA"):
    return Transaction(
        amount=Decimal(amount),
        type=TransactionType.EXPENSE,
        occurred_on=day,
        source_account=account,
    )


def purchase(asset, amount="1000", units="10", tx_id=None):
    return Transaction(
        id=tx_id or uuid4(),
        amount=Decimal(amount),
        type=TransactionType.ASSET_PURCHASE,
        occurred_on=date(2025, 6, 4),
        source_account="CBA",
        target_asset_id=asset.id,
        units=Decimal(units),
    )


async def balance(engine, account):
    stored = await engine.store.get(Account, account.id)
    return stored.total_value


class TestTransactionFlow:
    """Tests for add, update and delete of transactions."""

    @pytest.mark.asyncio
    async def test_add_transaction_reconciles(self, engine, cba):
        await engine.add_account(cba)

        result = await engine.add_transaction(income("500"))

        assert result.reconciliation.success is True
        assert await balance(engine, cba) == Decimal("1500")

    @pytest.mark.asyncio
    async def test_invalid_destination_is_rejected(self, engine, cba):
        await engine.add_account(cba)
        bad = Transaction(
            amount=Decimal("10"),
            type=TransactionType.TRANSFER,
            occurred_on=TODAY,
            source_account="CBA",
            destination_account="GONE",
        )

        with pytest.raises(LedgerValidationError) as exc_info:
            await engine.add_transaction(bad)

        assert exc_info.value.result.has_errors is True
        assert await engine.store.fetch(Transaction) == []

    @pytest.mark.asyncio
    async def test_unknown_source_is_kept_with_warning(self, engine, cba):
        await engine.add_account(cba)

        result = await engine.add_transaction(expense("10", account="NOPE"))

        assert len(result.warnings) == 1
        assert len(result.reconciliation.skipped) == 1
        assert await balance(engine, cba) == Decimal("1000")

    @pytest.mark.asyncio
    async def test_update_and_delete(self, engine, cba):
        await engine.add_account(cba)
        tx = expense("100")
        await engine.add_transaction(tx)

        await engine.update_transaction(tx.model_copy(update={"amount": Decimal("250")}))
        assert await balance(engine, cba) == Decimal("750")

        await engine.delete_transaction(tx.id)
        assert await balance(engine, cba) == Decimal("1000")

    @pytest.mark.asyncio
    async def test_update_missing_transaction(self, engine):
        with pytest.raises(NotFoundError):
            await engine.update_transaction(expense("1"))
        with pytest.raises(NotFoundError):
            await engine.delete_transaction(uuid4())

    @pytest.mark.asyncio
    async def test_concurrent_writes_all_land(self, engine, cba):
        """Twenty interleaved mutations leave a consistent balance."""
        await engine.add_account(cba)

        await asyncio.gather(*(engine.add_transaction(income("10")) for _ in range(20)))

        assert await balance(engine, cba) == Decimal("1200")
        assert len(await engine.store.fetch(Transaction)) == 20


class TestLinkedLots:
    """Tests for the lot an asset purchase owns."""

    @pytest.mark.asyncio
    async def test_purchase_creates_linked_lot(self, engine, cba, vas):
        await engine.add_account(cba)
        await engine.add_account(vas)
        tx = purchase(vas)

        result = await engine.add_transaction(tx)

        lots = await engine.store.fetch(StockLot)
        assert len(lots) == 1
        assert lots[0].transaction_id == tx.id
        assert lots[0].price_per_unit == Decimal("100")
        assert result.lot_delta.units == Decimal("10")
        assert await balance(engine, cba) == Decimal("0")
        stored = await engine.store.get(Account, vas.id)
        assert stored.holdings == Decimal("10")
        assert stored.invested_capital == Decimal("1000")

    @pytest.mark.asyncio
    async def test_editing_purchase_updates_same_lot(self, engine, cba, vas):
        await engine.add_account(cba)
        await engine.add_account(vas)
        tx = purchase(vas)
        await engine.add_transaction(tx)
        lot_id = (await engine.store.fetch(StockLot))[0].id

        result = await engine.update_transaction(purchase(vas, amount="1200", units="12", tx_id=tx.id))

        lots = await engine.store.fetch(StockLot)
        assert [lot.id for lot in lots] == [lot_id]
        assert lots[0].units == Decimal("12")
        assert result.lot_delta.units == Decimal("2")
        assert result.lot_delta.invested == Decimal("200")
        assert (await engine.store.get(Account, vas.id)).holdings == Decimal("12")

    @pytest.mark.asyncio
    async def test_purchase_turned_expense_drops_lot(self, engine, cba, vas):
        await engine.add_account(cba)
        await engine.add_account(vas)
        tx = purchase(vas)
        await engine.add_transaction(tx)

        changed = expense("1000").model_copy(update={"id": tx.id})
        result = await engine.update_transaction(changed)

        assert await engine.store.fetch(StockLot) == []
        assert result.lot_delta.units == Decimal("-10")
        assert (await engine.store.get(Account, vas.id)).holdings == Decimal("0")

    @pytest.mark.asyncio
    async def test_deleting_purchase_deletes_lot(self, engine, cba, vas):
        await engine.add_account(cba)
        await engine.add_account(vas)
        tx = purchase(vas)
        await engine.add_transaction(tx)

        await engine.delete_transaction(tx.id)

        assert await engine.store.fetch(StockLot) == []
        assert await balance(engine, cba) == Decimal("1000")

    @pytest.mark.asyncio
    async def test_linked_lot_cannot_be_edited_directly(self, engine, cba, vas):
        await engine.add_account(cba)
        await engine.add_account(vas)
        await engine.add_transaction(purchase(vas))
        lot = (await engine.store.fetch(StockLot))[0]

        with pytest.raises(LinkedLotError):
            await engine.update_lot(lot.model_copy(update={"units": Decimal("1")}))
        with pytest.raises(LinkedLotError):
            await engine.delete_lot(lot.id)
        with pytest.raises(LinkedLotError):
            await engine.add_lot(lot.model_copy(update={"id": uuid4()}))


class TestStandaloneLots:
    """Tests for lots recorded without a transaction."""

    @pytest.mark.asyncio
    async def test_lot_lifecycle(self, engine, vas):
        await engine.add_account(vas)
        lot = StockLot(
            asset_id=vas.id,
            side=LotSide.BUY,
            units=Decimal("5"),
            price_per_unit=Decimal("90"),
            traded_on=date(2025, 5, 1),
        )

        await engine.add_lot(lot)
        assert (await engine.store.get(Account, vas.id)).holdings == Decimal("5")

        result = await engine.update_lot(lot.model_copy(update={"units": Decimal("8")}))
        assert result.lot_delta.units == Decimal("3")
        assert (await engine.store.get(Account, vas.id)).holdings == Decimal("8")

        await engine.delete_lot(lot.id)
        assert (await engine.store.get(Account, vas.id)).holdings == Decimal("0")

    @pytest.mark.asyncio
    async def test_lot_on_cash_account_is_rejected(self, engine, cba):
        await engine.add_account(cba)
        lot = StockLot(
            asset_id=cba.id,
            side=LotSide.BUY,
            units=Decimal("1"),
            price_per_unit=Decimal("1"),
            traded_on=TODAY,
        )
        with pytest.raises(LedgerValidationError):
            await engine.add_lot(lot)

    @pytest.mark.asyncio
    async def test_cost_basis(self, engine, vas):
        await engine.add_account(vas)
        await engine.add_lot(StockLot(
            asset_id=vas.id,
            side=LotSide.BUY,
            units=Decimal("10"),
            price_per_unit=Decimal("80"),
            traded_on=date(2025, 5, 1),
        ))

        summary = await engine.cost_basis(vas.id)

        assert summary.average_cost == Decimal("80")
        assert summary.total_invested == Decimal("800")
        assert summary.current_value == Decimal("1000")
        assert summary.unrealized_gain_loss == Decimal("200")

    @pytest.mark.asyncio
    async def test_cost_basis_converts_lots_into_asset_currency(self, engine, vas):
        await engine.add_account(vas)
        await engine.add_lot(StockLot(
            asset_id=vas.id,
            side=LotSide.BUY,
            units=Decimal("1"),
            price_per_unit=Decimal("100"),
            traded_on=date(2025, 5, 1),
            currency="USD",
        ))

        summary = await engine.cost_basis(vas.id)

        assert summary.total_invested == Decimal("158")

    @pytest.mark.asyncio
    async def test_cost_basis_unknown_asset(self, engine):
        with pytest.raises(NotFoundError):
            await engine.cost_basis(uuid4())


class TestAccounts:
    """Tests for account maintenance."""

    @pytest.mark.asyncio
    async def test_duplicate_code_is_rejected(self, engine, cba):
        await engine.add_account(cba)
        with pytest.raises(DuplicateError):
            await engine.add_account(Account(name="Other", code="CBA"))

    @pytest.mark.asyncio
    async def test_update_account_cannot_set_balance(self, engine, cba):
        await engine.add_account(cba)
        await engine.add_transaction(expense("100"))

        edited = cba.model_copy(update={"name": "Main", "market_value": Decimal("5")})
        await engine.update_account(edited)

        stored = await engine.store.get(Account, cba.id)
        assert stored.name == "Main"
        assert stored.total_value == Decimal("900")

    @pytest.mark.asyncio
    async def test_failed_replay_keeps_stored_balance(self, cba):
        store = ReplayCommitFailingStore()
        engine = make_engine(store=store)
        await engine.add_account(cba)
        await engine.add_transaction(expense("100"))

        store.fail_replay = True
        edited = cba.model_copy(update={"name": "Main", "market_value": Decimal("5")})
        result = await engine.update_account(edited)

        assert result.reconciliation.success is False
        stored = await store.get(Account, cba.id)
        assert stored.name == "Main"
        assert stored.total_value == Decimal("900")
        assert edited.market_value == Decimal("5")

    @pytest.mark.asyncio
    async def test_failed_replay_keeps_new_account_at_reset_point(self, vas):
        store = ReplayCommitFailingStore()
        engine = make_engine(store=store)
        store.fail_replay = True

        savings = Account(
            name="Savings",
            code="ING",
            initial_balance=Decimal("50"),
            market_value=Decimal("777"),
            holdings=Decimal("3"),
            invested_capital=Decimal("10"),
        )
        vas.holdings = Decimal("999")
        vas.initial_holdings = Decimal("4")
        for account in (savings, vas):
            result = await engine.add_account(account)
            assert result.reconciliation.success is False

        stored_savings = await store.get(Account, savings.id)
        assert stored_savings.total_value == Decimal("50")
        assert stored_savings.invested_capital == Decimal("0")
        stored_vas = await store.get(Account, vas.id)
        assert stored_vas.holdings == Decimal("4")
        assert stored_vas.market_value == Decimal("100")

    @pytest.mark.asyncio
    async def test_market_price_moves_valuation_only(self, engine, cba, vas):
        await engine.add_account(cba)
        await engine.add_account(vas)
        await engine.add_transaction(purchase(vas))

        await engine.update_market_price(vas.id, Decimal("150"))

        stored = await engine.store.get(Account, vas.id)
        assert stored.holdings == Decimal("10")
        assert stored.total_value == Decimal("1500")

    @pytest.mark.asyncio
    async def test_market_price_on_cash_account(self, engine, cba):
        await engine.add_account(cba)
        with pytest.raises(AssetTypeError):
            await engine.update_market_price(cba.id, Decimal("1"))

    @pytest.mark.asyncio
    async def test_market_price_unknown_account(self, engine):
        with pytest.raises(NotFoundError):
            await engine.update_market_price(uuid4(), Decimal("1"))


class TestImport:
    """Tests for batch imports."""

    @pytest.mark.asyncio
    async def test_import_batch(self, engine, cba, vas):
        await engine.add_account(cba)
        await engine.add_account(vas)

        result = await engine.import_transactions([income("100"), purchase(vas, amount="500", units="5")])

        assert len(result.imported) == 2
        assert result.lots_created == 1
        assert result.reconciliation.success is True
        assert await balance(engine, cba) == Decimal("600")

    @pytest.mark.asyncio
    async def test_one_bad_record_rejects_batch(self, engine, cba):
        await engine.add_account(cba)
        bad = Transaction(
            amount=Decimal("10"),
            type=TransactionType.TRANSFER,
            occurred_on=TODAY,
            source_account="CBA",
            destination_account="GONE",
        )

        with pytest.raises(LedgerValidationError):
            await engine.import_transactions([income("100"), bad])

        assert await engine.store.fetch(Transaction) == []


class TestScheduler:
    """Tests for scheduler passes through the engine."""

    @pytest.mark.asyncio
    async def test_pass_materializes_due_bills_once(self, engine, cba):
        await engine.add_account(cba)
        rule = Subscription(
            name="Netflix",
            amount=Decimal("20"),
            anchor_date=date(2025, 4, 1),
            source_account="CBA",
        )
        added = await engine.add_subscription(rule)
        assert added.reconciliation is None

        first = await engine.run_scheduler_pass()

        assert first.success is True
        assert len(first.bills_created) == 3
        assert (await engine.store.get(Subscription, rule.id)).runner_date == date(2025, 7, 1)
        assert await balance(engine, cba) == Decimal("940")

        second = await engine.run_scheduler_pass()
        assert second.bills_created == []
        assert second.reconciliation is None
        assert len(await engine.store.fetch(Transaction)) == 3

    @pytest.mark.asyncio
    async def test_truncation_is_audited(self, engine, audit_storage):
        await engine.add_subscription(
            Subscription(name="Gym", amount=Decimal("60"), anchor_date=date(2020, 1, 1))
        )

        result = await engine.run_scheduler_pass()

        assert len(result.bills_created) == 12
        assert len(result.truncated_rules) == 1
        events = await audit_storage.get_recent_events(limit=500)
        assert any(e.event_type == AuditEventType.SCHEDULE_TRUNCATED for e in events)

    @pytest.mark.asyncio
    async def test_inactive_and_deleted_rules(self, engine):
        inactive = Subscription(
            name="Old", amount=Decimal("5"), anchor_date=date(2025, 1, 1), is_active=False
        )
        await engine.add_subscription(inactive)
        assert (await engine.run_scheduler_pass()).bills_created == []

        await engine.update_subscription(inactive.model_copy(update={"is_active": True}))
        assert len((await engine.run_scheduler_pass()).bills_created) == 6

        await engine.delete_subscription(inactive.id)
        assert len(await engine.store.fetch(Transaction)) == 6

    @pytest.mark.asyncio
    async def test_effective_next_date(self, engine):
        rule = Subscription(name="Rent", amount=Decimal("2000"), anchor_date=date(2025, 1, 31))
        await engine.add_subscription(rule)

        assert await engine.effective_next_date(rule.id) == date(2025, 6, 30)
        assert len(await engine.store.fetch(Transaction)) == 0

        with pytest.raises(NotFoundError):
            await engine.effective_next_date(uuid4())

    @pytest.mark.asyncio
    async def test_periodic_loop_stops(self, engine):
        await engine.add_subscription(
            Subscription(name="Phone", amount=Decimal("30"), anchor_date=date(2025, 6, 1))
        )
        stop = asyncio.Event()

        task = asyncio.create_task(engine.run_scheduler_periodically(stop, interval_seconds=0.01))
        await asyncio.sleep(0.05)
        stop.set()
        passes = await asyncio.wait_for(task, timeout=1)

        assert passes >= 1
        assert len(await engine.store.fetch(Transaction)) == 1


class TestQueries:
    """Tests for metrics and correlation."""

    @pytest.mark.asyncio
    async def test_compute_metrics(self, engine, cba):
        await engine.add_account(cba)
        await engine.add_transaction(income("5000"))
        await engine.add_transaction(expense("2500"))

        metrics = await engine.compute_metrics()

        assert metrics.window_start == date(2025, 6, 1)
        assert metrics.activity_ratio == Decimal("2")
        assert metrics.total_asset_value == Decimal("3500")

    @pytest.mark.asyncio
    async def test_metrics_never_raise(self, audit_storage):
        store = UnreadableStore()
        engine = make_engine(store=store, audit_storage=audit_storage)

        metrics = await engine.compute_metrics()

        assert metrics.activity_ratio == Decimal("0")
        assert metrics.coverage_ratio == Decimal("0")
        assert "connection reset" in metrics.warnings[0]
        assert store.snapshot_calls > 1

    @pytest.mark.asyncio
    async def test_mutation_and_replay_share_correlation_id(self, engine, audit_storage, cba):
        await engine.add_account(cba)

        result = await engine.add_transaction(income("10"))

        events = await audit_storage.get_events_by_correlation_id(result.correlation_id)
        types = [e.event_type for e in events]
        assert AuditEventType.TRANSACTION_ADDED in types
        assert AuditEventType.RECONCILIATION_COMPLETED in types

    @pytest.mark.asyncio
    async def test_refresh_rates_replays_with_new_table(self, audit_storage, cba):
        provider = StaticRateProvider({"EUR": "1", "AUD": "1.65", "USD": "1.08"}, pivot_currency="EUR")
        engine = make_engine(audit_storage=audit_storage, provider=provider)
        await engine.add_account(cba)
        await engine.add_transaction(income("108", currency="USD"))
        fallback_balance = await balance(engine, cba)

        assert await engine.refresh_rates() is True

        live_balance = await balance(engine, cba)
        assert fallback_balance == Decimal("1170.64")
        assert abs(live_balance - Decimal("1165")) < Decimal("0.0001")
        events = await audit_storage.get_recent_events()
        assert any(e.event_type == AuditEventType.RATES_REFRESHED for e in events)

    @pytest.mark.asyncio
    async def test_refresh_without_provider_is_degraded(self, engine, audit_storage):
        assert await engine.refresh_rates() is False
        events = await audit_storage.get_recent_events()
        assert events[0].event_type == AuditEventType.RATES_DEGRADED

    @pytest.mark.asyncio
    async def test_factory_wires_defaults(self):
        engine = create_ledger_engine(clock=lambda: TODAY)
        await engine.add_account(Account(name="Wallet", code="CASH", initial_balance=Decimal("20")))
        metrics = await engine.compute_metrics()
        assert metrics.total_asset_value == Decimal("20")
