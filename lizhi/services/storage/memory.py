"""
In-Memory Storage Implementation

DESIGN DECISION: The ledger core only talks to the abstract interface.
This in-memory implementation is the default backend and the one the
test suite runs against.

Every read and write goes through a deep copy, so a caller holding a
record can never change stored state behind the store's back. Batch
commits are validated in full and then applied without awaiting,
which makes them atomic for every other coroutine on the event loop.
"""

from typing import Callable, Iterable, Optional
from uuid import UUID

from lizhi.models.audit import AuditEvent
from lizhi.models.ledger import Account, StockLot, Subscription, Transaction
from lizhi.services.storage.interface import (
    LEDGER_MODELS,
    AuditStorageInterface,
    DuplicateError,
    LedgerRecord,
    LedgerSnapshot,
    LedgerStoreInterface,
    NotFoundError,
    RecordT,
    StorageError,
)


class InMemoryLedgerStore(LedgerStoreInterface):
    """
    Dictionary-backed ledger store.

    Python dicts keep insertion order, and replacing a value keeps
    its position, so `fetch` returns records in insertion order even
    after edits.
    """

    def __init__(self):
        self._data: dict[type, dict[UUID, LedgerRecord]] = {
            model: {} for model in LEDGER_MODELS
        }

    def _collection(self, model: type) -> dict[UUID, LedgerRecord]:
        try:
            return self._data[model]
        except KeyError:
            raise StorageError(f"Unsupported record type: {model.__name__}")

    async def fetch(
        self,
        model: type[RecordT],
        predicate: Optional[Callable[[RecordT], bool]] = None,
    ) -> list[RecordT]:
        records = self._collection(model).values()
        return [
            record.model_copy(deep=True)
            for record in records
            if predicate is None or predicate(record)
        ]

    async def get(self, model: type[RecordT], record_id: UUID) -> Optional[RecordT]:
        record = self._collection(model).get(record_id)
        return record.model_copy(deep=True) if record is not None else None

    async def insert(self, record: LedgerRecord) -> None:
        await self.commit(inserts=[record])

    async def save(self, record: LedgerRecord) -> None:
        await self.commit(updates=[record])

    async def delete(self, model: type[RecordT], record_id: UUID) -> bool:
        collection = self._collection(model)
        if record_id not in collection:
            return False
        del collection[record_id]
        return True

    async def commit(
        self,
        inserts: Iterable[LedgerRecord] = (),
        updates: Iterable[LedgerRecord] = (),
        deletes: Iterable[tuple[type, UUID]] = (),
    ) -> None:
        inserts = list(inserts)
        updates = list(updates)
        deletes = list(deletes)

        # Validate the whole batch against the post-insert key sets first
        keys = {model: set(collection) for model, collection in self._data.items()}
        for record in inserts:
            model_keys = self._keys_for(keys, type(record))
            if record.id in model_keys:
                raise DuplicateError(f"{type(record).__name__} already exists: {record.id}")
            model_keys.add(record.id)
        for record in updates:
            if record.id not in self._keys_for(keys, type(record)):
                raise NotFoundError(f"{type(record).__name__} not found: {record.id}")
        for model, record_id in deletes:
            model_keys = self._keys_for(keys, model)
            if record_id not in model_keys:
                raise NotFoundError(f"{model.__name__} not found: {record_id}")
            model_keys.discard(record_id)

        # Apply without yielding to the event loop
        for record in inserts:
            self._data[type(record)][record.id] = record.model_copy(deep=True)
        for record in updates:
            self._data[type(record)][record.id] = record.model_copy(deep=True)
        for model, record_id in deletes:
            del self._data[model][record_id]

    @staticmethod
    def _keys_for(keys: dict[type, set], model: type) -> set:
        try:
            return keys[model]
        except KeyError:
            raise StorageError(f"Unsupported record type: {model.__name__}")

    async def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot(
            transactions=await self.fetch(Transaction),
            accounts=await self.fetch(Account),
            lots=await self.fetch(StockLot),
            subscriptions=await self.fetch(Subscription),
        )


class InMemoryAuditStorage(AuditStorageInterface):
    """
    In-memory implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self):
        self._events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event.model_copy(deep=True))
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = [e for e in self._events if e.correlation_id == correlation_id]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        events = [
            e for e in self._events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = sorted(self._events, key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
