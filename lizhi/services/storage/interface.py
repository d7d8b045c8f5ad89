"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Keep the ledger core free of raw storage calls
2. Use in-memory storage for testing
3. Swap in a database-backed store later
4. Keep business logic decoupled from storage implementation

The interface is intentionally small: fetch-by-predicate plus
insert / save / delete, and one atomic batch commit. Records are the
four ledger models, addressed by their model class and `id`.
"""

from abc import ABC, abstractmethod
from typing import Callable, Iterable, NamedTuple, Optional, TypeVar, Union
from uuid import UUID

from lizhi.models.audit import AuditEvent
from lizhi.models.ledger import Account, StockLot, Subscription, Transaction


LedgerRecord = Union[Transaction, Account, StockLot, Subscription]
RecordT = TypeVar("RecordT", Transaction, Account, StockLot, Subscription)

LEDGER_MODELS: tuple[type, ...] = (Transaction, Account, StockLot, Subscription)


class LedgerSnapshot(NamedTuple):
    """A consistent copy of every collection, taken at one instant."""
    transactions: list[Transaction]
    accounts: list[Account]
    lots: list[StockLot]
    subscriptions: list[Subscription]


class LedgerStoreInterface(ABC):
    """
    Abstract interface for ledger storage operations.

    Any storage implementation must implement these methods.
    Reads return copies: mutating a returned record never changes
    stored state until it is saved back.
    """

    @abstractmethod
    async def fetch(
        self,
        model: type[RecordT],
        predicate: Optional[Callable[[RecordT], bool]] = None,
    ) -> list[RecordT]:
        """
        Fetch records of one model in insertion order.

        Args:
            model: Transaction, Account, StockLot or Subscription
            predicate: Optional filter applied to each record

        Returns:
            Matching records, oldest insert first
        """
        pass

    @abstractmethod
    async def get(self, model: type[RecordT], record_id: UUID) -> Optional[RecordT]:
        """
        Retrieve a record by its ID.

        Returns:
            The record if found, None otherwise
        """
        pass

    @abstractmethod
    async def insert(self, record: LedgerRecord) -> None:
        """
        Insert a new record.

        Raises:
            DuplicateError: If a record with the same ID exists
        """
        pass

    @abstractmethod
    async def save(self, record: LedgerRecord) -> None:
        """
        Replace an existing record, keeping its insertion position.

        Raises:
            NotFoundError: If the record doesn't exist
        """
        pass

    @abstractmethod
    async def delete(self, model: type[RecordT], record_id: UUID) -> bool:
        """
        Delete a record by ID.

        Returns:
            True if a record was deleted
        """
        pass

    @abstractmethod
    async def commit(
        self,
        inserts: Iterable[LedgerRecord] = (),
        updates: Iterable[LedgerRecord] = (),
        deletes: Iterable[tuple[type, UUID]] = (),
    ) -> None:
        """
        Apply a batch of changes atomically.

        The whole batch is validated before anything is applied;
        readers never observe a partially applied batch.

        Raises:
            DuplicateError: If an insert collides with an existing record
            NotFoundError: If an update or delete target doesn't exist
        """
        pass

    @abstractmethod
    async def snapshot(self) -> LedgerSnapshot:
        """Return a consistent copy of all four collections."""
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (one mutation and its replay).

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a specific entity.

        Returns:
            List of events in chronological order
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Returns:
            List of recent events (newest first)
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class ConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass
