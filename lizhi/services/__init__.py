"""Services package."""

from lizhi.services.currency import (
    CurrencyError,
    CurrencyNormalizer,
    RateProvider,
    RateProviderUnavailable,
    RateUnavailable,
    StaticRateProvider,
)
from lizhi.services.storage import (
    AuditStorageInterface,
    ConnectionError,
    DuplicateError,
    InMemoryAuditStorage,
    InMemoryLedgerStore,
    LedgerSnapshot,
    LedgerStoreInterface,
    NotFoundError,
    StorageError,
)

__all__ = [
    # Currency services
    "CurrencyError",
    "CurrencyNormalizer",
    "RateProvider",
    "RateProviderUnavailable",
    "RateUnavailable",
    "StaticRateProvider",
    # Storage services
    "AuditStorageInterface",
    "ConnectionError",
    "DuplicateError",
    "InMemoryAuditStorage",
    "InMemoryLedgerStore",
    "LedgerSnapshot",
    "LedgerStoreInterface",
    "NotFoundError",
    "StorageError",
]
