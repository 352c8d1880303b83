"""Services package."""

from daycare_ledger.services.matching import (
    CustomerMatch,
    CustomerMatcher,
    MatchStrategy,
)
from daycare_ledger.services.storage import (
    AtomicWriteError,
    AuditStorageInterface,
    DocumentStore,
    InMemoryAuditStorage,
    InMemoryDocumentStore,
    NotFoundError,
    PreconditionFailedError,
    StorageError,
    StoreConnectionError,
)

__all__ = [
    # Customer matching
    "CustomerMatch",
    "CustomerMatcher",
    "MatchStrategy",
    # Storage services
    "AtomicWriteError",
    "AuditStorageInterface",
    "DocumentStore",
    "InMemoryAuditStorage",
    "InMemoryDocumentStore",
    "NotFoundError",
    "PreconditionFailedError",
    "StorageError",
    "StoreConnectionError",
]
