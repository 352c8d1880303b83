"""
Storage Services Package

Provides the abstract document-store interface and an in-memory
implementation. Business logic only ever talks to `DocumentStore`.
"""

from daycare_ledger.services.storage.interface import (
    ATTENDANCE_LOGS,
    CUSTOMERS,
    MAX_BATCH_WRITES,
    TRANSACTIONS,
    ArrayUnion,
    AtomicWriteError,
    AuditStorageInterface,
    BatchTooLargeError,
    DocumentStore,
    Increment,
    NotFoundError,
    PreconditionFailedError,
    StorageError,
    StoreConnectionError,
    WriteBatch,
)
from daycare_ledger.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryDocumentStore,
)
from daycare_ledger.services.storage.retrying import (
    get_document,
    query_documents,
)

__all__ = [
    # Collections
    "ATTENDANCE_LOGS",
    "CUSTOMERS",
    "TRANSACTIONS",
    "MAX_BATCH_WRITES",
    # Interfaces
    "AuditStorageInterface",
    "DocumentStore",
    "WriteBatch",
    "ArrayUnion",
    "Increment",
    # Exceptions
    "AtomicWriteError",
    "BatchTooLargeError",
    "NotFoundError",
    "PreconditionFailedError",
    "StorageError",
    "StoreConnectionError",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryDocumentStore",
    # Retried reads
    "get_document",
    "query_documents",
]
