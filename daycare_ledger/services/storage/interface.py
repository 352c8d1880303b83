"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Swap the in-memory store for a hosted document database later
2. Use in-memory storage for testing
3. Keep the balance engine decoupled from storage implementation

The engine depends on three store guarantees:
- A write batch is applied atomically: every operation or none.
- `Increment` is commutative, so concurrent increments to the same
  field never lose an update.
- Subscribers receive a fresh collection snapshot after every commit.

The interface is intentionally simple - we're not building a full ORM.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from uuid import UUID

from daycare_ledger.models.audit import AuditEvent


# Collection names
CUSTOMERS = "customers"
TRANSACTIONS = "transactions"
ATTENDANCE_LOGS = "attendance_logs"

# Hard limit on writes in one atomic batch
MAX_BATCH_WRITES = 500


Snapshot = list[dict[str, Any]]
SnapshotListener = Callable[[Snapshot], None]
Unsubscribe = Callable[[], None]


class Increment:
    """Add `amount` to a numeric field (missing fields count as 0)."""

    __slots__ = ("amount",)

    def __init__(self, amount: int):
        self.amount = amount

    def __repr__(self) -> str:
        return f"Increment({self.amount})"


class ArrayUnion:
    """Append values to an array field, skipping values already present."""

    __slots__ = ("values",)

    def __init__(self, *values: Any):
        self.values = list(values)

    def __repr__(self) -> str:
        return f"ArrayUnion({self.values!r})"


@dataclass
class WriteOperation:
    """One operation inside a write batch."""
    kind: str  # set | update | delete | require
    collection: str
    doc_id: str
    data: dict[str, Any] = field(default_factory=dict)
    merge: bool = False


class WriteBatch:
    """
    Collects operations to be committed as one atomic unit.

    Field paths in `update` may be dotted ("ticket.remaining") and values
    may be `Increment` / `ArrayUnion` sentinels.

    Usage:
        batch = WriteBatch()
        batch.set(TRANSACTIONS, txn.id, txn.to_document())
        batch.update(CUSTOMERS, customer_id, {"balance": Increment(diff)})
        await store.commit(batch)
    """

    def __init__(self):
        self._operations: list[WriteOperation] = []

    def set(
        self,
        collection: str,
        doc_id: str,
        data: dict[str, Any],
        merge: bool = False,
    ) -> "WriteBatch":
        """Create or replace a document (or merge into it)."""
        self._operations.append(
            WriteOperation("set", collection, doc_id, dict(data), merge)
        )
        return self

    def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict[str, Any],
    ) -> "WriteBatch":
        """Update fields of an existing document. Fails the batch if it is missing."""
        self._operations.append(
            WriteOperation("update", collection, doc_id, dict(fields))
        )
        return self

    def delete(self, collection: str, doc_id: str) -> "WriteBatch":
        self._operations.append(WriteOperation("delete", collection, doc_id))
        return self

    def require(
        self,
        collection: str,
        doc_id: str,
        field_path: str,
        expected: Any,
    ) -> "WriteBatch":
        """
        Compare-and-swap precondition.

        The batch is rejected with PreconditionFailedError unless the stored
        value at `field_path` equals `expected` at commit time. A missing
        document or field compares as None.
        """
        self._operations.append(
            WriteOperation("require", collection, doc_id, {field_path: expected})
        )
        return self

    @property
    def operations(self) -> list[WriteOperation]:
        return list(self._operations)

    def __len__(self) -> int:
        """Number of writes (preconditions are not writes)."""
        return sum(1 for op in self._operations if op.kind != "require")

    def __bool__(self) -> bool:
        return bool(self._operations)


class DocumentStore(ABC):
    """
    Abstract interface for the document store.

    Any storage implementation must implement these methods.
    """

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        """
        Retrieve a document by ID.

        Returns:
            A copy of the document (with its "id"), or None if missing

        Raises:
            StoreConnectionError: If the backend is unreachable
        """
        pass

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Optional[dict[str, Any]] = None,
    ) -> list[dict[str, Any]]:
        """
        List documents whose fields equal every value in `filters`.

        Args:
            collection: Collection name
            filters: {field: value} equality filters; None returns everything

        Returns:
            Copies of the matching documents
        """
        pass

    @abstractmethod
    async def commit(self, batch: WriteBatch) -> None:
        """
        Apply a write batch atomically.

        Raises:
            AtomicWriteError: If any operation fails; nothing is applied
            PreconditionFailedError: If a `require` check does not hold
            BatchTooLargeError: If the batch exceeds MAX_BATCH_WRITES
        """
        pass

    @abstractmethod
    def subscribe(self, collection: str, listener: SnapshotListener) -> Unsubscribe:
        """
        Register a live query on a whole collection.

        The listener is called immediately with the current snapshot and
        again after every commit touching the collection.

        Returns:
            A callable that removes the listener
        """
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
        """Get all events of one staff action, in chronological order."""
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """Get all events for a specific entity, in chronological order."""
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Get the most recent audit events (newest first)."""
        pass


class StorageError(Exception):
    """
    Base exception for storage operations.

    Chunked writes that stop part way set `committed` to the result of
    the chunks that were already applied.
    """
    committed: Any = None


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class StoreConnectionError(StorageError):
    """Could not reach the storage backend."""
    pass


class AtomicWriteError(StorageError):
    """A write batch was rejected as a whole. Nothing was applied."""
    pass


class PreconditionFailedError(AtomicWriteError):
    """A compare-and-swap precondition did not hold at commit time."""

    def __init__(self, collection: str, doc_id: str, field_path: str, expected: Any, actual: Any):
        self.collection = collection
        self.doc_id = doc_id
        self.field_path = field_path
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{collection}/{doc_id}.{field_path}: expected {expected!r}, found {actual!r}"
        )


class BatchTooLargeError(AtomicWriteError):
    """A write batch exceeds the store's per-batch limit."""
    pass
