"""
In-Memory Document Store

A process-local implementation of `DocumentStore` with the same
semantics the engine relies on in production: atomic batches,
commutative increments, compare-and-swap preconditions and live
collection snapshots pushed to subscribers.

Every read and commit yields to the event loop once, so concurrent
callers interleave the way they would against a remote store.
"""

import asyncio
import copy
from collections import defaultdict
from typing import Any, Optional
from uuid import UUID

import structlog

from daycare_ledger.models.audit import AuditEvent
from daycare_ledger.services.storage.interface import (
    MAX_BATCH_WRITES,
    ArrayUnion,
    AtomicWriteError,
    AuditStorageInterface,
    BatchTooLargeError,
    DocumentStore,
    Increment,
    PreconditionFailedError,
    Snapshot,
    SnapshotListener,
    Unsubscribe,
    WriteBatch,
)

logger = structlog.get_logger(__name__)

_MISSING = object()


def _get_path(document: dict[str, Any], path: str) -> Any:
    """Read a dotted field path; missing segments give _MISSING."""
    current: Any = document
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _resolve(current: Any, value: Any, path: str) -> Any:
    """Apply a sentinel (or plain value) on top of the current field value."""
    if isinstance(value, Increment):
        if current is _MISSING or current is None:
            current = 0
        if not isinstance(current, (int, float)) or isinstance(current, bool):
            raise AtomicWriteError(f"Cannot increment non-numeric field '{path}'")
        return current + value.amount
    if isinstance(value, ArrayUnion):
        items = [] if current is _MISSING or current is None else list(current)
        for item in value.values:
            if item not in items:
                items.append(copy.deepcopy(item))
        return items
    return copy.deepcopy(value)


def _set_path(document: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    target = document
    for part in parts[:-1]:
        nested = target.get(part)
        if not isinstance(nested, dict):
            nested = {}
            target[part] = nested
        target = nested
    leaf = parts[-1]
    target[leaf] = _resolve(target.get(leaf, _MISSING), value, path)


def _merge(target: dict[str, Any], data: dict[str, Any], prefix: str = "") -> None:
    for key, value in data.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value, f"{prefix}{key}.")
        else:
            target[key] = _resolve(target.get(key, _MISSING), value, f"{prefix}{key}")


class InMemoryDocumentStore(DocumentStore):
    """Document store kept in process memory."""

    def __init__(self, max_batch_writes: int = MAX_BATCH_WRITES):
        self._collections: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self._listeners: dict[str, list[SnapshotListener]] = defaultdict(list)
        self._lock = asyncio.Lock()
        self._max_batch_writes = max_batch_writes
        self.commit_count = 0

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        await asyncio.sleep(0)
        document = self._collections[collection].get(doc_id)
        return copy.deepcopy(document) if document is not None else None

    async def query(
        self,
        collection: str,
        filters: Optional[dict[str, Any]] = None,
    ) -> list[dict[str, Any]]:
        await asyncio.sleep(0)
        filters = filters or {}
        results = []
        for document in self._collections[collection].values():
            if all(_get_path(document, key) == value for key, value in filters.items()):
                results.append(copy.deepcopy(document))
        return results

    async def commit(self, batch: WriteBatch) -> None:
        if len(batch) > self._max_batch_writes:
            raise BatchTooLargeError(
                f"Batch has {len(batch)} writes; the limit is {self._max_batch_writes}"
            )

        async with self._lock:
            await asyncio.sleep(0)
            # Stage changes on copies so a failure leaves the store untouched
            staged: dict[tuple[str, str], Optional[dict[str, Any]]] = {}

            def current(collection: str, doc_id: str) -> Optional[dict[str, Any]]:
                key = (collection, doc_id)
                if key not in staged:
                    existing = self._collections[collection].get(doc_id)
                    staged[key] = copy.deepcopy(existing) if existing is not None else None
                return staged[key]

            for op in batch.operations:
                if op.kind != "require":
                    continue
                document = current(op.collection, op.doc_id)
                for field_path, expected in op.data.items():
                    actual = _MISSING if document is None else _get_path(document, field_path)
                    actual = None if actual is _MISSING else actual
                    if actual != expected:
                        raise PreconditionFailedError(
                            op.collection, op.doc_id, field_path, expected, actual
                        )

            for op in batch.operations:
                key = (op.collection, op.doc_id)
                document = current(op.collection, op.doc_id)
                if op.kind == "set":
                    if op.merge and document is not None:
                        _merge(document, op.data)
                    else:
                        document = {}
                        _merge(document, op.data)
                    document["id"] = op.doc_id
                    staged[key] = document
                elif op.kind == "update":
                    if document is None:
                        raise AtomicWriteError(
                            f"Cannot update missing document {op.collection}/{op.doc_id}"
                        )
                    for field_path, value in op.data.items():
                        _set_path(document, field_path, value)
                elif op.kind == "delete":
                    staged[key] = None

            touched = set()
            for (collection, doc_id), document in staged.items():
                touched.add(collection)
                if document is None:
                    self._collections[collection].pop(doc_id, None)
                else:
                    self._collections[collection][doc_id] = document
            self.commit_count += 1

        logger.debug("batch_committed", writes=len(batch), collections=sorted(touched))
        for collection in touched:
            self._notify(collection)

    def subscribe(self, collection: str, listener: SnapshotListener) -> Unsubscribe:
        self._listeners[collection].append(listener)
        listener(self.snapshot(collection))

        def unsubscribe() -> None:
            if listener in self._listeners[collection]:
                self._listeners[collection].remove(listener)

        return unsubscribe

    def snapshot(self, collection: str) -> Snapshot:
        """Copy of every document in a collection."""
        return [copy.deepcopy(doc) for doc in self._collections[collection].values()]

    def _notify(self, collection: str) -> None:
        for listener in list(self._listeners[collection]):
            try:
                listener(self.snapshot(collection))
            except Exception:
                # A broken view must not undo a committed write
                logger.exception("snapshot_listener_failed", collection=collection)


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only audit log kept in process memory."""

    def __init__(self):
        self._events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
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
        entity_id: str,
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
