"""
Tests for the in-memory document store and retried reads.
"""

import pytest

from daycare_ledger.services.storage import (
    CUSTOMERS,
    TRANSACTIONS,
    ArrayUnion,
    AtomicWriteError,
    BatchTooLargeError,
    Increment,
    InMemoryDocumentStore,
    PreconditionFailedError,
    StoreConnectionError,
    WriteBatch,
    get_document,
    query_documents,
)


class FlakyStore(InMemoryDocumentStore):
    """Fails the first `failures` reads with a connection error."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.get_calls = 0

    async def get(self, collection, doc_id):
        self.get_calls += 1
        if self.get_calls <= self.failures:
            raise StoreConnectionError("store unreachable")
        return await super().get(collection, doc_id)


class TestWriteBatch:

    def test_len_counts_writes_only(self):
        batch = WriteBatch()
        batch.require(CUSTOMERS, "c1", "balance", 0)
        batch.set(CUSTOMERS, "c1", {"balance": 0})
        batch.update(CUSTOMERS, "c1", {"balance": Increment(5)})
        assert len(batch) == 2
        assert bool(batch)
        assert not WriteBatch()


class TestInMemoryDocumentStore:
    """Atomic batches, sentinels and live snapshots."""

    @pytest.mark.asyncio
    async def test_set_and_get(self, store):
        await store.commit(WriteBatch().set(CUSTOMERS, "c1", {"balance": 0}))
        document = await store.get(CUSTOMERS, "c1")
        assert document == {"balance": 0, "id": "c1"}
        assert await store.get(CUSTOMERS, "missing") is None

    @pytest.mark.asyncio
    async def test_get_returns_copies(self, store):
        await store.commit(WriteBatch().set(CUSTOMERS, "c1", {"tags": ["a"]}))
        document = await store.get(CUSTOMERS, "c1")
        document["tags"].append("b")
        assert (await store.get(CUSTOMERS, "c1"))["tags"] == ["a"]

    @pytest.mark.asyncio
    async def test_increment_on_dotted_path(self, store):
        await store.commit(WriteBatch().set(CUSTOMERS, "c1", {"ticket": {"remaining": 2}}))
        batch = WriteBatch()
        batch.update(CUSTOMERS, "c1", {"ticket.remaining": Increment(-1)})
        batch.update(CUSTOMERS, "c1", {"ticket.remaining": Increment(-1)})
        batch.update(CUSTOMERS, "c1", {"balance": Increment(500)})
        await store.commit(batch)

        document = await store.get(CUSTOMERS, "c1")
        assert document["ticket"]["remaining"] == 0
        assert document["balance"] == 500

    @pytest.mark.asyncio
    async def test_array_union_skips_duplicates(self, store):
        await store.commit(WriteBatch().set(CUSTOMERS, "c1", {"planned": ["a"]}))
        await store.commit(
            WriteBatch().update(CUSTOMERS, "c1", {"planned": ArrayUnion("a", "b")})
        )
        assert (await store.get(CUSTOMERS, "c1"))["planned"] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_merge_set_keeps_other_fields(self, store):
        await store.commit(WriteBatch().set("attendance_logs", "d1", {"arrival_time": "09:00", "status": "present"}))
        await store.commit(WriteBatch().set("attendance_logs", "d1", {"status": "home"}, merge=True))
        document = await store.get("attendance_logs", "d1")
        assert document["arrival_time"] == "09:00"
        assert document["status"] == "home"

    @pytest.mark.asyncio
    async def test_failed_batch_applies_nothing(self, store):
        """Updating a missing document rejects the whole batch."""
        batch = WriteBatch()
        batch.set(TRANSACTIONS, "t1", {"price": 100})
        batch.update(CUSTOMERS, "missing", {"balance": Increment(-100)})

        with pytest.raises(AtomicWriteError):
            await store.commit(batch)

        assert await store.get(TRANSACTIONS, "t1") is None
        assert store.commit_count == 0

    @pytest.mark.asyncio
    async def test_increment_on_text_field_rejected(self, store):
        await store.commit(WriteBatch().set(CUSTOMERS, "c1", {"balance": "lots"}))
        with pytest.raises(AtomicWriteError):
            await store.commit(WriteBatch().update(CUSTOMERS, "c1", {"balance": Increment(1)}))

    @pytest.mark.asyncio
    async def test_precondition(self, store):
        await store.commit(WriteBatch().set(TRANSACTIONS, "t1", {"revision": 1}))

        stale = WriteBatch()
        stale.require(TRANSACTIONS, "t1", "revision", 0)
        stale.update(TRANSACTIONS, "t1", {"revision": 1})
        with pytest.raises(PreconditionFailedError) as exc_info:
            await store.commit(stale)
        assert exc_info.value.actual == 1

        fresh = WriteBatch()
        fresh.require(TRANSACTIONS, "t1", "revision", 1)
        fresh.update(TRANSACTIONS, "t1", {"revision": 2})
        await store.commit(fresh)
        assert (await store.get(TRANSACTIONS, "t1"))["revision"] == 2

    @pytest.mark.asyncio
    async def test_missing_document_compares_as_none(self, store):
        batch = WriteBatch()
        batch.require(TRANSACTIONS, "new", "id", None)
        batch.set(TRANSACTIONS, "new", {"price": 1})
        await store.commit(batch)

        again = WriteBatch()
        again.require(TRANSACTIONS, "new", "id", None)
        again.set(TRANSACTIONS, "new", {"price": 2})
        with pytest.raises(PreconditionFailedError):
            await store.commit(again)

    @pytest.mark.asyncio
    async def test_batch_limit(self):
        store = InMemoryDocumentStore(max_batch_writes=2)
        batch = WriteBatch()
        for i in range(3):
            batch.set(TRANSACTIONS, f"t{i}", {})
        with pytest.raises(BatchTooLargeError):
            await store.commit(batch)

    @pytest.mark.asyncio
    async def test_query_equality_filters(self, store):
        batch = WriteBatch()
        batch.set(TRANSACTIONS, "t1", {"type": "income", "phone_key": "k"})
        batch.set(TRANSACTIONS, "t2", {"type": "expense", "phone_key": "k"})
        batch.set(TRANSACTIONS, "t3", {"type": "income", "phone_key": "other"})
        await store.commit(batch)

        found = await store.query(TRANSACTIONS, {"type": "income", "phone_key": "k"})
        assert [d["id"] for d in found] == ["t1"]
        assert len(await store.query(TRANSACTIONS)) == 3

    @pytest.mark.asyncio
    async def test_subscribers_receive_snapshots(self, store):
        snapshots = []
        unsubscribe = store.subscribe(CUSTOMERS, snapshots.append)
        assert snapshots == [[]]

        await store.commit(WriteBatch().set(CUSTOMERS, "c1", {"balance": 0}))
        await store.commit(WriteBatch().set(TRANSACTIONS, "t1", {}))
        assert len(snapshots) == 2
        assert snapshots[-1][0]["id"] == "c1"

        unsubscribe()
        await store.commit(WriteBatch().set(CUSTOMERS, "c2", {}))
        assert len(snapshots) == 2

    @pytest.mark.asyncio
    async def test_broken_listener_does_not_undo_commit(self, store):
        def broken(snapshot):
            if snapshot:
                raise RuntimeError("render failed")

        store.subscribe(CUSTOMERS, broken)
        await store.commit(WriteBatch().set(CUSTOMERS, "c1", {}))
        assert await store.get(CUSTOMERS, "c1") is not None


class TestRetriedReads:
    """Reads retry on connection errors; nothing else is retried."""

    @pytest.fixture(autouse=True)
    def no_backoff(self, monkeypatch):
        monkeypatch.setenv("STORE_READ_RETRY_MIN_WAIT_SECONDS", "0")
        monkeypatch.setenv("STORE_READ_RETRY_MAX_WAIT_SECONDS", "0")

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self):
        store = FlakyStore(failures=2)
        await store.commit(WriteBatch().set(CUSTOMERS, "c1", {"balance": 0}))

        document = await get_document(store, CUSTOMERS, "c1")
        assert document["balance"] == 0
        assert store.get_calls == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_configured_attempts(self):
        store = FlakyStore(failures=10)
        with pytest.raises(StoreConnectionError):
            await get_document(store, CUSTOMERS, "c1")
        assert store.get_calls == 3

    @pytest.mark.asyncio
    async def test_query_documents(self, store):
        await store.commit(WriteBatch().set(CUSTOMERS, "c1", {"phone_key": "k"}))
        assert len(await query_documents(store, CUSTOMERS, {"phone_key": "k"})) == 1
