"""
Shared fixtures.

Every test runs against a fresh in-memory document store; nothing talks
to an external service.
"""

from datetime import date
from typing import Any

import pytest
import pytest_asyncio

from daycare_ledger.audit import AuditLogger
from daycare_ledger.config import LedgerSettings
from daycare_ledger.models.customer import Customer
from daycare_ledger.models.transaction import ExpenseTransaction, IncomeTransaction
from daycare_ledger.services.storage import (
    CUSTOMERS,
    AtomicWriteError,
    InMemoryAuditStorage,
    InMemoryDocumentStore,
    WriteBatch,
)


class FailingStore(InMemoryDocumentStore):
    """Rejects the commits whose 1-based attempt number is in `fail_on`."""

    def __init__(self, fail_on=(1,), **kwargs):
        super().__init__(**kwargs)
        self.fail_on = set(fail_on)
        self.attempts = 0

    async def commit(self, batch: WriteBatch) -> None:
        self.attempts += 1
        if self.attempts in self.fail_on:
            raise AtomicWriteError("simulated batch rejection")
        await super().commit(batch)


@pytest_asyncio.fixture
async def store():
    return InMemoryDocumentStore()


@pytest.fixture
def failing_store():
    """Factory: failing_store(fail_on=(2,)) -> FailingStore."""
    return FailingStore


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
def audit_logger(audit_storage):
    return AuditLogger(audit_storage)


@pytest.fixture
def ledger_settings():
    return LedgerSettings(batch_chunk_size=500, default_staff_name="System")


@pytest.fixture
def add_customer():
    """Factory: await add_customer(store, dog_name=..., ...) -> Customer."""

    async def _add(target_store, **fields: Any) -> Customer:
        fields.setdefault("dog_name", "Choco")
        fields.setdefault("owner_name", "Kim")
        fields.setdefault("phone", "010-1234-5678")
        customer = Customer(**fields)
        await target_store.commit(
            WriteBatch().set(CUSTOMERS, customer.id, customer.to_document())
        )
        return customer

    return _add


@pytest.fixture
def read_customer():
    """Factory: await read_customer(store, customer_id) -> Customer."""

    async def _read(target_store, customer_id: str) -> Customer:
        document = await target_store.get(CUSTOMERS, customer_id)
        assert document is not None
        return Customer.from_document(document)

    return _read


@pytest.fixture
def make_income():
    """Factory for income rows with sensible defaults."""

    def _make(**fields: Any) -> IncomeTransaction:
        fields.setdefault("start_date", date(2024, 5, 1))
        fields.setdefault("category", "daycare")
        return IncomeTransaction(**fields)

    return _make


@pytest.fixture
def make_expense():
    def _make(**fields: Any) -> ExpenseTransaction:
        fields.setdefault("start_date", date(2024, 5, 1))
        fields.setdefault("category", "supplies")
        return ExpenseTransaction(**fields)

    return _make
