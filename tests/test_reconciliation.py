"""
Tests for per-customer balance reconciliation.
"""

from datetime import date

import pytest

from daycare_ledger.config import LedgerSettings
from daycare_ledger.ledger import ReconciliationService
from daycare_ledger.ledger.adjuster import prepare_for_save
from daycare_ledger.models.audit import AuditEventType
from daycare_ledger.services.storage import TRANSACTIONS, NotFoundError, WriteBatch


async def write_rows(store, *transactions):
    """Insert rows directly, bypassing the adjuster, to simulate drift."""
    batch = WriteBatch()
    for txn in transactions:
        batch.set(TRANSACTIONS, txn.id, prepare_for_save(txn))
    await store.commit(batch)


class TestReconcile:

    @pytest.mark.asyncio
    async def test_drift_is_corrected(self, store, add_customer, read_customer, make_income):
        customer = await add_customer(store, balance=12345)
        by_id = make_income(customer_id=customer.id, price=10000, paid_amount=0)
        by_phone = make_income(dog_name="Choco", phone="01012345678", price=5000, paid_amount=8000)
        by_name = make_income(dog_name="Choco", customer_name="Kim", price=2000)
        await write_rows(store, by_id, by_phone, by_name)

        result = await ReconciliationService(store).reconcile(customer.id)

        assert result.applied
        assert result.previous_balance == 12345
        assert result.new_balance == -10000 + 3000 - 2000
        assert result.drift == -9000 - 12345
        assert sorted(result.transaction_ids) == sorted([by_id.id, by_phone.id, by_name.id])
        assert (await read_customer(store, customer.id)).balance == -9000

    @pytest.mark.asyncio
    async def test_row_matching_several_queries_counts_once(self, store, add_customer, make_income):
        customer = await add_customer(store)
        everywhere = make_income(
            customer_id=customer.id,
            dog_name="Choco",
            phone="01012345678",
            customer_name="Kim",
            price=10000,
        )
        await write_rows(store, everywhere)

        result = await ReconciliationService(store).reconcile(customer.id)
        assert result.transaction_count == 1
        assert result.new_balance == -10000

    @pytest.mark.asyncio
    async def test_idempotent(self, store, add_customer, make_income):
        customer = await add_customer(store, balance=777)
        await write_rows(store, make_income(customer_id=customer.id, price=4000, paid_amount=1000))
        service = ReconciliationService(store)

        first = await service.reconcile(customer.id)
        second = await service.reconcile(customer.id)

        assert first.new_balance == second.new_balance == -3000
        assert second.drift == 0

    @pytest.mark.asyncio
    async def test_preview_does_not_write(self, store, add_customer, read_customer, make_income):
        customer = await add_customer(store, balance=500)
        await write_rows(store, make_income(customer_id=customer.id, price=4000))
        commits_before = store.commit_count

        preview = await ReconciliationService(store).preview(customer.id)

        assert not preview.applied
        assert preview.new_balance == -4000
        assert store.commit_count == commits_before
        assert (await read_customer(store, customer.id)).balance == 500

    @pytest.mark.asyncio
    async def test_row_owned_by_another_customer_is_excluded(
        self, store, add_customer, make_income
    ):
        """A valid customer_id wins over a shared fallback key."""
        choco = await add_customer(store)
        other = await add_customer(store, dog_name="Bori", phone="010-2222-3333")
        foreign = make_income(
            customer_id=other.id, dog_name="Choco", phone="01012345678", price=9000
        )
        await write_rows(store, foreign)

        service = ReconciliationService(store)
        assert (await service.preview(choco.id)).new_balance == 0
        assert (await service.preview(other.id)).new_balance == -9000

    @pytest.mark.asyncio
    async def test_expenses_are_ignored(self, store, add_customer, make_income, make_expense):
        customer = await add_customer(store)
        await write_rows(
            store,
            make_income(customer_id=customer.id, price=1000),
            make_expense(customer_id=customer.id, price=50000),
        )
        result = await ReconciliationService(store).preview(customer.id)
        assert result.new_balance == -1000
        assert result.transaction_count == 1

    @pytest.mark.asyncio
    async def test_since_filter(self, store, add_customer, make_income):
        customer = await add_customer(store)
        await write_rows(
            store,
            make_income(customer_id=customer.id, price=1000, start_date=date(2023, 12, 31)),
            make_income(customer_id=customer.id, price=2000, start_date=date(2024, 1, 1)),
        )
        settings = LedgerSettings(reconciliation_since=date(2024, 1, 1))

        result = await ReconciliationService(store, settings=settings).preview(customer.id)
        assert result.new_balance == -2000

    @pytest.mark.asyncio
    async def test_audited(self, store, audit_logger, audit_storage, add_customer):
        customer = await add_customer(store, balance=100)
        await ReconciliationService(store, audit_logger).reconcile(customer.id)

        events = await audit_storage.get_events_by_entity("customer", customer.id)
        assert [e.event_type for e in events] == [AuditEventType.BALANCE_RECONCILED]
        assert events[0].details["drift"] == -100

    @pytest.mark.asyncio
    async def test_missing_customer(self, store):
        with pytest.raises(NotFoundError):
            await ReconciliationService(store).reconcile("missing")
