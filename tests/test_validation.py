"""
Tests for two-stage transaction validation and chunked import.
"""

import pytest

from daycare_ledger.config import LedgerSettings
from daycare_ledger.ledger.importer import TransactionImporter
from daycare_ledger.ledger import ReconciliationService
from daycare_ledger.models.audit import AuditEventType
from daycare_ledger.models.transaction import IncomeTransaction
from daycare_ledger.services.storage import (
    TRANSACTIONS,
    AtomicWriteError,
    PreconditionFailedError,
)
from daycare_ledger.validation import TransactionValidationError, TransactionValidator


def payload(**fields):
    base = {"type": "income", "start_date": "2024-05-01", "price": 10000, "dog_name": "Choco"}
    base.update(fields)
    return base


class TestTransactionValidator:
    """Stage 1 schema, stage 2 pricing and linkage."""

    @pytest.mark.asyncio
    async def test_valid_payload(self):
        transaction, result = await TransactionValidator().validate(payload())
        assert isinstance(transaction, IncomeTransaction)
        assert result.is_valid
        assert result.schema_valid and result.semantic_valid
        assert result.issues == []

    @pytest.mark.asyncio
    async def test_schema_errors_skip_semantic_stage(self):
        transaction, result = await TransactionValidator().validate(
            {"type": "income", "price": "lots"}
        )
        assert transaction is None
        assert not result.schema_valid
        assert not result.semantic_valid
        fields = {issue.field for issue in result.errors}
        assert "income.start_date" in fields
        assert "income.price" in fields

    @pytest.mark.asyncio
    async def test_unknown_type(self):
        _, result = await TransactionValidator().validate({"type": "refund", "start_date": "2024-05-01"})
        assert not result.is_valid
        assert result.errors

    @pytest.mark.parametrize("field_name", ["price", "paid_amount", "quantity", "discount_value"])
    @pytest.mark.asyncio
    async def test_negative_values_are_errors(self, field_name):
        _, result = await TransactionValidator().validate(payload(**{field_name: -1}))
        assert result.schema_valid
        assert not result.semantic_valid
        assert [issue.field for issue in result.errors] == [field_name]

    @pytest.mark.asyncio
    async def test_oversized_discount_is_a_warning_not_a_fix(self):
        transaction, result = await TransactionValidator().validate(
            payload(price=10000, discount_value=15000)
        )
        assert result.is_valid
        assert [issue.issue_type for issue in result.issues] == ["negative_billed"]
        assert transaction.discount_value == 15000

    @pytest.mark.asyncio
    async def test_percent_over_100_warns(self):
        _, result = await TransactionValidator().validate(
            payload(discount_type="percent", discount_value=150)
        )
        assert result.is_valid
        assert {issue.issue_type for issue in result.issues} == {"suspicious_value", "negative_billed"}
        assert len(result.warnings) == 2

    @pytest.mark.asyncio
    async def test_unlinked_sale_warns(self, store, add_customer):
        await add_customer(store)
        validator = TransactionValidator(store)

        _, linked = await validator.validate(payload(phone="010-1234-5678"))
        _, unlinked = await validator.validate(payload(dog_name="Stranger"))

        assert linked.issues == []
        assert unlinked.is_valid
        assert [issue.issue_type for issue in unlinked.issues] == ["unlinked"]

    @pytest.mark.asyncio
    async def test_expense_is_never_unlinked(self, store):
        _, result = await TransactionValidator(store).validate(
            {"type": "expense", "start_date": "2024-05-01", "price": 5000}
        )
        assert result.issues == []

    @pytest.mark.asyncio
    async def test_validate_or_raise(self):
        with pytest.raises(TransactionValidationError) as exc_info:
            await TransactionValidator().validate_or_raise(payload(price=-5))
        assert exc_info.value.issues[0].field == "price"
        assert "Price cannot be negative" in str(exc_info.value)


class TestTransactionImporter:

    @pytest.mark.asyncio
    async def test_import_links_and_adjusts(self, store, add_customer, read_customer):
        customer = await add_customer(store)
        records = [
            payload(customer_id=customer.id, price=10000, paid_amount=4000),
            payload(phone="01012345678", price=5000, paid_amount=5000),
            payload(dog_name="Stranger", price=3000),
            {"type": "expense", "start_date": "2024-05-01", "price": 80000},
        ]

        result = await TransactionImporter(store).import_transactions(records)

        assert result.imported_count == 4
        assert result.batches_committed == 1
        assert result.total_change == -6000
        assert len(result.unlinked_transaction_ids) == 1
        assert result.warnings == ["1 income rows matched no customer"]
        assert (await read_customer(store, customer.id)).balance == -6000
        assert (await ReconciliationService(store).preview(customer.id)).drift == 0

    @pytest.mark.asyncio
    async def test_import_is_chunked(self, store, add_customer, read_customer):
        customer = await add_customer(store)
        records = [payload(customer_id=customer.id, price=1000) for _ in range(5)]
        importer = TransactionImporter(store, settings=LedgerSettings(batch_chunk_size=4))

        result = await importer.import_transactions(records)

        assert result.batches_committed == 3
        assert (await read_customer(store, customer.id)).balance == -5000

    @pytest.mark.asyncio
    async def test_invalid_record_aborts_before_writing(self, store, add_customer):
        customer = await add_customer(store)
        commits_before = store.commit_count
        records = [payload(customer_id=customer.id), payload(price=-1)]

        with pytest.raises(TransactionValidationError):
            await TransactionImporter(store).import_transactions(records)

        assert store.commit_count == commits_before
        assert await store.query(TRANSACTIONS) == []

    @pytest.mark.asyncio
    async def test_failed_chunk_stops_import(
        self, failing_store, audit_logger, audit_storage, add_customer, read_customer
    ):
        store = failing_store(fail_on=(3,))
        customer = await add_customer(store)
        records = [payload(customer_id=customer.id, price=1000) for _ in range(6)]
        importer = TransactionImporter(store, audit_logger, LedgerSettings(batch_chunk_size=4))

        with pytest.raises(AtomicWriteError) as exc_info:
            await importer.import_transactions(records)

        # Only the first chunk of two landed, with its balance effect
        committed = exc_info.value.committed
        assert committed.batches_committed == 1
        assert committed.imported_count == 2
        assert len(await store.query(TRANSACTIONS)) == 2
        assert (await read_customer(store, customer.id)).balance == -2000

        events = await audit_storage.get_recent_events()
        imported = [e for e in events if e.event_type == AuditEventType.TRANSACTIONS_IMPORTED]
        adjusted = [e for e in events if e.event_type == AuditEventType.BALANCE_ADJUSTED]
        assert len(imported) == 1
        assert imported[0].details["imported_count"] == 2
        assert sum(e.details["amount"] for e in adjusted) == -2000

    @pytest.mark.asyncio
    async def test_repeated_id_rejected_before_writing(self, store, add_customer, read_customer):
        customer = await add_customer(store)
        row = payload(customer_id=customer.id, id="dup", price=10000)
        commits_before = store.commit_count

        with pytest.raises(TransactionValidationError) as exc_info:
            await TransactionImporter(store).import_transactions([row, dict(row)])

        assert exc_info.value.issues[0].field == "id"
        assert exc_info.value.issues[0].issue_type == "duplicate"
        assert "dup" in str(exc_info.value)
        assert store.commit_count == commits_before
        assert (await read_customer(store, customer.id)).balance == 0

    @pytest.mark.asyncio
    async def test_existing_id_rejects_its_chunk(self, store, add_customer, read_customer):
        customer = await add_customer(store)
        existing = payload(customer_id=customer.id, id="dup", price=1000)
        importer = TransactionImporter(store)
        await importer.import_transactions([existing])

        with pytest.raises(PreconditionFailedError):
            await importer.import_transactions([payload(customer_id=customer.id, price=7000), existing])

        assert len(await store.query(TRANSACTIONS)) == 1
        assert (await read_customer(store, customer.id)).balance == -1000

    @pytest.mark.asyncio
    async def test_import_audited(self, store, audit_logger, audit_storage):
        await TransactionImporter(store, audit_logger).import_transactions([payload(dog_name="Stranger")])

        types = [e.event_type for e in await audit_storage.get_recent_events()]
        assert AuditEventType.TRANSACTIONS_IMPORTED in types
        assert AuditEventType.UNLINKED_TRANSACTION in types
