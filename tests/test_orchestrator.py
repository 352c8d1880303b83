"""
Tests for the ledger context (the staff-action boundary).
"""

from datetime import date, timedelta

import pytest

import daycare_ledger.orchestrator as orchestrator_module
from daycare_ledger.config import Settings
from daycare_ledger.echo import OPTIMISTIC_FLAG
from daycare_ledger.models.attendance import AttendanceStatus
from daycare_ledger.models.audit import AuditEventType
from daycare_ledger.orchestrator import (
    ActionResult,
    Alert,
    LedgerContext,
    Topic,
    create_app_components,
)
from daycare_ledger.services.storage import (
    CUSTOMERS,
    TRANSACTIONS,
    InMemoryDocumentStore,
    WriteBatch,
)

DAY = date(2024, 5, 1)


def sale(**fields):
    base = {"type": "income", "start_date": "2024-05-01", "price": 30000, "dog_name": "Choco"}
    base.update(fields)
    return base


@pytest.fixture
def context(store, audit_logger):
    ledger_context = LedgerContext(store, audit_logger)
    ledger_context.start()
    yield ledger_context
    ledger_context.stop()


@pytest.fixture
def alerts(context):
    received = []
    context.subscribe(Topic.ALERTS, received.append)
    return received


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_subscribers_get_current_view(self, store, add_customer, context):
        await add_customer(store)
        views = []

        context.subscribe(Topic.CUSTOMERS, views.append)

        assert len(views) == 1
        assert views[0][0]["dog_name"] == "Choco"
        assert context.confirmed(Topic.CUSTOMERS) == views[0]

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, context):
        context.start()
        assert context.is_running

    @pytest.mark.asyncio
    async def test_stop_halts_publishing(self, store, audit_logger, add_customer):
        context = LedgerContext(store, audit_logger)
        context.start()
        views = []
        context.subscribe(Topic.CUSTOMERS, views.append)

        context.stop()
        seen = len(views)
        await add_customer(store)

        assert not context.is_running
        assert len(views) == seen

    def test_create_app_components(self):
        context, store, audit_logger = create_app_components()
        assert isinstance(context, LedgerContext)
        assert isinstance(store, InMemoryDocumentStore)
        assert not context.is_running

    def test_debug_mode_forces_debug_logging(self, monkeypatch):
        levels = []
        monkeypatch.setattr(orchestrator_module, "configure_log_level", levels.append)
        monkeypatch.setenv("DEBUG_MODE", "true")
        monkeypatch.setenv("LOG_LEVEL", "WARNING")

        create_app_components(Settings())

        assert levels == ["DEBUG"]


class TestSaveTransaction:

    @pytest.mark.asyncio
    async def test_save_shows_optimistic_row_then_confirmed(
        self, store, add_customer, read_customer, context
    ):
        customer = await add_customer(store)
        views = []
        context.subscribe(Topic.TRANSACTIONS, views.append)

        result = await context.save_transaction(sale(customer_id=customer.id, paid_amount=10000))

        assert isinstance(result, ActionResult)
        assert result.success
        assert result.value.change_for(customer.id) == -20000
        assert any(row.get(OPTIMISTIC_FLAG) for view in views for row in view)
        final = context.view(Topic.TRANSACTIONS)
        assert len(final) == 1
        assert OPTIMISTIC_FLAG not in final[0]
        assert (await read_customer(store, customer.id)).balance == -20000

    @pytest.mark.asyncio
    async def test_edit(self, store, add_customer, read_customer, context):
        customer = await add_customer(store)
        created = await context.save_transaction(sale(customer_id=customer.id))
        transaction_id = created.value.transaction_ids[0]

        edited = await context.save_transaction(
            sale(id=transaction_id, customer_id=customer.id, paid_amount=30000),
            is_edit=True,
        )

        assert edited.success
        assert (await read_customer(store, customer.id)).balance == 0

    @pytest.mark.asyncio
    async def test_unlinked_sale_succeeds_with_warning(self, context):
        result = await context.save_transaction(sale(dog_name="Stranger"))
        assert result.success
        assert len(result.warnings) == 1
        assert "No customer matches" in result.warnings[0]

    @pytest.mark.asyncio
    async def test_invalid_payload_alerts_without_writing(self, store, context, alerts):
        result = await context.save_transaction(sale(price=-5))

        assert not result.success
        assert alerts == [result.alert]
        assert result.alert.message.startswith("Invalid transaction")
        assert await store.query(TRANSACTIONS) == []

    @pytest.mark.asyncio
    async def test_rejected_write_rolls_back_and_alerts(
        self, failing_store, audit_logger, audit_storage, add_customer, read_customer
    ):
        # Commit 1 seeds the customer; commit 2 (the sale) is rejected
        store = failing_store(fail_on=(2,))
        customer = await add_customer(store)
        context = LedgerContext(store, audit_logger)
        context.start()
        views, alerts = [], []
        context.subscribe(Topic.TRANSACTIONS, views.append)
        context.subscribe(Topic.ALERTS, alerts.append)

        result = await context.save_transaction(sale(customer_id=customer.id))

        assert not result.success
        assert isinstance(alerts[0], Alert)
        assert alerts[0].message.startswith("Save failed")
        assert any(view for view in views)
        assert context.view(Topic.TRANSACTIONS) == []
        assert (await read_customer(store, customer.id)).balance == 0
        events = await audit_storage.get_events_by_correlation_id(result.correlation_id)
        assert [e.event_type for e in events] == [AuditEventType.WRITE_FAILED]
        context.stop()

    @pytest.mark.asyncio
    async def test_paid_amount_and_stop_service(self, store, add_customer, read_customer, context):
        customer = await add_customer(store)
        created = await context.save_transaction(sale(customer_id=customer.id, is_running=True))
        transaction_id = created.value.transaction_ids[0]

        paid = await context.update_paid_amount(transaction_id, 30000)
        stopped = await context.stop_service(transaction_id, end_date=DAY, end_time="18:00")

        assert paid.success and stopped.success
        assert (await read_customer(store, customer.id)).balance == 0
        row = context.confirmed(Topic.TRANSACTIONS)[0]
        assert row["is_running"] is False
        assert row["paid_amount"] == 30000


class TestTwoStepDelete:

    @pytest.mark.asyncio
    async def test_request_changes_nothing(self, store, add_customer, read_customer, context):
        customer = await add_customer(store)
        created = await context.save_transaction(sale(customer_id=customer.id))

        confirmation = await context.request_delete(created.value.transaction_ids)

        assert confirmation.balance_reversal == 30000
        assert (await read_customer(store, customer.id)).balance == -30000
        assert len(await store.query(TRANSACTIONS)) == 1

    @pytest.mark.asyncio
    async def test_confirm_deletes_once(self, store, add_customer, read_customer, context, alerts):
        customer = await add_customer(store)
        first = await context.save_transaction(sale(customer_id=customer.id))
        second = await context.save_transaction(sale(customer_id=customer.id, price=10000))
        ids = first.value.transaction_ids + second.value.transaction_ids

        confirmation = await context.request_delete(ids)
        deleted = await context.confirm_delete(confirmation.token)
        replayed = await context.confirm_delete(confirmation.token)

        assert deleted.success
        assert deleted.value.total_change == 40000
        assert not replayed.success
        assert len(alerts) == 1
        assert (await read_customer(store, customer.id)).balance == 0
        assert context.view(Topic.TRANSACTIONS) == []

    @pytest.mark.asyncio
    async def test_cancelled_delete_cannot_be_confirmed(self, store, add_customer, context):
        customer = await add_customer(store)
        created = await context.save_transaction(sale(customer_id=customer.id))

        confirmation = await context.request_delete(created.value.transaction_ids)
        context.cancel_delete(confirmation.token)
        result = await context.confirm_delete(confirmation.token)

        assert not result.success
        assert len(await store.query(TRANSACTIONS)) == 1

    @pytest.mark.asyncio
    async def test_expired_request_cannot_be_confirmed(self, store, add_customer, context, alerts):
        customer = await add_customer(store)
        created = await context.save_transaction(sale(customer_id=customer.id))

        confirmation = await context.request_delete(created.value.transaction_ids)
        confirmation.expires_at -= timedelta(hours=1)
        result = await context.confirm_delete(confirmation.token)

        assert not result.success
        assert "expired" in alerts[0].message
        assert len(await store.query(TRANSACTIONS)) == 1

    @pytest.mark.asyncio
    async def test_unconfirmed_requests_are_capped(self, store, audit_logger, add_customer, monkeypatch):
        monkeypatch.setenv("LEDGER_MAX_PENDING_DELETES", "2")
        context = LedgerContext(store, audit_logger)
        context.start()
        customer = await add_customer(store)
        created = await context.save_transaction(sale(customer_id=customer.id))
        ids = created.value.transaction_ids

        oldest = await context.request_delete(ids)
        await context.request_delete(ids)
        newest = await context.request_delete(ids)

        assert not (await context.confirm_delete(oldest.token)).success
        assert (await context.confirm_delete(newest.token)).success
        assert await store.query(TRANSACTIONS) == []
        context.stop()

    @pytest.mark.asyncio
    async def test_partial_delete_reports_what_landed(
        self, failing_store, audit_logger, add_customer, read_customer, monkeypatch
    ):
        # Commit 1 seeds the customer, 2-5 save rows, 6 is chunk one, 7 fails
        monkeypatch.setenv("LEDGER_BATCH_CHUNK_SIZE", "4")
        store = failing_store(fail_on=(7,))
        customer = await add_customer(store)
        context = LedgerContext(store, audit_logger)
        context.start()
        ids = []
        for _ in range(4):
            saved = await context.save_transaction(sale(customer_id=customer.id, price=1000))
            ids.extend(saved.value.transaction_ids)

        confirmation = await context.request_delete(ids)
        result = await context.confirm_delete(confirmation.token)

        assert not result.success
        assert result.value.transaction_ids == ids[:2]
        assert result.value.batches_committed == 1
        assert (await read_customer(store, customer.id)).balance == -2000
        assert len(context.view(Topic.TRANSACTIONS)) == 2
        context.stop()



class TestOtherActions:

    @pytest.mark.asyncio
    async def test_exhausted_ticket_needs_confirmation(self, store, add_customer, read_customer, context):
        customer = await add_customer(store)

        asked = await context.mark_attendance(customer.id, AttendanceStatus.PRESENT, day=DAY)
        assert asked.success
        assert asked.requires_confirmation
        assert context.view(Topic.ATTENDANCE) == []

        forced = await context.mark_attendance(customer.id, AttendanceStatus.PRESENT, day=DAY, force=True)
        assert forced.success
        assert not forced.requires_confirmation
        assert context.view(Topic.ATTENDANCE)[0]["status"] == "present"
        assert (await read_customer(store, customer.id)).ticket.remaining == -1

    @pytest.mark.asyncio
    async def test_ticket_actions(self, store, add_customer, context, alerts):
        customer = await add_customer(store)

        assert (await context.init_ticket(customer.id, 10, start_date=DAY)).success
        assert (await context.charge_ticket(customer.id, 5)).success
        assert (await context.adjust_ticket(customer.id, -1, "Park", "Miscounted")).success
        rejected = await context.charge_ticket(customer.id, 0)

        assert not rejected.success
        assert len(alerts) == 1
        ticket = await context.queries.get_ticket(customer.id, on=DAY)
        assert ticket.remaining == 14
        assert ticket.is_consistent

    @pytest.mark.asyncio
    async def test_reconcile_and_preview(self, store, add_customer, context):
        customer = await add_customer(store, balance=999)

        preview = await context.preview_reconciliation(customer.id)
        reconciled = await context.reconcile_customer(customer.id)

        assert preview.value.drift == -999
        assert not preview.value.applied
        assert reconciled.value.applied
        assert context.confirmed(Topic.CUSTOMERS)[0]["balance"] == 0

    @pytest.mark.asyncio
    async def test_reconcile_unknown_customer_alerts(self, context, alerts):
        result = await context.reconcile_customer("missing")
        assert not result.success
        assert len(alerts) == 1

    @pytest.mark.asyncio
    async def test_import(self, store, add_customer, read_customer, context):
        customer = await add_customer(store)
        result = await context.import_transactions([
            sale(customer_id=customer.id, price=1000),
            sale(customer_id=customer.id, price=2000),
        ])
        assert result.success
        assert result.value.imported_count == 2
        assert (await read_customer(store, customer.id)).balance == -3000

    @pytest.mark.asyncio
    async def test_broken_subscriber_is_contained(self, store, add_customer, context):
        def broken(view):
            if view:
                raise RuntimeError("render failed")

        context.subscribe(Topic.CUSTOMERS, broken)
        customer = await add_customer(store)
        await store.commit(WriteBatch().update(CUSTOMERS, customer.id, {"owner_name": "Lee"}))
        assert context.confirmed(Topic.CUSTOMERS)[0]["owner_name"] == "Lee"


class TestDaycareScenario:
    """One credit left, a fully paid stay, then a forced check-in."""

    @pytest.mark.asyncio
    async def test_scenario(self, store, add_customer, read_customer, context):
        customer = await add_customer(store)
        await context.init_ticket(customer.id, 1, start_date=DAY)

        first_day = await context.mark_attendance(customer.id, AttendanceStatus.PRESENT, day=DAY)
        assert first_day.value.remaining == 0

        paid = await context.save_transaction(
            sale(customer_id=customer.id, price=50000, paid_amount=50000)
        )
        assert paid.value.effects == []

        next_day = date(2024, 5, 2)
        asked = await context.mark_attendance(customer.id, AttendanceStatus.PRESENT, day=next_day)
        assert asked.requires_confirmation
        stored = await read_customer(store, customer.id)
        assert stored.ticket.remaining == 0
        assert [log.type.value for log in stored.ticket.history] == ["init", "use"]

        forced = await context.mark_attendance(
            customer.id, AttendanceStatus.PRESENT, day=next_day, force=True
        )
        assert forced.success
        stored = await read_customer(store, customer.id)
        assert stored.ticket.remaining == -1
        assert stored.balance == 0


class BrokenStore(InMemoryDocumentStore):
    async def commit(self, batch):
        raise RuntimeError("driver bug")


class TestUnexpectedErrors:

    @pytest.mark.asyncio
    async def test_bugs_are_audited_and_propagate(self, audit_logger, audit_storage):
        context = LedgerContext(BrokenStore(), audit_logger)
        context.start()

        with pytest.raises(RuntimeError):
            await context.save_transaction(sale(dog_name="Stranger"))

        events = await audit_storage.get_recent_events()
        assert [e.event_type for e in events] == [AuditEventType.SYSTEM_ERROR]
        assert events[0].details["action"] == "create_transaction"
        assert context.view(Topic.TRANSACTIONS) == []
        context.stop()
