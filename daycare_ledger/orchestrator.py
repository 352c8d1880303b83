"""
Main Orchestrator for Daycare Ledger

This module ties together all the components behind one application
service, `LedgerContext`, which staff-facing front ends talk to:

1. Ledger writes (sale, edit, paid-amount change, stop service, delete)
2. Attendance marks and ticket flows
3. Reconciliation and bulk import
4. Live views (customers, transactions, attendance) pushed to subscribers

DESIGN DECISION: The context is the UI-action boundary and enforces it:
- Every action is one atomic store write (or one chunk at a time)
- A failed write is NEVER retried; the optimistic preview is rolled
  back, the failure is audited and an Alert is published
- Destructive actions need two steps: request, then confirm
- Nothing here is ambient global state; consumers get the context
  injected and subscribe to typed topics

This is the "glue" that ensures the system stays consistent even when
individual writes are rejected.
"""

from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union
from uuid import UUID, uuid4

import structlog
from pydantic import BaseModel, Field

from daycare_ledger.attendance import AttendanceLedger
from daycare_ledger.audit import AuditLogger, configure_log_level, create_correlation_id
from daycare_ledger.config import Settings, get_settings
from daycare_ledger.echo import OptimisticOverlay
from daycare_ledger.ledger import BalanceAdjuster, ReconciliationService, calculate_diff
from daycare_ledger.ledger.adjuster import prepare_for_save
from daycare_ledger.ledger.importer import TransactionImporter
from daycare_ledger.models.attendance import AttendanceStatus, attendance_doc_id
from daycare_ledger.models.keys import utcnow
from daycare_ledger.models.transaction import ExpenseTransaction, IncomeTransaction
from daycare_ledger.queries import LedgerQueries
from daycare_ledger.services.storage import (
    ATTENDANCE_LOGS,
    CUSTOMERS,
    TRANSACTIONS,
    DocumentStore,
    InMemoryAuditStorage,
    InMemoryDocumentStore,
    StorageError,
    get_document,
)
from daycare_ledger.validation import TransactionValidationError, TransactionValidator

logger = structlog.get_logger(__name__)

# Document store and audit storage per `STORE_BACKEND`
STORE_BACKENDS = {
    "memory": (InMemoryDocumentStore, InMemoryAuditStorage),
}

TransactionModel = Union[IncomeTransaction, ExpenseTransaction]
Listener = Callable[[Any], None]


# =============================================================================
# PUBLISHED TYPES
# =============================================================================

class Topic(str, Enum):
    """Topics consumers can subscribe to."""
    CUSTOMERS = "customers"
    TRANSACTIONS = "transactions"
    ATTENDANCE = "attendance"
    ALERTS = "alerts"


class Alert(BaseModel):
    """A blocking, user-visible failure notice."""

    alert_id: UUID = Field(default_factory=uuid4)
    action: str
    message: str
    severity: str = Field(default="error", pattern="^(error|warning)$")
    correlation_id: Optional[UUID] = None
    created_at: datetime = Field(default_factory=utcnow)


class ActionResult(BaseModel):
    """Outcome of one staff action."""

    action: str
    success: bool
    correlation_id: UUID
    value: Any = Field(
        default=None,
        description="The action's result; for a failed chunked write, what was already applied"
    )
    alert: Optional[Alert] = None
    warnings: list[str] = Field(default_factory=list)
    requires_confirmation: bool = Field(
        default=False,
        description="Nothing was applied; resubmit after staff confirm"
    )


class DeleteConfirmation(BaseModel):
    """
    First step of a destructive action.

    Nothing is deleted until `confirm_delete(token)` is called.
    Requests expire after `delete_confirmation_ttl_seconds`.
    """

    token: str = Field(default_factory=lambda: uuid4().hex)
    transaction_ids: list[str]
    balance_reversal: int = Field(
        ...,
        description="Preview of the summed balance change (confirmed state)"
    )
    message: str
    expires_at: datetime


# =============================================================================
# CONTEXT
# =============================================================================

class LedgerContext:
    """
    Publish/subscribe application service with an explicit lifecycle.

    Usage:
        context = LedgerContext(store, audit_logger)
        context.start()
        context.subscribe(Topic.ALERTS, show_alert)
        result = await context.save_transaction(payload)
        ...
        context.stop()
    """

    def __init__(
        self,
        store: DocumentStore,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self._store = store
        self._ledger_settings = settings.ledger
        self._audit_logger = audit_logger or AuditLogger()

        self._adjuster = BalanceAdjuster(store, self._audit_logger, settings.ledger)
        self._reconciliation = ReconciliationService(store, self._audit_logger, settings.ledger)
        self._importer = TransactionImporter(store, self._audit_logger, settings.ledger)
        self._attendance = AttendanceLedger(store, self._audit_logger, settings.ledger)
        self._validator = TransactionValidator(store)
        self._queries = LedgerQueries(store)

        self._subscribers: dict[Topic, list[Listener]] = {topic: [] for topic in Topic}
        self._overlays = {
            Topic.CUSTOMERS: OptimisticOverlay(
                CUSTOMERS, on_change=lambda view: self._publish(Topic.CUSTOMERS, view)
            ),
            Topic.TRANSACTIONS: OptimisticOverlay(
                TRANSACTIONS, on_change=lambda view: self._publish(Topic.TRANSACTIONS, view)
            ),
            Topic.ATTENDANCE: OptimisticOverlay(
                ATTENDANCE_LOGS, on_change=lambda view: self._publish(Topic.ATTENDANCE, view)
            ),
        }
        self._store_unsubscribes: list[Callable[[], None]] = []
        self._pending_deletes: dict[str, DeleteConfirmation] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return bool(self._store_unsubscribes)

    def start(self) -> None:
        """Open live queries on every collection. Idempotent."""
        if self.is_running:
            return
        for topic, collection in (
            (Topic.CUSTOMERS, CUSTOMERS),
            (Topic.TRANSACTIONS, TRANSACTIONS),
            (Topic.ATTENDANCE, ATTENDANCE_LOGS),
        ):
            self._store_unsubscribes.append(
                self._store.subscribe(collection, self._overlays[topic].apply_snapshot)
            )
        logger.info("ledger_context_started")

    def stop(self) -> None:
        """Close live queries and discard unconfirmed state."""
        for unsubscribe in self._store_unsubscribes:
            unsubscribe()
        self._store_unsubscribes.clear()
        for overlay in self._overlays.values():
            overlay.clear_pending()
        self._pending_deletes.clear()
        logger.info("ledger_context_stopped")

    # ------------------------------------------------------------------
    # Subscriptions and views
    # ------------------------------------------------------------------

    def subscribe(self, topic: Topic, listener: Listener) -> Callable[[], None]:
        """
        Register a listener for a topic.

        View topics call the listener immediately with the current view.

        Returns:
            A callable that removes the listener
        """
        topic = Topic(topic)
        self._subscribers[topic].append(listener)
        if topic in self._overlays and self._overlays[topic].has_snapshot:
            listener(self._overlays[topic].view())

        def unsubscribe() -> None:
            if listener in self._subscribers[topic]:
                self._subscribers[topic].remove(listener)

        return unsubscribe

    def view(self, topic: Topic) -> list[dict[str, Any]]:
        """Current projection (confirmed state plus optimistic overlays)."""
        return self._overlays[Topic(topic)].view()

    def confirmed(self, topic: Topic) -> list[dict[str, Any]]:
        return self._overlays[Topic(topic)].confirmed()

    def _publish(self, topic: Topic, payload: Any) -> None:
        for listener in list(self._subscribers[topic]):
            try:
                listener(payload)
            except Exception:
                logger.exception("subscriber_failed", topic=topic.value)

    # ------------------------------------------------------------------
    # Ledger commands
    # ------------------------------------------------------------------

    async def save_transaction(
        self,
        payload: Union[dict[str, Any], TransactionModel],
        is_edit: bool = False,
    ) -> ActionResult:
        """Validate and save a sale or expense (create, or edit when `is_edit`)."""
        action = "update_transaction" if is_edit else "create_transaction"
        correlation_id = create_correlation_id()
        overlay = self._overlays[Topic.TRANSACTIONS]

        async def write():
            transaction, validation = await self._validator.validate_or_raise(payload)
            writer = self._adjuster.update_transaction if is_edit else self._adjuster.create_transaction
            adjustment = await overlay.run(
                transaction.id,
                prepare_for_save(transaction),
                lambda: writer(transaction, correlation_id),
            )
            return adjustment, validation.warnings

        return await self._run_action(action, correlation_id, write, returns_warnings=True)

    async def update_paid_amount(self, transaction_id: str, paid_amount: int) -> ActionResult:
        """Inline paid-amount edit."""
        correlation_id = create_correlation_id()
        overlay = self._overlays[Topic.TRANSACTIONS]

        async def write():
            record = overlay.confirmed_record(transaction_id)
            if record is None:
                return await self._adjuster.update_paid_amount(transaction_id, paid_amount, correlation_id)
            record["paid_amount"] = paid_amount
            return await overlay.run(
                transaction_id,
                record,
                lambda: self._adjuster.update_paid_amount(transaction_id, paid_amount, correlation_id),
            )

        return await self._run_action("update_paid_amount", correlation_id, write)

    async def stop_service(
        self,
        transaction_id: str,
        end_date: Optional[date] = None,
        end_time: Optional[str] = None,
    ) -> ActionResult:
        correlation_id = create_correlation_id()
        return await self._run_action(
            "stop_service",
            correlation_id,
            lambda: self._adjuster.stop_service(transaction_id, end_date, end_time, correlation_id),
        )

    async def request_delete(self, transaction_ids: list[str]) -> DeleteConfirmation:
        """
        Step one of a delete: describe what would happen, change nothing.

        The reversal preview is computed from confirmed store state.
        """
        transaction_ids = list(dict.fromkeys(transaction_ids))
        reversal = 0
        for transaction_id in transaction_ids:
            document = await get_document(self._store, TRANSACTIONS, transaction_id)
            if document is not None:
                reversal -= calculate_diff(document)

        confirmation = DeleteConfirmation(
            transaction_ids=transaction_ids,
            balance_reversal=reversal,
            message=f"Delete {len(transaction_ids)} transaction(s)? This cannot be undone.",
            expires_at=utcnow() + timedelta(
                seconds=self._ledger_settings.delete_confirmation_ttl_seconds
            ),
        )
        self._prune_pending_deletes()
        self._pending_deletes[confirmation.token] = confirmation
        return confirmation

    def _prune_pending_deletes(self) -> None:
        """Drop expired requests, then the oldest ones beyond the cap."""
        now = utcnow()
        for token, pending in list(self._pending_deletes.items()):
            if pending.expires_at <= now:
                del self._pending_deletes[token]
        while len(self._pending_deletes) >= self._ledger_settings.max_pending_deletes:
            oldest = next(iter(self._pending_deletes))
            logger.info("pending_delete_dropped", token=oldest)
            del self._pending_deletes[oldest]

    def cancel_delete(self, token: str) -> None:
        self._pending_deletes.pop(token, None)

    async def confirm_delete(self, token: str) -> ActionResult:
        """Step two of a delete. Unknown, used or expired tokens delete nothing."""
        correlation_id = create_correlation_id()
        confirmation = self._pending_deletes.pop(token, None)
        if confirmation is None:
            return self._fail(
                "delete_transactions",
                correlation_id,
                "This delete was not requested or was already handled",
            )
        if confirmation.expires_at <= utcnow():
            return self._fail(
                "delete_transactions",
                correlation_id,
                "This delete request expired; request it again",
            )

        overlay = self._overlays[Topic.TRANSACTIONS]
        ids = confirmation.transaction_ids

        async def write():
            tokens = [overlay.begin(transaction_id) for transaction_id in ids]
            try:
                if len(ids) == 1:
                    result = await self._adjuster.delete_transaction(ids[0], correlation_id)
                else:
                    result = await self._adjuster.batch_delete_transactions(ids, correlation_id)
            except BaseException:
                for pending in tokens:
                    overlay.rollback(pending)
                raise
            for pending in tokens:
                overlay.confirm(pending)
            return result

        return await self._run_action("delete_transactions", correlation_id, write)

    async def import_transactions(self, records: list[dict[str, Any]]) -> ActionResult:
        correlation_id = create_correlation_id()
        return await self._run_action(
            "import_transactions",
            correlation_id,
            lambda: self._importer.import_transactions(records, correlation_id),
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile_customer(self, customer_id: str) -> ActionResult:
        """Manually triggered full recompute of one customer's balance."""
        correlation_id = create_correlation_id()
        return await self._run_action(
            "reconcile_customer",
            correlation_id,
            lambda: self._reconciliation.reconcile(customer_id, correlation_id),
        )

    async def preview_reconciliation(self, customer_id: str) -> ActionResult:
        correlation_id = create_correlation_id()
        return await self._run_action(
            "preview_reconciliation",
            correlation_id,
            lambda: self._reconciliation.preview(customer_id),
        )

    # ------------------------------------------------------------------
    # Attendance and tickets
    # ------------------------------------------------------------------

    async def mark_attendance(
        self,
        dog_id: str,
        status: AttendanceStatus,
        day: Optional[date] = None,
        force: bool = False,
        customer_id: Optional[str] = None,
    ) -> ActionResult:
        """
        Mark a dog's attendance.

        When the ticket is exhausted the result has
        `requires_confirmation=True` and nothing was applied; call again
        with `force=True` after staff confirm.
        """
        correlation_id = create_correlation_id()
        day = day or date.today()
        overlay = self._overlays[Topic.ATTENDANCE]
        doc_id = attendance_doc_id(day, dog_id)
        record = overlay.confirmed_record(doc_id) or {
            "date": day.isoformat(),
            "dog_id": dog_id,
        }
        record["status"] = AttendanceStatus(status).value

        async def write():
            pending = overlay.begin(doc_id, record)
            try:
                result = await self._attendance.mark_attendance(
                    dog_id, status, day, force, customer_id, correlation_id
                )
            except BaseException:
                overlay.rollback(pending)
                raise
            if result.requires_confirmation:
                overlay.rollback(pending)
            else:
                overlay.confirm(pending)
            return result

        action_result = await self._run_action("mark_attendance", correlation_id, write)
        if action_result.success and action_result.value.requires_confirmation:
            action_result.requires_confirmation = True
        return action_result

    async def charge_ticket(
        self,
        customer_id: str,
        count: int,
        expiry_date: Optional[date] = None,
        staff_name: Optional[str] = None,
        reason: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> ActionResult:
        correlation_id = create_correlation_id()
        return await self._run_action(
            "charge_ticket",
            correlation_id,
            lambda: self._attendance.charge_ticket(
                customer_id, count, expiry_date, staff_name, reason, transaction_id, correlation_id
            ),
        )

    async def init_ticket(
        self,
        customer_id: str,
        count: int,
        start_date: Optional[date] = None,
        expiry_date: Optional[date] = None,
        staff_name: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> ActionResult:
        correlation_id = create_correlation_id()
        return await self._run_action(
            "init_ticket",
            correlation_id,
            lambda: self._attendance.init_ticket(
                customer_id, count, start_date, expiry_date, staff_name, reason, correlation_id
            ),
        )

    async def adjust_ticket(
        self,
        customer_id: str,
        amount: int,
        staff_name: str,
        reason: str,
    ) -> ActionResult:
        correlation_id = create_correlation_id()
        return await self._run_action(
            "adjust_ticket",
            correlation_id,
            lambda: self._attendance.adjust_ticket(
                customer_id, amount, staff_name, reason, correlation_id
            ),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def queries(self) -> LedgerQueries:
        """Read models over confirmed store state."""
        return self._queries

    # ------------------------------------------------------------------
    # Action boundary
    # ------------------------------------------------------------------

    async def _run_action(
        self,
        action: str,
        correlation_id: UUID,
        write: Callable[[], Awaitable[Any]],
        returns_warnings: bool = False,
    ) -> ActionResult:
        """
        Run one staff action and turn failures into alerts.

        Only expected failures are handled here: rejected or failed store
        operations and invalid input. Anything else is a bug; it is
        audited and propagates.
        """
        try:
            value = await write()
        except StorageError as e:
            logger.warning("action_write_failed", action=action, error=str(e))
            await self._audit_logger.log_write_failed(
                action=action,
                error_message=str(e),
                correlation_id=correlation_id,
            )
            return self._fail(action, correlation_id, f"Save failed: {e}", value=e.committed)
        except TransactionValidationError as e:
            return self._fail(action, correlation_id, f"Invalid transaction: {e}")
        except ValueError as e:
            return self._fail(action, correlation_id, str(e))
        except Exception as e:
            await self._audit_logger.log_error(
                error_type=type(e).__name__,
                error_message=str(e),
                details={"action": action},
                correlation_id=correlation_id,
            )
            raise

        warnings: list[str] = []
        if returns_warnings:
            value, warnings = value
        return ActionResult(
            action=action,
            success=True,
            correlation_id=correlation_id,
            value=value,
            warnings=warnings,
        )

    def _fail(
        self,
        action: str,
        correlation_id: UUID,
        message: str,
        value: Any = None,
    ) -> ActionResult:
        alert = Alert(action=action, message=message, correlation_id=correlation_id)
        self._publish(Topic.ALERTS, alert)
        return ActionResult(
            action=action,
            success=False,
            correlation_id=correlation_id,
            value=value,
            alert=alert,
        )


def create_app_components(
    settings: Optional[Settings] = None,
) -> tuple[LedgerContext, DocumentStore, AuditLogger]:
    """
    Factory function to create all application components.

    Returns:
        (ledger_context, document_store, audit_logger)
    """
    settings = settings or get_settings()
    app_settings = settings.app
    store_settings = settings.store
    configure_log_level("DEBUG" if app_settings.debug_mode else app_settings.log_level)

    store_class, audit_class = STORE_BACKENDS[store_settings.backend]
    store = store_class()
    audit_logger = AuditLogger(audit_class())
    context = LedgerContext(store, audit_logger, settings)
    logger.info(
        "app_components_created",
        environment=app_settings.app_environment,
        backend=store_settings.backend,
        debug=app_settings.debug_mode,
    )
    return context, store, audit_logger
