"""
Attendance Ticket Ledger

A per-(dog, date) state machine that deducts or restores prepaid
day-care credits exactly once per attendance transition.

    absent  -> present   remaining -= 1, `use` log, arrival time,
                         planned-date signal for pickup planning
    present -> absent    remaining += 1, `restore` log
    home    -> absent    remaining += 1, `restore` log
    present <-> home     status and timestamps only

CRITICAL: The deduct/restore decision compares the requested status with
the PREVIOUSLY PERSISTED status, never with the request alone. Two layers
make that comparison hold under concurrent calls:

1. An in-process lock per paying customer serializes marks from this
   process for every dog of the household, since they share one ticket
2. Every batch carries a compare-and-swap on the stored status, and an
   unforced check-in also compares the stored `ticket.remaining` with
   the value the exhausted-ticket check saw. A write from another process
   between our read and our commit makes the store reject the batch
   instead of double-deducting or skipping the confirmation

When the ticket is exhausted a check-in is NOT applied: the call returns
REQUIRE_CONFIRM and the caller resubmits with force=True. A forced
check-in may drive `remaining` below zero.

Ticket purchases (charge), resets (init) and staff corrections (adjust)
are separate flows that never touch attendance state.
"""

import asyncio
import weakref
from datetime import date, datetime
from typing import Any, Optional
from uuid import UUID

import structlog

from daycare_ledger.audit import AuditLogger, create_correlation_id
from daycare_ledger.config import LedgerSettings, get_settings
from daycare_ledger.models.attendance import (
    AttendanceMarkResult,
    AttendanceOutcome,
    AttendanceStatus,
    attendance_doc_id,
)
from daycare_ledger.models.audit import AuditEventType
from daycare_ledger.models.customer import Customer, TicketLog, TicketLogType
from daycare_ledger.models.keys import utcnow
from daycare_ledger.services.storage import (
    ATTENDANCE_LOGS,
    CUSTOMERS,
    TRANSACTIONS,
    ArrayUnion,
    DocumentStore,
    Increment,
    NotFoundError,
    WriteBatch,
    get_document,
)

logger = structlog.get_logger(__name__)


def _clock() -> str:
    """Local wall-clock time as HH:MM, as shown on the attendance board."""
    return datetime.now().strftime("%H:%M")


class AttendanceLedger:
    """
    Attendance marking and ticket bookkeeping.

    Usage:
        ledger = AttendanceLedger(store, audit_logger)
        result = await ledger.mark_attendance(dog_id, AttendanceStatus.PRESENT)
        if result.requires_confirmation:
            # ask staff, then
            result = await ledger.mark_attendance(dog_id, AttendanceStatus.PRESENT, force=True)
    """

    def __init__(
        self,
        store: DocumentStore,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        self._store = store
        self._audit_logger = audit_logger
        self._settings = settings or get_settings().ledger
        # Entries disappear once no mark holds or waits on them
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()

    def _lock_for(self, customer_id: str) -> asyncio.Lock:
        lock = self._locks.get(customer_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[customer_id] = lock
        return lock

    async def get_status(self, dog_id: str, day: Optional[date] = None) -> AttendanceStatus:
        """Persisted status for (dog, day); `absent` when nothing is stored."""
        document = await get_document(
            self._store, ATTENDANCE_LOGS, attendance_doc_id(day or date.today(), dog_id)
        )
        if document is None or not document.get("status"):
            return AttendanceStatus.ABSENT
        return AttendanceStatus(document["status"])

    async def mark_attendance(
        self,
        dog_id: str,
        status: AttendanceStatus,
        day: Optional[date] = None,
        force: bool = False,
        customer_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AttendanceMarkResult:
        """
        Apply one attendance transition.

        Args:
            dog_id: The dog being marked (a household sub-dog or the primary dog)
            status: Requested status
            day: Attendance date (default: today)
            force: Apply a check-in even when no credits are left
            customer_id: Household customer whose ticket pays (default: dog_id)

        Returns:
            AttendanceMarkResult; outcome REQUIRE_CONFIRM means nothing changed

        Raises:
            NotFoundError: If the paying customer does not exist
            PreconditionFailedError: If the status or the ticket changed concurrently
            AtomicWriteError: If the store rejects the batch
        """
        status = AttendanceStatus(status)
        day = day or date.today()
        customer_id = customer_id or dog_id
        correlation_id = correlation_id or create_correlation_id()
        doc_id = attendance_doc_id(day, dog_id)

        async with self._lock_for(customer_id):
            customer = await self._load_customer(customer_id)
            existing = await get_document(self._store, ATTENDANCE_LOGS, doc_id)
            stored_status = existing.get("status") if existing else None
            previous = AttendanceStatus(stored_status) if stored_status else AttendanceStatus.ABSENT
            remaining = customer.ticket.remaining

            result = AttendanceMarkResult(
                outcome=AttendanceOutcome.APPLIED,
                dog_id=dog_id,
                customer_id=customer_id,
                date=day,
                previous_status=previous,
                status=status,
                remaining=remaining,
            )

            batch = WriteBatch()
            batch.require(ATTENDANCE_LOGS, doc_id, "status", stored_status)
            customer_fields: dict[str, Any] = {}

            if status == AttendanceStatus.PRESENT and not previous.counts_as_attended:
                if remaining <= 0 and not force:
                    result.outcome = AttendanceOutcome.REQUIRE_CONFIRM
                    result.status = previous
                    logger.info(
                        "attendance_needs_confirmation",
                        dog_id=dog_id,
                        customer_id=customer_id,
                        remaining=remaining,
                    )
                    if self._audit_logger:
                        await self._audit_logger.log_confirmation_required(
                            customer_id=customer_id,
                            dog_id=dog_id,
                            remaining=remaining,
                            correlation_id=correlation_id,
                        )
                    return result

                if not force:
                    batch.require(CUSTOMERS, customer_id, "ticket.remaining", remaining)
                log = self._ticket_log(
                    TicketLogType.USE, -1, remaining, reason=f"{day.isoformat()} check-in"
                )
                customer_fields.update(self._ticket_fields(log))
                result.ticket_delta, result.remaining, result.ticket_log = -1, remaining - 1, log

            elif status == AttendanceStatus.ABSENT and previous.counts_as_attended:
                log = self._ticket_log(
                    TicketLogType.RESTORE, 1, remaining, reason=f"{day.isoformat()} check-in undone"
                )
                customer_fields.update(self._ticket_fields(log))
                result.ticket_delta, result.remaining, result.ticket_log = 1, remaining + 1, log

            attendance: dict[str, Any] = {
                "date": day.isoformat(),
                "dog_id": dog_id,
                "dog_name": customer.find_dog_name(dog_id) or "",
                "status": status.value,
                "updated_at": utcnow().isoformat(),
            }
            if status == AttendanceStatus.PRESENT:
                if existing is None:
                    attendance["arrival_time"] = _clock()
                plan_key = attendance_doc_id(day, dog_id)
                if day.isoformat() not in customer.planned_dates and plan_key not in customer.planned_dates:
                    customer_fields["planned_dates"] = ArrayUnion(plan_key)
            elif status == AttendanceStatus.HOME:
                attendance["pickup_time"] = _clock()

            batch.set(ATTENDANCE_LOGS, doc_id, attendance, merge=True)
            if customer_fields:
                batch.update(CUSTOMERS, customer_id, customer_fields)
            await self._store.commit(batch)

        logger.info(
            "attendance_marked",
            dog_id=dog_id,
            day=day.isoformat(),
            previous=previous.value,
            status=status.value,
            ticket_delta=result.ticket_delta,
        )
        if self._audit_logger:
            await self._audit_logger.log_attendance_marked(
                dog_id=dog_id,
                day=day.isoformat(),
                previous_status=previous.value,
                status=status.value,
                correlation_id=correlation_id,
            )
            if result.ticket_log is not None:
                await self._audit_logger.log_ticket_changed(
                    event_type=(
                        AuditEventType.TICKET_USED if result.ticket_delta < 0
                        else AuditEventType.TICKET_RESTORED
                    ),
                    customer_id=customer_id,
                    amount=result.ticket_delta,
                    new_remaining=result.remaining,
                    reason=result.ticket_log.reason,
                    correlation_id=correlation_id,
                )
        return result

    async def charge_ticket(
        self,
        customer_id: str,
        count: int,
        expiry_date: Optional[date] = None,
        staff_name: Optional[str] = None,
        reason: Optional[str] = None,
        transaction_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> TicketLog:
        """
        Add purchased credits: `remaining += count`, expiry overwritten.

        When `transaction_id` names the sale that paid for the credits,
        that row is marked `ticket_processed` in the same batch and the
        batch is rejected if it was already processed, so one sale can
        never be charged twice.

        Raises:
            ValueError: If count is not positive
            NotFoundError: If the customer does not exist
            PreconditionFailedError: If the sale was already processed
        """
        if count < 1:
            raise ValueError("Ticket charge count must be at least 1")
        correlation_id = correlation_id or create_correlation_id()
        customer = await self._load_customer(customer_id)

        log = self._ticket_log(
            TicketLogType.CHARGE,
            count,
            customer.ticket.remaining,
            staff_name=staff_name,
            reason=reason or f"{count} credits purchased",
        )
        fields = self._ticket_fields(log)
        if expiry_date is not None:
            fields["ticket.expiry_date"] = expiry_date.isoformat()

        batch = WriteBatch()
        batch.update(CUSTOMERS, customer_id, fields)
        if transaction_id:
            batch.require(TRANSACTIONS, transaction_id, "ticket_processed", False)
            batch.update(TRANSACTIONS, transaction_id, {
                "ticket_processed": True,
                "revision": Increment(1),
            })
        await self._store.commit(batch)

        await self._audit_ticket(AuditEventType.TICKET_CHARGED, customer_id, log, correlation_id)
        return log

    async def init_ticket(
        self,
        customer_id: str,
        count: int,
        start_date: Optional[date] = None,
        expiry_date: Optional[date] = None,
        staff_name: Optional[str] = None,
        reason: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> TicketLog:
        """
        Start a fresh package: `total = remaining = count`.

        The history is kept; the `init` entry marks where replay restarts.
        """
        if count < 0:
            raise ValueError("Ticket count cannot be negative")
        correlation_id = correlation_id or create_correlation_id()
        customer = await self._load_customer(customer_id)

        previous = customer.ticket.remaining
        log = TicketLog(
            type=TicketLogType.INIT,
            amount=count,
            prev_remaining=previous,
            new_remaining=count,
            staff_name=staff_name or self._settings.default_staff_name,
            reason=reason or "Ticket initialized",
        )
        batch = WriteBatch()
        batch.update(CUSTOMERS, customer_id, {
            "ticket.total": count,
            "ticket.remaining": count,
            "ticket.start_date": (start_date or date.today()).isoformat(),
            "ticket.expiry_date": expiry_date.isoformat() if expiry_date else None,
            "ticket.last_updated": log.date.isoformat(),
            "ticket.history": ArrayUnion(log.model_dump(mode="json")),
        })
        await self._store.commit(batch)

        await self._audit_ticket(AuditEventType.TICKET_INITIALIZED, customer_id, log, correlation_id)
        return log

    async def adjust_ticket(
        self,
        customer_id: str,
        amount: int,
        staff_name: str,
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> TicketLog:
        """
        Manual staff correction of `remaining` by a signed amount.

        Raises:
            ValueError: If amount is zero or staff name / reason are missing
        """
        if amount == 0:
            raise ValueError("Adjustment amount must be non-zero")
        if not staff_name or not staff_name.strip():
            raise ValueError("Staff name is required for a manual adjustment")
        if not reason or not reason.strip():
            raise ValueError("A reason is required for a manual adjustment")
        correlation_id = correlation_id or create_correlation_id()
        customer = await self._load_customer(customer_id)

        log = self._ticket_log(
            TicketLogType.EDIT,
            amount,
            customer.ticket.remaining,
            staff_name=staff_name.strip(),
            reason=reason.strip(),
        )
        batch = WriteBatch()
        batch.update(CUSTOMERS, customer_id, self._ticket_fields(log))
        await self._store.commit(batch)

        await self._audit_ticket(AuditEventType.TICKET_ADJUSTED, customer_id, log, correlation_id)
        return log

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load_customer(self, customer_id: str) -> Customer:
        document = await get_document(self._store, CUSTOMERS, customer_id)
        if document is None:
            raise NotFoundError(f"Customer not found: {customer_id}")
        return Customer.from_document(document)

    def _ticket_log(
        self,
        log_type: TicketLogType,
        amount: int,
        remaining: int,
        staff_name: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> TicketLog:
        return TicketLog(
            type=log_type,
            amount=amount,
            prev_remaining=remaining,
            new_remaining=remaining + amount,
            staff_name=staff_name or self._settings.default_staff_name,
            reason=reason,
        )

    @staticmethod
    def _ticket_fields(log: TicketLog) -> dict[str, Any]:
        """Increment plus history append, applied together."""
        return {
            "ticket.remaining": Increment(log.amount),
            "ticket.history": ArrayUnion(log.model_dump(mode="json")),
            "ticket.last_updated": log.date.isoformat(),
        }

    async def _audit_ticket(
        self,
        event_type: AuditEventType,
        customer_id: str,
        log: TicketLog,
        correlation_id: UUID,
    ) -> None:
        logger.info(
            "ticket_changed",
            customer_id=customer_id,
            type=log.type.value,
            amount=log.amount,
            new_remaining=log.new_remaining,
        )
        if self._audit_logger:
            await self._audit_logger.log_ticket_changed(
                event_type=event_type,
                customer_id=customer_id,
                amount=log.amount,
                new_remaining=log.new_remaining,
                reason=log.reason,
                correlation_id=correlation_id,
                staff_name=log.staff_name,
            )
