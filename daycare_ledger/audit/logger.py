"""
Audit Logger

DESIGN DECISION: Every balance and ticket movement is logged.
This provides:
1. Complete traceability of who changed which balance, and why
2. A data-quality trail for income rows no customer can be matched to
3. Debugging capability when an atomic write is rejected

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (doesn't crash the app if logging fails)
- Supports correlation IDs to trace related events
"""

import logging
from typing import Optional
from uuid import UUID, uuid4

import structlog

from daycare_ledger.models.audit import AuditEvent, AuditEventBuilder, AuditEventType
from daycare_ledger.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def configure_log_level(level: str = "INFO") -> None:
    """Route stdlib logging (and therefore structlog) at the given level."""
    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper(), logging.INFO))


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. The audit store (for persistence and staff visibility)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("daycare_ledger.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity.value in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_transaction_written(
        self,
        event_type: AuditEventType,
        transaction_id: str,
        customer_id: Optional[str],
        diff: int,
        correlation_id: UUID,
    ) -> None:
        """Log a transaction create/update/delete."""
        event = AuditEventBuilder.transaction_written(
            event_type=event_type,
            transaction_id=transaction_id,
            customer_id=customer_id,
            diff=diff,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_batch_deleted(
        self,
        transaction_ids: list[str],
        total_reversal: int,
        correlation_id: UUID,
    ) -> None:
        event = AuditEventBuilder.batch_deleted(
            transaction_ids=transaction_ids,
            total_reversal=total_reversal,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_transactions_imported(
        self,
        imported_count: int,
        batches_committed: int,
        total_change: int,
        correlation_id: UUID,
    ) -> None:
        event = AuditEventBuilder.transactions_imported(
            imported_count=imported_count,
            batches_committed=batches_committed,
            total_change=total_change,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_balance_adjusted(
        self,
        customer_id: str,
        amount: int,
        reason: str,
        transaction_id: Optional[str],
        correlation_id: UUID,
    ) -> None:
        """Log an incremental balance change."""
        event = AuditEventBuilder.balance_adjusted(
            customer_id=customer_id,
            amount=amount,
            reason=reason,
            transaction_id=transaction_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_balance_reconciled(
        self,
        customer_id: str,
        previous_balance: int,
        new_balance: int,
        transaction_count: int,
        correlation_id: UUID,
    ) -> None:
        event = AuditEventBuilder.balance_reconciled(
            customer_id=customer_id,
            previous_balance=previous_balance,
            new_balance=new_balance,
            transaction_count=transaction_count,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_unlinked_transaction(
        self,
        transaction_id: str,
        dog_name: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an income row that no customer could be matched to."""
        event = AuditEventBuilder.unlinked_transaction(
            transaction_id=transaction_id,
            dog_name=dog_name,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_ticket_changed(
        self,
        event_type: AuditEventType,
        customer_id: str,
        amount: int,
        new_remaining: int,
        reason: Optional[str],
        correlation_id: UUID,
        staff_name: str = "System",
    ) -> None:
        event = AuditEventBuilder.ticket_changed(
            event_type=event_type,
            customer_id=customer_id,
            amount=amount,
            new_remaining=new_remaining,
            reason=reason,
            correlation_id=correlation_id,
            staff_name=staff_name,
        )
        await self.log(event)

    async def log_attendance_marked(
        self,
        dog_id: str,
        day: str,
        previous_status: str,
        status: str,
        correlation_id: UUID,
    ) -> None:
        event = AuditEventBuilder.attendance_marked(
            dog_id=dog_id,
            day=day,
            previous_status=previous_status,
            status=status,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_confirmation_required(
        self,
        customer_id: str,
        dog_id: str,
        remaining: int,
        correlation_id: UUID,
    ) -> None:
        event = AuditEventBuilder.confirmation_required(
            customer_id=customer_id,
            dog_id=dog_id,
            remaining=remaining,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_write_failed(
        self,
        action: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a rejected atomic batch."""
        event = AuditEventBuilder.write_failed(
            action=action,
            error_message=error_message,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        event = AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        )
        await self.log(event)


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a staff action (e.g., saving a sale).
    Pass it through all subsequent operations.
    """
    return uuid4()
