"""
Audit Models for Daycare Ledger

Every balance and ticket movement is logged for audit purposes.
This provides:
1. Traceability of every change to a customer's balance or ticket
2. A data-quality trail for transactions that cannot be linked to a customer
3. Debugging information when an atomic write is rejected

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from daycare_ledger.models.keys import utcnow


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Ledger writes
    TRANSACTION_CREATED = "transaction_created"
    TRANSACTION_UPDATED = "transaction_updated"
    TRANSACTION_DELETED = "transaction_deleted"
    TRANSACTIONS_BATCH_DELETED = "transactions_batch_deleted"
    TRANSACTIONS_IMPORTED = "transactions_imported"
    PAID_AMOUNT_UPDATED = "paid_amount_updated"
    SERVICE_STOPPED = "service_stopped"

    # Balance
    BALANCE_ADJUSTED = "balance_adjusted"
    BALANCE_RECONCILED = "balance_reconciled"
    UNLINKED_TRANSACTION = "unlinked_transaction"

    # Tickets / attendance
    TICKET_USED = "ticket_used"
    TICKET_RESTORED = "ticket_restored"
    TICKET_CHARGED = "ticket_charged"
    TICKET_INITIALIZED = "ticket_initialized"
    TICKET_ADJUSTED = "ticket_adjusted"
    ATTENDANCE_MARKED = "attendance_marked"
    CONFIRMATION_REQUIRED = "confirmation_required"

    # Failures
    WRITE_FAILED = "write_failed"
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'customer', 'transaction', 'attendance')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="Store ID of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events of one staff action)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a staff action?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.balance_adjusted(customer_id, 5000, "create", txn_id, cid)
        event = AuditEventBuilder.ticket_used(customer_id, dog_id, "2024-05-01", 9, cid)
    """

    @staticmethod
    def transaction_written(
        event_type: AuditEventType,
        transaction_id: str,
        customer_id: Optional[str],
        diff: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        verb = event_type.value.replace("transaction_", "").replace("_", " ")
        return AuditEvent(
            event_type=event_type,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description=f"Transaction {verb}: {transaction_id}",
            details={
                "customer_id": customer_id,
                "diff": diff,
            },
            is_user_action=True,
        )

    @staticmethod
    def batch_deleted(
        transaction_ids: list[str],
        total_reversal: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTIONS_BATCH_DELETED,
            entity_type="transaction",
            correlation_id=correlation_id,
            description=f"Deleted {len(transaction_ids)} transactions",
            details={
                "transaction_ids": transaction_ids,
                "total_reversal": total_reversal,
            },
            is_user_action=True,
        )

    @staticmethod
    def transactions_imported(
        imported_count: int,
        batches_committed: int,
        total_change: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTIONS_IMPORTED,
            entity_type="transaction",
            correlation_id=correlation_id,
            description=f"Imported {imported_count} transactions in {batches_committed} batches",
            details={
                "imported_count": imported_count,
                "batches_committed": batches_committed,
                "total_change": total_change,
            },
            is_user_action=True,
        )

    @staticmethod
    def balance_adjusted(
        customer_id: str,
        amount: int,
        reason: str,
        transaction_id: Optional[str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BALANCE_ADJUSTED,
            entity_type="customer",
            entity_id=customer_id,
            correlation_id=correlation_id,
            description=f"Balance {amount:+,} ({reason})",
            details={
                "amount": amount,
                "reason": reason,
                "transaction_id": transaction_id,
            },
        )

    @staticmethod
    def balance_reconciled(
        customer_id: str,
        previous_balance: int,
        new_balance: int,
        transaction_count: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        drift = new_balance - previous_balance
        return AuditEvent(
            event_type=AuditEventType.BALANCE_RECONCILED,
            severity=AuditSeverity.WARNING if drift else AuditSeverity.INFO,
            entity_type="customer",
            entity_id=customer_id,
            correlation_id=correlation_id,
            description=f"Balance reconciled: {previous_balance:,} -> {new_balance:,}",
            details={
                "previous_balance": previous_balance,
                "new_balance": new_balance,
                "drift": drift,
                "transaction_count": transaction_count,
            },
            is_user_action=True,
        )

    @staticmethod
    def unlinked_transaction(
        transaction_id: str,
        dog_name: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.UNLINKED_TRANSACTION,
            severity=AuditSeverity.WARNING,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description=f"Income transaction not linked to any customer ({dog_name or 'no dog name'})",
            details={
                "dog_name": dog_name,
            },
        )

    @staticmethod
    def ticket_changed(
        event_type: AuditEventType,
        customer_id: str,
        amount: int,
        new_remaining: int,
        reason: Optional[str],
        correlation_id: UUID,
        staff_name: str = "System",
    ) -> AuditEvent:
        return AuditEvent(
            event_type=event_type,
            entity_type="customer",
            entity_id=customer_id,
            correlation_id=correlation_id,
            description=f"Ticket {amount:+d} -> {new_remaining} remaining",
            details={
                "amount": amount,
                "new_remaining": new_remaining,
                "reason": reason,
                "staff_name": staff_name,
            },
            is_user_action=staff_name != "System",
        )

    @staticmethod
    def attendance_marked(
        dog_id: str,
        day: str,
        previous_status: str,
        status: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ATTENDANCE_MARKED,
            entity_type="attendance",
            entity_id=f"{day}_{dog_id}",
            correlation_id=correlation_id,
            description=f"Attendance {previous_status} -> {status}",
            details={
                "previous_status": previous_status,
                "status": status,
            },
            is_user_action=True,
        )

    @staticmethod
    def confirmation_required(
        customer_id: str,
        dog_id: str,
        remaining: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONFIRMATION_REQUIRED,
            severity=AuditSeverity.WARNING,
            entity_type="customer",
            entity_id=customer_id,
            correlation_id=correlation_id,
            description=f"Check-in needs confirmation: {remaining} credits left",
            details={
                "dog_id": dog_id,
                "remaining": remaining,
            },
        )

    @staticmethod
    def write_failed(
        action: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.WRITE_FAILED,
            severity=AuditSeverity.ERROR,
            description=f"Atomic write rejected: {action}",
            error_message=error_message,
            details={
                "action": action,
            },
            correlation_id=correlation_id,
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
