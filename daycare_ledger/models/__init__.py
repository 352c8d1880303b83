"""
Data Models Package

This package contains all Pydantic models used in Daycare Ledger.
All data flowing through the engine must conform to these schemas.
"""

from daycare_ledger.models.attendance import (
    AttendanceLog,
    AttendanceMarkResult,
    AttendanceOutcome,
    AttendanceStatus,
    attendance_doc_id,
)
from daycare_ledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from daycare_ledger.models.customer import (
    Customer,
    DogProfile,
    Ticket,
    TicketLog,
    TicketLogType,
)
from daycare_ledger.models.transaction import (
    DaycareDetails,
    DiscountType,
    ExpenseTransaction,
    GeneralDetails,
    GroomingDetails,
    HotelDetails,
    IncomeTransaction,
    Transaction,
    TransactionType,
    parse_transaction,
)
from daycare_ledger.models.validation import ValidationIssue, ValidationResult

__all__ = [
    # Attendance models
    "AttendanceLog",
    "AttendanceMarkResult",
    "AttendanceOutcome",
    "AttendanceStatus",
    "attendance_doc_id",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
    # Customer models
    "Customer",
    "DogProfile",
    "Ticket",
    "TicketLog",
    "TicketLogType",
    # Transaction models
    "DaycareDetails",
    "DiscountType",
    "ExpenseTransaction",
    "GeneralDetails",
    "GroomingDetails",
    "HotelDetails",
    "IncomeTransaction",
    "Transaction",
    "TransactionType",
    "parse_transaction",
    # Validation models
    "ValidationIssue",
    "ValidationResult",
]
