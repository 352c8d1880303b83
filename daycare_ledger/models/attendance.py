"""
Attendance Models

One attendance document exists per (date, dog), keyed
"{date}_{dog_id}". A dog with no document is `absent`.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from daycare_ledger.models.customer import TicketLog
from daycare_ledger.models.keys import utcnow


class AttendanceStatus(str, Enum):
    ABSENT = "absent"    # Default, also the state of an unpersisted day
    PRESENT = "present"  # Checked in, ticket deducted
    HOME = "home"        # Checked out, still counted as attended

    @property
    def counts_as_attended(self) -> bool:
        return self in (AttendanceStatus.PRESENT, AttendanceStatus.HOME)


class AttendanceOutcome(str, Enum):
    """Result of an attendance-mark request."""
    APPLIED = "applied"
    REQUIRE_CONFIRM = "require_confirm"  # Ticket exhausted; resubmit with force=True


def attendance_doc_id(day: date, dog_id: str) -> str:
    return f"{day.isoformat()}_{dog_id}"


class AttendanceLog(BaseModel):
    """Persisted attendance state for one dog on one day."""

    date: date
    dog_id: str
    dog_name: str = ""
    status: AttendanceStatus = AttendanceStatus.ABSENT
    arrival_time: Optional[str] = None
    pickup_time: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def doc_id(self) -> str:
        return attendance_doc_id(self.date, self.dog_id)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class AttendanceMarkResult(BaseModel):
    """What a mark-attendance call did (or refused to do)."""

    outcome: AttendanceOutcome
    dog_id: str
    customer_id: str
    date: date
    previous_status: AttendanceStatus
    status: AttendanceStatus
    ticket_delta: int = Field(
        default=0,
        description="Change applied to ticket.remaining (-1, 0 or +1)"
    )
    remaining: Optional[int] = Field(
        default=None,
        description="Remaining credits after the change, as seen by this call"
    )
    ticket_log: Optional[TicketLog] = None

    @property
    def requires_confirmation(self) -> bool:
        return self.outcome == AttendanceOutcome.REQUIRE_CONFIRM
