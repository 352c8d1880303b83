"""
Customer and Ticket Models

A customer document carries two continuously mutated aggregates:

- `balance`: signed integer currency units.
  Positive = prepaid credit, negative = amount owed by the customer.
- `ticket`: the prepaid day-care credit pool and its append-only history.

DESIGN DECISION: Neither value is clamped. A forced check-in may drive
`ticket.remaining` below zero and over-discounted sales may push the
balance up; both are accepted business states that staff settle later.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field

from daycare_ledger.models.keys import make_name_key, make_phone_key, utcnow


class TicketLogType(str, Enum):
    """Kinds of ticket history entries."""
    INIT = "init"        # Ticket (re)started, remaining reset to the purchased count
    CHARGE = "charge"    # Credits purchased
    USE = "use"          # Attended day deducted
    EDIT = "edit"        # Manual staff adjustment
    RESTORE = "restore"  # Attendance undone, credit returned


class TicketLog(BaseModel):
    """One append-only entry in a ticket's history."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    date: datetime = Field(default_factory=utcnow)
    type: TicketLogType
    amount: int = Field(
        ...,
        description="Signed change in remaining credits (e.g. +10, -1)"
    )
    prev_remaining: int
    new_remaining: int
    staff_name: str = Field(default="System")
    reason: Optional[str] = Field(default=None, max_length=500)


class Ticket(BaseModel):
    """Prepaid attendance-credit pool."""

    total: int = Field(default=0, description="Size of the current package")
    remaining: int = Field(default=0, description="Credits left; may be negative")
    start_date: Optional[date] = None
    expiry_date: Optional[date] = None
    last_updated: Optional[datetime] = None
    history: list[TicketLog] = Field(default_factory=list)

    def replayed_remaining(self, initial: int = 0) -> int:
        """
        Rebuild `remaining` from the history log.

        An `init` entry resets the pool to its amount; every other entry
        adds its signed amount. Equal to `remaining` whenever every
        mutation went through the ledger.
        """
        value = initial
        for entry in self.history:
            if entry.type == TicketLogType.INIT:
                value = entry.amount
            else:
                value += entry.amount
        return value

    def is_expired(self, on: date) -> bool:
        return self.expiry_date is not None and on > self.expiry_date


class DogProfile(BaseModel):
    """A dog belonging to a multi-dog household."""

    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    dog_name: str = Field(..., min_length=1, max_length=100)
    breed: Optional[str] = None
    notes: Optional[str] = None


class Customer(BaseModel):
    """
    A registered customer (household) and its primary dog.

    Created at registration. `balance` and `ticket` are mutated only
    through the balance adjuster, reconciliation and the attendance
    ledger. Never deleted while transactions reference it.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    owner_name: str = Field(default="", max_length=100)
    dog_name: str = Field(..., min_length=1, max_length=100)
    phone: str = Field(default="", max_length=40)

    balance: int = Field(
        default=0,
        description="Running balance; negative = owed, positive = prepaid credit"
    )
    last_balance_update: Optional[datetime] = None
    ticket: Ticket = Field(default_factory=Ticket)
    is_deposit_exempt: bool = False

    # "{date}_{dog_id}" keys of days the dog is expected; read by pickup planning
    planned_dates: list[str] = Field(default_factory=list)
    dogs: list[DogProfile] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def phone_key(self) -> Optional[str]:
        return make_phone_key(self.dog_name, self.phone)

    @computed_field
    @property
    def name_key(self) -> Optional[str]:
        return make_name_key(self.dog_name, self.owner_name)

    def find_dog_name(self, dog_id: str) -> Optional[str]:
        """Name of the primary dog or a household sub-dog."""
        if dog_id == self.id:
            return self.dog_name
        for dog in self.dogs:
            if dog.id == dog_id:
                return dog.dog_name
        return None

    def to_document(self) -> dict[str, Any]:
        """Serialize for the document store (match keys included)."""
        return self.model_dump(mode="json")

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "Customer":
        return cls.model_validate(document)
