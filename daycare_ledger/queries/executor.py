"""
Ledger Read Models

DESIGN DECISION: Queries are DETERMINISTIC reads of confirmed store
state. They never include optimistic overlays and never recompute a
balance; the stored `balance` is reported as-is (reconciliation is the
only path that recomputes it).

Sign convention (part of the external contract, honor it exactly):
    balance < 0   customer owes the shop `-balance`
    balance > 0   customer holds `balance` of prepaid credit
    balance == 0  settled
"""

from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, computed_field

from daycare_ledger.models.attendance import AttendanceStatus
from daycare_ledger.models.customer import Customer, TicketLog
from daycare_ledger.services.storage import (
    ATTENDANCE_LOGS,
    CUSTOMERS,
    DocumentStore,
    NotFoundError,
    get_document,
    query_documents,
)


class BalanceStatus(str, Enum):
    OWED = "owed"
    CREDIT = "credit"
    SETTLED = "settled"


class BalanceView(BaseModel):
    """A customer's balance with the sign convention spelled out."""

    customer_id: str
    owner_name: str = ""
    dog_name: str = ""
    balance: int = Field(..., description="Negative = owed, positive = prepaid credit")
    last_balance_update: Optional[datetime] = None

    @computed_field
    @property
    def status(self) -> BalanceStatus:
        if self.balance < 0:
            return BalanceStatus.OWED
        if self.balance > 0:
            return BalanceStatus.CREDIT
        return BalanceStatus.SETTLED

    @computed_field
    @property
    def amount_owed(self) -> int:
        return max(0, -self.balance)

    @computed_field
    @property
    def credit(self) -> int:
        return max(0, self.balance)


class TicketView(BaseModel):
    """Remaining credits and the append-only history behind them."""

    customer_id: str
    total: int
    remaining: int
    start_date: Optional[date] = None
    expiry_date: Optional[date] = None
    is_expired: bool = False
    history: list[TicketLog] = Field(default_factory=list)
    replayed_remaining: int = Field(
        ...,
        description="Remaining rebuilt from the history log"
    )

    @property
    def is_consistent(self) -> bool:
        """True when the stored count matches the history replay."""
        return self.remaining == self.replayed_remaining


class LedgerQueries:
    """
    Read-only access to balances, tickets and attendance.

    GUARANTEES:
    - Only returns real data from the store
    - Never reads optimistic state
    - Missing customers raise NotFoundError instead of reading as zero
    """

    def __init__(self, store: DocumentStore):
        self._store = store

    async def get_balance(self, customer_id: str) -> BalanceView:
        return self._balance_view(await self._load_customer(customer_id))

    async def list_balances(self, status: Optional[BalanceStatus] = None) -> list[BalanceView]:
        """All customer balances, largest debt first."""
        documents = await query_documents(self._store, CUSTOMERS)
        views = [self._balance_view(Customer.from_document(d)) for d in documents]
        if status is not None:
            views = [view for view in views if view.status == status]
        return sorted(views, key=lambda view: (view.balance, view.customer_id))

    async def get_ticket(self, customer_id: str, on: Optional[date] = None) -> TicketView:
        customer = await self._load_customer(customer_id)
        ticket = customer.ticket
        return TicketView(
            customer_id=customer.id,
            total=ticket.total,
            remaining=ticket.remaining,
            start_date=ticket.start_date,
            expiry_date=ticket.expiry_date,
            is_expired=ticket.is_expired(on or date.today()),
            history=list(ticket.history),
            replayed_remaining=ticket.replayed_remaining(),
        )

    async def attendance_board(self, day: Optional[date] = None) -> dict[str, AttendanceStatus]:
        """Status of every dog with an attendance record on `day`."""
        documents = await query_documents(
            self._store, ATTENDANCE_LOGS, {"date": (day or date.today()).isoformat()}
        )
        return {d["dog_id"]: AttendanceStatus(d.get("status") or "absent") for d in documents}

    async def _load_customer(self, customer_id: str) -> Customer:
        document = await get_document(self._store, CUSTOMERS, customer_id)
        if document is None:
            raise NotFoundError(f"Customer not found: {customer_id}")
        return Customer.from_document(document)

    @staticmethod
    def _balance_view(customer: Customer) -> BalanceView:
        return BalanceView(
            customer_id=customer.id,
            owner_name=customer.owner_name,
            dog_name=customer.dog_name,
            balance=customer.balance,
            last_balance_update=customer.last_balance_update,
        )
