"""
Transaction Models

A ledger row is either INCOME (a sale: boarding, grooming, day-care,
ticket packages) or EXPENSE (shop costs). Only income rows ever touch a
customer's balance.

DESIGN DECISION: Transactions are a tagged union on `type`, and the
category-specific payload is a second tagged union on `kind`. Raw
payloads are validated once at the system boundary (see
`daycare_ledger.validation`); everything past that point works with
typed models.
"""

from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    computed_field,
    model_validator,
)

from daycare_ledger.models.keys import make_name_key, make_phone_key, utcnow


# =============================================================================
# ENUMS
# =============================================================================

class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


class DiscountType(str, Enum):
    """How `discount_value` is interpreted."""
    AMOUNT = "amount"    # Flat currency units
    PERCENT = "percent"  # Percentage of the subtotal


# =============================================================================
# CATEGORY PAYLOADS
# =============================================================================

class HotelDetails(BaseModel):
    """Boarding stay."""
    kind: Literal["hotel"] = "hotel"
    nights: int = Field(default=1, ge=0)
    pick_drop: bool = False


class GroomingDetails(BaseModel):
    """Grooming appointment."""
    kind: Literal["grooming"] = "grooming"
    options: list[str] = Field(default_factory=list)
    deposit: int = Field(default=0, ge=0)


class DaycareDetails(BaseModel):
    """Day-care visit or ticket package sale."""
    kind: Literal["daycare"] = "daycare"
    ticket_count: int = Field(
        default=0,
        ge=0,
        description="Credits sold with this row (0 for a single visit)"
    )


class GeneralDetails(BaseModel):
    kind: Literal["general"] = "general"
    note: Optional[str] = None


ServiceDetails = Annotated[
    Union[HotelDetails, GroomingDetails, DaycareDetails, GeneralDetails],
    Field(discriminator="kind"),
]


# =============================================================================
# TRANSACTIONS
# =============================================================================

class TransactionBase(BaseModel):
    """
    Fields shared by income and expense rows.

    `customer_id` is a weak reference: it may be missing or stale, in
    which case (dog_name, phone) or (dog_name, customer_name) are used
    as fallback identity.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=lambda: uuid4().hex)

    # Customer linkage
    customer_id: Optional[str] = None
    dog_name: str = Field(default="", max_length=100)
    customer_name: str = Field(default="", max_length=100)
    phone: str = Field(default="", max_length=40)

    # What was sold
    category: str = Field(default="other", max_length=50)
    service_detail: str = Field(default="", max_length=200)
    details: Optional[ServiceDetails] = None

    # Pricing
    price: int = 0
    quantity: int = 1
    extra_dog_count: int = Field(default=0, ge=0)
    discount_value: float = 0
    discount_type: DiscountType = DiscountType.AMOUNT
    paid_amount: int = 0
    payment_method: str = Field(default="", max_length=30)

    # Service period (multi-day stays span several dates)
    start_date: date
    start_time: Optional[str] = None
    end_date: Optional[date] = None
    end_time: Optional[str] = None

    # Status
    is_completed: bool = False
    is_running: bool = False
    ticket_processed: bool = False

    memo: Optional[str] = Field(default=None, max_length=1000)
    created_at: datetime = Field(default_factory=utcnow)
    # Bumped on every write; edits and deletes compare-and-swap on it
    revision: int = Field(default=0, ge=0)

    @model_validator(mode='after')
    def validate_period(self) -> 'TransactionBase':
        """Validate the service period."""
        if self.end_date and self.end_date < self.start_date:
            raise ValueError("End date cannot be before start date")
        return self

    @computed_field
    @property
    def phone_key(self) -> Optional[str]:
        return make_phone_key(self.dog_name, self.phone)

    @computed_field
    @property
    def name_key(self) -> Optional[str]:
        return make_name_key(self.dog_name, self.customer_name)

    @property
    def is_income(self) -> bool:
        return self.type == TransactionType.INCOME.value

    def to_document(self) -> dict[str, Any]:
        """Serialize for the document store (match keys included)."""
        return self.model_dump(mode="json")


class IncomeTransaction(TransactionBase):
    """A sale. Contributes `paid - billed` to the linked customer's balance."""
    type: Literal["income"] = "income"


class ExpenseTransaction(TransactionBase):
    """A shop cost. Never affects a customer balance."""
    type: Literal["expense"] = "expense"
    confirmer: Optional[str] = Field(
        default=None,
        max_length=100,
        description="Staff member who confirmed the expense"
    )


Transaction = Annotated[
    Union[IncomeTransaction, ExpenseTransaction],
    Field(discriminator="type"),
]

TRANSACTION_ADAPTER: TypeAdapter[Transaction] = TypeAdapter(Transaction)


def parse_transaction(document: dict[str, Any]) -> Union[IncomeTransaction, ExpenseTransaction]:
    """
    Build a typed transaction from a stored document or raw payload.

    Raises:
        pydantic.ValidationError: If the payload does not match either variant
    """
    return TRANSACTION_ADAPTER.validate_python(document)
