"""
Transaction Diff Calculator

Converts one transaction into its billed amount and its signed
contribution ("diff") to the customer's running balance:

    unit_price = price + extra_dog_count * EXTRA_DOG_FEE
    subtotal   = unit_price * quantity
    discount   = subtotal * discount_value / 100   (percent)
               = discount_value                    (amount)
    billed     = subtotal - discount
    diff       = paid_amount - billed              (income only)

Positive diff = overpayment (credit grows), negative = unpaid (debt grows).
Expense rows always contribute 0.

Pure and exception-free: works on typed models and on raw store
documents alike. Malformed numbers count as 0; a missing or zero
quantity counts as 1. Amounts are integer currency units, rounded
half-up, so a customer's balance is always an exact integer sum.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Mapping, Union

from daycare_ledger.models.keys import read_field
from daycare_ledger.models.transaction import DiscountType, TransactionBase, TransactionType

# Surcharge per additional dog sharing a booking. Part of the public pricing contract.
EXTRA_DOG_FEE = 10000

_ZERO = Decimal(0)
_ONE = Decimal(1)
_HUNDRED = Decimal(100)

TransactionLike = Union[TransactionBase, Mapping[str, Any]]


@dataclass(frozen=True)
class DiffBreakdown:
    """Every intermediate value of the diff calculation."""
    unit_price: int
    subtotal: int
    discount: int
    billed: int
    paid: int
    diff: int


def _number(value: Any) -> Decimal:
    if value is None or isinstance(value, bool):
        return _ZERO
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return _ZERO
    if not number.is_finite():
        return _ZERO
    return number


def _to_units(value: Decimal) -> int:
    return int(value.quantize(_ONE, rounding=ROUND_HALF_UP))


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def is_income(transaction: TransactionLike) -> bool:
    return _enum_value(read_field(transaction, "type")) == TransactionType.INCOME.value


def compute_breakdown(transaction: TransactionLike) -> DiffBreakdown:
    """Full breakdown. For expense rows `diff` is 0 but `billed` is still reported."""
    unit_price = (
        _number(read_field(transaction, "price"))
        + _number(read_field(transaction, "extra_dog_count")) * EXTRA_DOG_FEE
    )
    quantity = _number(read_field(transaction, "quantity")) or _ONE
    subtotal = unit_price * quantity

    discount_value = _number(read_field(transaction, "discount_value"))
    if _enum_value(read_field(transaction, "discount_type")) == DiscountType.PERCENT.value:
        discount = subtotal * discount_value / _HUNDRED
    else:
        discount = discount_value

    # Not clamped: an over-discounted row bills a negative amount
    billed = _to_units(subtotal) - _to_units(discount)
    paid = _to_units(_number(read_field(transaction, "paid_amount")))
    diff = paid - billed if is_income(transaction) else 0

    return DiffBreakdown(
        unit_price=_to_units(unit_price),
        subtotal=_to_units(subtotal),
        discount=_to_units(discount),
        billed=billed,
        paid=paid,
        diff=diff,
    )


def calculate_billed(transaction: TransactionLike) -> int:
    """Charge for the transaction before payment is considered."""
    return compute_breakdown(transaction).billed


def calculate_diff(transaction: TransactionLike) -> int:
    """Signed balance contribution: paid - billed for income, 0 for expense."""
    return compute_breakdown(transaction).diff
