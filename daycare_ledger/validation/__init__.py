"""Boundary validation for transaction payloads."""

from daycare_ledger.validation.validator import (
    TransactionValidationError,
    TransactionValidator,
)

__all__ = ["TransactionValidationError", "TransactionValidator"]
