"""
Two-Stage Transaction Validation

DESIGN DECISION: Raw transaction payloads are validated in two distinct
stages at the system boundary (point of sale, edits, imports):

STAGE 1 - SCHEMA VALIDATION:
- Tagged-union parsing on `type` and on the category payload `kind`
- Type checking and required field presence
- Service period consistency

STAGE 2 - SEMANTIC VALIDATION:
- Discounts larger than the subtotal (negative billed amount)
- Percent discounts above 100
- Negative quantities, prices and payments
- Income rows no customer can be matched to

IMPORTANT: Validation NEVER silently fixes issues. A negative billed
amount is saved as-is (with a warning); staff decide what it means.
"""

from typing import Any, Optional, Union

import structlog
from pydantic import ValidationError

from daycare_ledger.ledger.diff import compute_breakdown
from daycare_ledger.models.transaction import (
    TRANSACTION_ADAPTER,
    DiscountType,
    ExpenseTransaction,
    IncomeTransaction,
)
from daycare_ledger.models.validation import ValidationIssue, ValidationResult
from daycare_ledger.services.matching import CustomerMatcher
from daycare_ledger.services.storage import DocumentStore

logger = structlog.get_logger(__name__)

TransactionModel = Union[IncomeTransaction, ExpenseTransaction]


class TransactionValidationError(Exception):
    """A transaction payload failed boundary validation."""

    def __init__(self, result: ValidationResult):
        self.result = result
        messages = "; ".join(issue.message for issue in result.errors) or "invalid transaction"
        super().__init__(messages)

    @property
    def issues(self) -> list[ValidationIssue]:
        return self.result.issues


class TransactionValidator:
    """
    Validates raw transaction payloads through a two-stage pipeline.

    Stage 1: Schema validation (can run without storage)
    Stage 2: Semantic validation (linkage check needs storage)
    """

    def __init__(self, store: Optional[DocumentStore] = None):
        """
        Initialize validator.

        Args:
            store: Document store for the customer linkage check.
                   If None, linkage checking is skipped.
        """
        self._store = store

    def _validate_schema(
        self,
        payload: Union[dict[str, Any], TransactionModel],
    ) -> tuple[Optional[TransactionModel], list[ValidationIssue]]:
        """
        Stage 1: parse the payload into a typed transaction.

        Returns: (transaction_or_None, list_of_issues)
        """
        if isinstance(payload, (IncomeTransaction, ExpenseTransaction)):
            return payload, []

        try:
            return TRANSACTION_ADAPTER.validate_python(payload), []
        except ValidationError as e:
            issues = []
            for error in e.errors():
                location = ".".join(str(part) for part in error["loc"]) or "transaction"
                issues.append(ValidationIssue(
                    field=location,
                    issue_type=error["type"],
                    message=f"{location}: {error['msg']}",
                    severity="error",
                ))
            return None, issues

    def _validate_semantic(
        self,
        transaction: TransactionModel,
    ) -> tuple[bool, list[ValidationIssue]]:
        """
        Stage 2: pricing sanity checks.

        Returns: (is_valid, list_of_issues)
        """
        issues = []
        breakdown = compute_breakdown(transaction)

        if transaction.quantity < 0:
            issues.append(ValidationIssue(
                field="quantity",
                issue_type="invalid_value",
                message="Quantity cannot be negative",
                severity="error",
                suggested_fix="Enter the number of nights, visits or items",
            ))

        if transaction.price < 0:
            issues.append(ValidationIssue(
                field="price",
                issue_type="invalid_value",
                message="Price cannot be negative",
                severity="error",
                suggested_fix="Use a discount for price reductions",
            ))

        if transaction.paid_amount < 0:
            issues.append(ValidationIssue(
                field="paid_amount",
                issue_type="invalid_value",
                message="Paid amount cannot be negative",
                severity="error",
            ))

        if transaction.discount_value < 0:
            issues.append(ValidationIssue(
                field="discount_value",
                issue_type="invalid_value",
                message="Discount cannot be negative",
                severity="error",
            ))

        if (
            transaction.discount_type == DiscountType.PERCENT
            and transaction.discount_value > 100
        ):
            issues.append(ValidationIssue(
                field="discount_value",
                issue_type="suspicious_value",
                message=f"Percent discount of {transaction.discount_value:g}% exceeds 100%",
                severity="warning",
                suggested_fix="Did you mean a flat amount discount?",
            ))

        if breakdown.billed < 0:
            issues.append(ValidationIssue(
                field="discount_value",
                issue_type="negative_billed",
                message=(
                    f"Discount ({breakdown.discount:,}) exceeds the subtotal "
                    f"({breakdown.subtotal:,}); billed amount is {breakdown.billed:,}"
                ),
                severity="warning",
                suggested_fix="Please verify the discount",
            ))

        is_valid = not any(issue.severity == "error" for issue in issues)
        return is_valid, issues

    async def _check_linkage(
        self,
        transaction: TransactionModel,
    ) -> list[ValidationIssue]:
        """
        Warn about income rows no customer can be matched to.

        Such rows are saved, but they do not move any balance.
        """
        if self._store is None or not transaction.is_income:
            return []

        if await CustomerMatcher(self._store).resolve(transaction) is not None:
            return []

        return [ValidationIssue(
            field="customer_id",
            issue_type="unlinked",
            message=(
                f"No customer matches this sale ({transaction.dog_name or 'no dog name'}); "
                "it will not affect any balance"
            ),
            severity="warning",
            suggested_fix="Pick the customer, or fill in dog name and phone",
        )]

    async def validate(
        self,
        payload: Union[dict[str, Any], TransactionModel],
        check_linkage: bool = True,
    ) -> tuple[Optional[TransactionModel], ValidationResult]:
        """
        Run the full two-stage validation pipeline.

        Args:
            payload: Raw payload (or an already typed transaction)
            check_linkage: Whether to check customer linkage (requires storage)

        Returns:
            (typed transaction or None, ValidationResult with all issues)
        """
        transaction, all_issues = self._validate_schema(payload)
        schema_valid = transaction is not None

        # Only run stage 2 if stage 1 passes
        semantic_valid = False
        if transaction is not None:
            semantic_valid, semantic_issues = self._validate_semantic(transaction)
            all_issues.extend(semantic_issues)
            if check_linkage:
                all_issues.extend(await self._check_linkage(transaction))

        result = ValidationResult(
            transaction_id=transaction.id if transaction else None,
            schema_valid=schema_valid,
            semantic_valid=semantic_valid,
            is_valid=schema_valid and semantic_valid,
            issues=all_issues,
            warnings=[i.message for i in all_issues if i.severity == "warning"],
        )
        if result.warnings:
            logger.info(
                "transaction_validation_warnings",
                transaction_id=result.transaction_id,
                warnings=result.warnings,
            )
        return transaction, result

    async def validate_or_raise(
        self,
        payload: Union[dict[str, Any], TransactionModel],
        check_linkage: bool = True,
    ) -> tuple[TransactionModel, ValidationResult]:
        """
        Validate and return the typed transaction.

        Raises:
            TransactionValidationError: If either stage reports an error
        """
        transaction, result = await self.validate(payload, check_linkage=check_linkage)
        if transaction is None or not result.is_valid:
            raise TransactionValidationError(result)
        return transaction, result
