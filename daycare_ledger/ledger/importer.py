"""
Chunked Transaction Import

Bulk-loads transactions (e.g. from a spreadsheet export) while keeping
every customer balance consistent with what was written.

Flow:
1. Validate every record up front; any record with errors aborts the import
   before anything is written
2. Split the records into chunks of at most `batch_chunk_size` writes
3. Commit the chunks sequentially, one atomic batch each. A chunk holds
   its transactions AND their balance increments, so a committed chunk
   is always internally consistent

A failed chunk stops the import. Earlier chunks stay applied; the result
reports how far the import got so the rest can be re-submitted.
"""

from typing import Any, Optional, Union
from uuid import UUID

import structlog
from pydantic import BaseModel, Field

from daycare_ledger.audit import AuditLogger, create_correlation_id
from daycare_ledger.config import LedgerSettings, get_settings
from daycare_ledger.ledger.adjuster import BalanceEffect, balance_increment, prepare_for_save
from daycare_ledger.ledger.diff import calculate_diff
from daycare_ledger.models.transaction import ExpenseTransaction, IncomeTransaction
from daycare_ledger.models.validation import ValidationIssue, ValidationResult
from daycare_ledger.services.matching import CustomerMatcher
from daycare_ledger.services.storage import (
    CUSTOMERS,
    TRANSACTIONS,
    DocumentStore,
    StorageError,
    WriteBatch,
)
from daycare_ledger.validation import TransactionValidationError, TransactionValidator

logger = structlog.get_logger(__name__)

TransactionModel = Union[IncomeTransaction, ExpenseTransaction]


class ImportResult(BaseModel):
    """How far an import got."""
    imported_ids: list[str] = Field(default_factory=list)
    effects: list[BalanceEffect] = Field(default_factory=list)
    unlinked_transaction_ids: list[str] = Field(default_factory=list)
    batches_committed: int = 0
    warnings: list[str] = Field(default_factory=list)

    @property
    def imported_count(self) -> int:
        return len(self.imported_ids)

    @property
    def total_change(self) -> int:
        return sum(effect.amount for effect in self.effects)


class TransactionImporter:
    """Validated, chunked, atomic-per-chunk transaction import."""

    def __init__(
        self,
        store: DocumentStore,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        self._store = store
        self._audit_logger = audit_logger
        self._settings = settings or get_settings().ledger
        self._validator = TransactionValidator()

    async def validate_records(
        self,
        records: list[Union[dict[str, Any], TransactionModel]],
    ) -> list[TransactionModel]:
        """
        Parse every record before anything is written.

        Row ids must be unique within one import: two writes of the same
        row in one batch would keep only the last row but apply both
        balance increments.

        Raises:
            TransactionValidationError: For the first record with errors,
                or for a repeated row id
        """
        transactions = []
        seen_ids: set[str] = set()
        for index, record in enumerate(records):
            try:
                transaction, _ = await self._validator.validate_or_raise(record, check_linkage=False)
            except TransactionValidationError as e:
                logger.warning("import_record_invalid", index=index, error=str(e))
                raise
            if transaction.id in seen_ids:
                logger.warning("import_duplicate_id", index=index, transaction_id=transaction.id)
                raise TransactionValidationError(ValidationResult(
                    transaction_id=transaction.id,
                    schema_valid=True,
                    issues=[ValidationIssue(
                        field="id",
                        issue_type="duplicate",
                        message=f"Transaction id {transaction.id} appears more than once in the import",
                        severity="error",
                        suggested_fix="Give each row its own id or leave it blank",
                    )],
                ))
            seen_ids.add(transaction.id)
            transactions.append(transaction)
        return transactions

    async def import_transactions(
        self,
        records: list[Union[dict[str, Any], TransactionModel]],
        correlation_id: Optional[UUID] = None,
    ) -> ImportResult:
        """
        Import records in sequential atomic chunks.

        Raises:
            TransactionValidationError: If any record is invalid (nothing written)
            AtomicWriteError: If a chunk is rejected. Earlier chunks stay applied
                and the error's `committed` holds their ImportResult
        """
        correlation_id = correlation_id or create_correlation_id()
        transactions = await self.validate_records(records)
        result = ImportResult()

        # Each record is at most two writes: the row and one balance increment
        per_chunk = max(1, self._settings.batch_chunk_size // 2)
        logger.info(
            "import_started",
            records=len(transactions),
            chunks=-(-len(transactions) // per_chunk),
        )

        try:
            for start in range(0, len(transactions), per_chunk):
                chunk = transactions[start:start + per_chunk]
                matcher = CustomerMatcher(self._store)
                batch = WriteBatch()
                chunk_effects: list[BalanceEffect] = []
                chunk_unlinked: list[str] = []

                for transaction in chunk:
                    batch.require(TRANSACTIONS, transaction.id, "id", None)
                    batch.set(TRANSACTIONS, transaction.id, prepare_for_save(transaction))
                    if not transaction.is_income:
                        continue
                    customer_id = await matcher.resolve_id(transaction)
                    if customer_id is None:
                        chunk_unlinked.append(transaction.id)
                        continue
                    diff = calculate_diff(transaction)
                    if diff:
                        batch.update(CUSTOMERS, customer_id, balance_increment(diff))
                        chunk_effects.append(BalanceEffect(
                            customer_id=customer_id,
                            amount=diff,
                            reason="import",
                            transaction_id=transaction.id,
                        ))

                await self._store.commit(batch)

                result.imported_ids.extend(t.id for t in chunk)
                result.effects.extend(chunk_effects)
                result.unlinked_transaction_ids.extend(chunk_unlinked)
                result.batches_committed += 1
                logger.info(
                    "import_chunk_committed",
                    chunk=result.batches_committed,
                    imported=result.imported_count,
                )
        except StorageError as e:
            logger.error(
                "import_stopped",
                batches_committed=result.batches_committed,
                imported=result.imported_count,
                error=str(e),
            )
            e.committed = result
            raise
        finally:
            if result.unlinked_transaction_ids:
                result.warnings.append(
                    f"{len(result.unlinked_transaction_ids)} income rows matched no customer"
                )
            # Committed chunks are audited even when a later chunk fails
            if self._audit_logger and result.batches_committed:
                await self._audit_import(result, transactions, correlation_id)
        return result

    async def _audit_import(
        self,
        result: ImportResult,
        transactions: list[TransactionModel],
        correlation_id: UUID,
    ) -> None:
        await self._audit_logger.log_transactions_imported(
            imported_count=result.imported_count,
            batches_committed=result.batches_committed,
            total_change=result.total_change,
            correlation_id=correlation_id,
        )
        for effect in result.effects:
            await self._audit_logger.log_balance_adjusted(
                customer_id=effect.customer_id,
                amount=effect.amount,
                reason=effect.reason,
                transaction_id=effect.transaction_id,
                correlation_id=correlation_id,
            )
        dog_names = {t.id: t.dog_name for t in transactions}
        for transaction_id in result.unlinked_transaction_ids:
            await self._audit_logger.log_unlinked_transaction(
                transaction_id=transaction_id,
                dog_name=dog_names.get(transaction_id) or "",
                correlation_id=correlation_id,
            )
