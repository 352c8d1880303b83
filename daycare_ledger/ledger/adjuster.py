"""
Balance Adjuster

Keeps `customer.balance` in step with the ledger in real time by
applying each transaction's diff as an increment in the SAME atomic
batch as the transaction write:

    create              balance += diff(new)
    edit                balance += diff(new) - diff(old)
    delete              balance -= diff(deleted)
    batch delete        balance -= diff(t) for every deleted t
    paid-amount edit    balance += new_paid - old_paid

CRITICAL: There is no two-phase client-side sequencing. Either the
transaction write and every balance increment land together, or the
store rejects the batch and nothing changes. A rejected batch is raised
to the caller and NEVER retried here.

Edits and deletes compare-and-swap on the stored `revision`, so a diff
computed from a stale copy of the row can never be applied.

Income rows no customer can be matched to are written without any
balance effect and logged as a data-quality signal.
"""

from datetime import date
from typing import Any, Optional, Union
from uuid import UUID

import structlog
from pydantic import BaseModel, Field

from daycare_ledger.audit import AuditLogger, create_correlation_id
from daycare_ledger.config import LedgerSettings, get_settings
from daycare_ledger.ledger.diff import calculate_billed, calculate_diff, is_income
from daycare_ledger.models.audit import AuditEventType
from daycare_ledger.models.keys import read_field, utcnow
from daycare_ledger.models.transaction import ExpenseTransaction, IncomeTransaction
from daycare_ledger.services.matching import CustomerMatcher
from daycare_ledger.services.storage import (
    CUSTOMERS,
    TRANSACTIONS,
    DocumentStore,
    Increment,
    NotFoundError,
    StorageError,
    WriteBatch,
    get_document,
)

logger = structlog.get_logger(__name__)

TransactionModel = Union[IncomeTransaction, ExpenseTransaction]


class BalanceEffect(BaseModel):
    """One balance increment included in a committed batch."""
    customer_id: str
    amount: int
    reason: str
    transaction_id: Optional[str] = None


class AdjustmentResult(BaseModel):
    """What a ledger write did to customer balances."""
    transaction_ids: list[str] = Field(default_factory=list)
    effects: list[BalanceEffect] = Field(default_factory=list)
    unlinked_transaction_ids: list[str] = Field(
        default_factory=list,
        description="Income rows written without a balance effect"
    )
    batches_committed: int = 0

    @property
    def total_change(self) -> int:
        return sum(effect.amount for effect in self.effects)

    def change_for(self, customer_id: str) -> int:
        return sum(e.amount for e in self.effects if e.customer_id == customer_id)


def balance_increment(amount: int) -> dict[str, Any]:
    return {
        "balance": Increment(amount),
        "last_balance_update": utcnow().isoformat(),
    }


def prepare_for_save(transaction: TransactionModel, revision: int = 0) -> dict[str, Any]:
    """Document to store, with `is_completed` derived from paid vs billed."""
    document = transaction.to_document()
    document["is_completed"] = transaction.paid_amount >= calculate_billed(transaction)
    document["revision"] = revision
    return document


class BalanceAdjuster:
    """
    Incremental balance maintenance for every ledger write.

    Each public method builds exactly one write batch (or, for batch
    deletes above the store limit, one batch per chunk) and commits it.
    """

    def __init__(
        self,
        store: DocumentStore,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        self._store = store
        self._audit_logger = audit_logger
        self._settings = settings or get_settings().ledger

    async def create_transaction(
        self,
        transaction: TransactionModel,
        correlation_id: Optional[UUID] = None,
    ) -> AdjustmentResult:
        """
        Save a new transaction and apply `balance += diff(new)`.

        Raises:
            AtomicWriteError: If the store rejects the batch (nothing saved)
        """
        correlation_id = correlation_id or create_correlation_id()
        matcher = CustomerMatcher(self._store)
        result = AdjustmentResult(transaction_ids=[transaction.id])

        batch = WriteBatch()
        # Refuse to overwrite an existing row with the same ID
        batch.require(TRANSACTIONS, transaction.id, "id", None)
        batch.set(TRANSACTIONS, transaction.id, prepare_for_save(transaction))

        diff = calculate_diff(transaction)
        if transaction.is_income:
            customer_id = await matcher.resolve_id(transaction)
            if customer_id is None:
                result.unlinked_transaction_ids.append(transaction.id)
            else:
                self._add_effect(batch, result, customer_id, diff, "create", transaction.id)

        await self._store.commit(batch)
        result.batches_committed = 1

        await self._audit_write(
            AuditEventType.TRANSACTION_CREATED, transaction, result, diff, correlation_id
        )
        return result

    async def update_transaction(
        self,
        transaction: TransactionModel,
        correlation_id: Optional[UUID] = None,
    ) -> AdjustmentResult:
        """
        Replace a stored transaction and apply `diff(new) - diff(old)`.

        If the edit moves the row to a different customer, the old
        customer gets `-diff(old)` and the new one `+diff(new)`.

        Raises:
            NotFoundError: If the transaction does not exist
            PreconditionFailedError: If the row changed since it was read
            AtomicWriteError: If the store rejects the batch
        """
        correlation_id = correlation_id or create_correlation_id()
        old = await self._load(transaction.id)
        matcher = CustomerMatcher(self._store)
        result = AdjustmentResult(transaction_ids=[transaction.id])

        old_revision = read_field(old, "revision")
        document = prepare_for_save(transaction, revision=(old_revision or 0) + 1)
        document["created_at"] = old.get("created_at", document["created_at"])

        batch = WriteBatch()
        batch.require(TRANSACTIONS, transaction.id, "revision", old_revision)
        batch.set(TRANSACTIONS, transaction.id, document)

        old_diff = calculate_diff(old)
        new_diff = calculate_diff(transaction)
        old_customer = await matcher.resolve_id(old) if is_income(old) else None
        new_customer = await matcher.resolve_id(transaction) if transaction.is_income else None

        if old_customer and old_customer == new_customer:
            self._add_effect(
                batch, result, old_customer, new_diff - old_diff, "edit", transaction.id
            )
        else:
            if old_customer:
                self._add_effect(batch, result, old_customer, -old_diff, "edit_unlink", transaction.id)
            if new_customer:
                self._add_effect(batch, result, new_customer, new_diff, "edit_link", transaction.id)
        if transaction.is_income and new_customer is None:
            result.unlinked_transaction_ids.append(transaction.id)

        await self._store.commit(batch)
        result.batches_committed = 1

        await self._audit_write(
            AuditEventType.TRANSACTION_UPDATED, transaction, result, new_diff - old_diff, correlation_id
        )
        return result

    async def delete_transaction(
        self,
        transaction_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AdjustmentResult:
        """
        Delete a transaction and reverse its effect: `balance -= diff(deleted)`.

        Raises:
            NotFoundError: If the transaction does not exist
            PreconditionFailedError: If the row changed since it was read
            AtomicWriteError: If the store rejects the batch
        """
        correlation_id = correlation_id or create_correlation_id()
        target = await self._load(transaction_id)
        matcher = CustomerMatcher(self._store)
        result = AdjustmentResult(transaction_ids=[transaction_id])

        batch = WriteBatch()
        await self._add_deletion(batch, result, matcher, target)

        await self._store.commit(batch)
        result.batches_committed = 1

        if self._audit_logger:
            await self._audit_logger.log_transaction_written(
                event_type=AuditEventType.TRANSACTION_DELETED,
                transaction_id=transaction_id,
                customer_id=result.effects[0].customer_id if result.effects else None,
                diff=-calculate_diff(target),
                correlation_id=correlation_id,
            )
            await self._audit_effects(result, correlation_id)
        return result

    async def batch_delete_transactions(
        self,
        transaction_ids: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> AdjustmentResult:
        """
        Delete many transactions, reversing each one's diff.

        Reversals are plain increments, so they are added to the batch
        one per transaction with no ordering or pre-summing. Each chunk
        (at most `batch_chunk_size` writes) is one atomic unit; chunks
        are committed sequentially and a failure stops the run, leaving
        earlier chunks applied and later ones untouched.

        IDs that no longer exist are skipped.

        Raises:
            AtomicWriteError: If a chunk is rejected. The error's
                `committed` holds the result for the chunks already applied
        """
        correlation_id = correlation_id or create_correlation_id()
        matcher = CustomerMatcher(self._store)
        result = AdjustmentResult()

        # A deletion is at most two writes: the row and one balance increment
        per_chunk = max(1, self._settings.batch_chunk_size // 2)
        unique_ids = list(dict.fromkeys(transaction_ids))

        try:
            for start in range(0, len(unique_ids), per_chunk):
                chunk_result = AdjustmentResult()
                batch = WriteBatch()
                for transaction_id in unique_ids[start:start + per_chunk]:
                    document = await get_document(self._store, TRANSACTIONS, transaction_id)
                    if document is None:
                        logger.warning("batch_delete_missing", transaction_id=transaction_id)
                        continue
                    chunk_result.transaction_ids.append(transaction_id)
                    await self._add_deletion(batch, chunk_result, matcher, document)

                if not batch:
                    continue
                await self._store.commit(batch)

                result.transaction_ids.extend(chunk_result.transaction_ids)
                result.effects.extend(chunk_result.effects)
                result.unlinked_transaction_ids.extend(chunk_result.unlinked_transaction_ids)
                result.batches_committed += 1
        except StorageError as e:
            logger.error(
                "batch_delete_stopped",
                batches_committed=result.batches_committed,
                error=str(e),
            )
            e.committed = result
            raise
        finally:
            # Committed chunks are audited even when a later chunk fails
            if self._audit_logger and result.batches_committed:
                await self._audit_logger.log_batch_deleted(
                    transaction_ids=result.transaction_ids,
                    total_reversal=result.total_change,
                    correlation_id=correlation_id,
                )
                await self._audit_effects(result, correlation_id)
        return result

    async def update_paid_amount(
        self,
        transaction_id: str,
        paid_amount: int,
        correlation_id: Optional[UUID] = None,
    ) -> AdjustmentResult:
        """
        Inline paid-amount edit: billed is unchanged, so
        `balance += new_paid - old_paid`.

        Raises:
            NotFoundError: If the transaction does not exist
            PreconditionFailedError: If the row changed since it was read
            AtomicWriteError: If the store rejects the batch
        """
        correlation_id = correlation_id or create_correlation_id()
        target = await self._load(transaction_id)
        matcher = CustomerMatcher(self._store)
        result = AdjustmentResult(transaction_ids=[transaction_id])

        old_revision = read_field(target, "revision")
        batch = WriteBatch()
        batch.require(TRANSACTIONS, transaction_id, "revision", old_revision)
        batch.update(TRANSACTIONS, transaction_id, {
            "paid_amount": paid_amount,
            "is_completed": paid_amount >= calculate_billed(target),
            "revision": (old_revision or 0) + 1,
        })

        adjustment = 0
        if is_income(target):
            adjustment = calculate_diff({**target, "paid_amount": paid_amount}) - calculate_diff(target)
            customer_id = await matcher.resolve_id(target)
            if customer_id is None:
                result.unlinked_transaction_ids.append(transaction_id)
            else:
                self._add_effect(batch, result, customer_id, adjustment, "paid_amount", transaction_id)

        await self._store.commit(batch)
        result.batches_committed = 1

        if self._audit_logger:
            await self._audit_logger.log_transaction_written(
                event_type=AuditEventType.PAID_AMOUNT_UPDATED,
                transaction_id=transaction_id,
                customer_id=result.effects[0].customer_id if result.effects else None,
                diff=adjustment,
                correlation_id=correlation_id,
            )
            await self._audit_effects(result, correlation_id)
            await self._audit_unlinked(result, target, correlation_id)
        return result

    async def stop_service(
        self,
        transaction_id: str,
        end_date: Optional[date] = None,
        end_time: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Mark a running service finished. No balance effect."""
        correlation_id = correlation_id or create_correlation_id()
        target = await self._load(transaction_id)
        now = utcnow()
        batch = WriteBatch()
        batch.require(TRANSACTIONS, transaction_id, "revision", read_field(target, "revision"))
        batch.update(TRANSACTIONS, transaction_id, {
            "is_running": False,
            "end_date": (end_date or now.date()).isoformat(),
            "end_time": end_time or now.strftime("%H:%M"),
            "revision": Increment(1),
        })
        await self._store.commit(batch)

        if self._audit_logger:
            await self._audit_logger.log_transaction_written(
                event_type=AuditEventType.SERVICE_STOPPED,
                transaction_id=transaction_id,
                customer_id=read_field(target, "customer_id"),
                diff=0,
                correlation_id=correlation_id,
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(self, transaction_id: str) -> dict[str, Any]:
        document = await get_document(self._store, TRANSACTIONS, transaction_id)
        if document is None:
            raise NotFoundError(f"Transaction not found: {transaction_id}")
        return document

    async def _add_deletion(
        self,
        batch: WriteBatch,
        result: AdjustmentResult,
        matcher: CustomerMatcher,
        document: dict[str, Any],
    ) -> None:
        transaction_id = document["id"]
        batch.require(TRANSACTIONS, transaction_id, "revision", read_field(document, "revision"))
        batch.delete(TRANSACTIONS, transaction_id)
        if not is_income(document):
            return
        customer_id = await matcher.resolve_id(document)
        if customer_id is None:
            result.unlinked_transaction_ids.append(transaction_id)
            return
        self._add_effect(batch, result, customer_id, -calculate_diff(document), "delete", transaction_id)

    @staticmethod
    def _add_effect(
        batch: WriteBatch,
        result: AdjustmentResult,
        customer_id: str,
        amount: int,
        reason: str,
        transaction_id: Optional[str],
    ) -> None:
        if amount == 0:
            return
        batch.update(CUSTOMERS, customer_id, balance_increment(amount))
        result.effects.append(BalanceEffect(
            customer_id=customer_id,
            amount=amount,
            reason=reason,
            transaction_id=transaction_id,
        ))

    async def _audit_write(
        self,
        event_type: AuditEventType,
        transaction: TransactionModel,
        result: AdjustmentResult,
        diff: int,
        correlation_id: UUID,
    ) -> None:
        if not self._audit_logger:
            return
        await self._audit_logger.log_transaction_written(
            event_type=event_type,
            transaction_id=transaction.id,
            customer_id=result.effects[-1].customer_id if result.effects else None,
            diff=diff,
            correlation_id=correlation_id,
        )
        await self._audit_effects(result, correlation_id)
        await self._audit_unlinked(result, transaction, correlation_id)

    async def _audit_effects(self, result: AdjustmentResult, correlation_id: UUID) -> None:
        for effect in result.effects:
            await self._audit_logger.log_balance_adjusted(
                customer_id=effect.customer_id,
                amount=effect.amount,
                reason=effect.reason,
                transaction_id=effect.transaction_id,
                correlation_id=correlation_id,
            )

    async def _audit_unlinked(self, result: AdjustmentResult, transaction: Any, correlation_id: UUID) -> None:
        for transaction_id in result.unlinked_transaction_ids:
            await self._audit_logger.log_unlinked_transaction(
                transaction_id=transaction_id,
                dog_name=read_field(transaction, "dog_name") or "",
                correlation_id=correlation_id,
            )
