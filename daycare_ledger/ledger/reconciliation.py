"""
Reconciliation Service

Recomputes one customer's balance from scratch and OVERWRITES the stored
value. This is the authoritative correction path for drift caused by
unlinked rows, rejected batches or manual data edits.

Flow:
1. Load the customer (confirmed store state, never optimistic overlays)
2. Gather income rows by customer_id, by (dog, phone) key and by
   (dog, owner) key - three independent queries
3. Union and deduplicate by transaction id
4. Keep only rows the matcher chain actually resolves to this customer
5. Sum their diffs and write the sum as the new balance

DESIGN DECISION: Step 4 uses the same matcher chain as the live
adjuster. A row that carries a valid customer_id for someone else but
happens to share a fallback key with this customer is NOT counted here,
so reconciliation and incremental adjustment always agree on ownership.

The reads are not synchronized with concurrent writers. A concurrent edit
during the read window can leave the result stale; running the
reconciliation again fixes it.
"""

from datetime import date
from typing import Any, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel, Field

from daycare_ledger.audit import AuditLogger, create_correlation_id
from daycare_ledger.config import LedgerSettings, get_settings
from daycare_ledger.ledger.diff import calculate_diff
from daycare_ledger.models.keys import make_name_key, make_phone_key, utcnow
from daycare_ledger.models.transaction import TransactionType
from daycare_ledger.services.matching import CustomerMatcher
from daycare_ledger.services.storage import (
    CUSTOMERS,
    TRANSACTIONS,
    DocumentStore,
    NotFoundError,
    WriteBatch,
    get_document,
    query_documents,
)

logger = structlog.get_logger(__name__)


class ReconciliationResult(BaseModel):
    """Outcome of a reconciliation run (or a dry-run preview)."""
    customer_id: str
    previous_balance: int
    new_balance: int
    transaction_ids: list[str] = Field(default_factory=list)
    applied: bool = Field(
        default=False,
        description="False for a preview; the stored balance was not touched"
    )

    @property
    def drift(self) -> int:
        """How far the stored balance was from the recomputed one."""
        return self.new_balance - self.previous_balance

    @property
    def transaction_count(self) -> int:
        return len(self.transaction_ids)


class ReconciliationService:
    """
    Per-customer, on-demand balance recomputation.

    Usage:
        service = ReconciliationService(store, audit_logger)
        result = await service.reconcile(customer_id)
        if result.drift:
            ...
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

    async def reconcile(
        self,
        customer_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> ReconciliationResult:
        """
        Recompute and overwrite the customer's balance.

        Idempotent: with no intervening writes, running it twice yields
        the same balance both times.

        Raises:
            NotFoundError: If the customer does not exist
            AtomicWriteError: If the balance write is rejected
        """
        correlation_id = correlation_id or create_correlation_id()
        result = await self.preview(customer_id)

        batch = WriteBatch()
        batch.update(CUSTOMERS, customer_id, {
            "balance": result.new_balance,
            "last_balance_update": utcnow().isoformat(),
        })
        await self._store.commit(batch)
        result.applied = True

        if self._audit_logger:
            await self._audit_logger.log_balance_reconciled(
                customer_id=customer_id,
                previous_balance=result.previous_balance,
                new_balance=result.new_balance,
                transaction_count=result.transaction_count,
                correlation_id=correlation_id,
            )
        return result

    async def preview(self, customer_id: str) -> ReconciliationResult:
        """
        Dry run: stored vs recomputed balance, without writing.

        Raises:
            NotFoundError: If the customer does not exist
        """
        customer = await get_document(self._store, CUSTOMERS, customer_id)
        if customer is None:
            raise NotFoundError(f"Customer not found: {customer_id}")

        transactions = await self.linked_transactions(customer)
        new_balance = sum(calculate_diff(t) for t in transactions)

        logger.info(
            "balance_recomputed",
            customer_id=customer_id,
            stored=customer.get("balance", 0),
            recomputed=new_balance,
            transactions=len(transactions),
        )
        return ReconciliationResult(
            customer_id=customer_id,
            previous_balance=int(customer.get("balance") or 0),
            new_balance=new_balance,
            transaction_ids=[t["id"] for t in transactions],
        )

    async def linked_transactions(self, customer: dict[str, Any]) -> list[dict[str, Any]]:
        """Every income row the matcher chain links to this customer, deduplicated."""
        customer_id = customer["id"]
        income = TransactionType.INCOME.value
        queries = [{"type": income, "customer_id": customer_id}]

        phone_key = customer.get("phone_key") or make_phone_key(
            customer.get("dog_name"), customer.get("phone")
        )
        if phone_key:
            queries.append({"type": income, "phone_key": phone_key})
        name_key = customer.get("name_key") or make_name_key(
            customer.get("dog_name"), customer.get("owner_name")
        )
        if name_key:
            queries.append({"type": income, "name_key": name_key})

        candidates: dict[str, dict[str, Any]] = {}
        for filters in queries:
            for document in await query_documents(self._store, TRANSACTIONS, filters):
                candidates.setdefault(document["id"], document)

        since = self._settings.reconciliation_since
        matcher = CustomerMatcher(self._store)
        linked = []
        for document in candidates.values():
            if since and not self._on_or_after(document, since):
                continue
            if await matcher.resolve_id(document) == customer_id:
                linked.append(document)
        return linked

    @staticmethod
    def _on_or_after(document: dict[str, Any], since: date) -> bool:
        start = document.get("start_date")
        if not start:
            return True
        # Stored dates are ISO strings, which sort chronologically
        return str(start) >= since.isoformat()
