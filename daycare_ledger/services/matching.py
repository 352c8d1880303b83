"""
Customer Matcher Chain

Links a transaction to the customer whose balance it affects. Three
strategies are tried in priority order and the first hit wins:

1. CUSTOMER_ID    - the transaction's `customer_id` names an existing customer
2. DOG_AND_PHONE  - (normalized dog name, phone digits)
3. DOG_AND_OWNER  - (normalized dog name, normalized owner name)

DESIGN DECISION: The same chain is used by the live balance adjuster and
by reconciliation. If only reconciliation used the fallback strategies,
every unlinked sale would be invisible in real time and then "appear" as
drift on the next reconcile.

A fallback key shared by more than one customer is ambiguous and
resolves to no match; such rows stay unlinked until staff fix them.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import structlog

from daycare_ledger.models.keys import make_name_key, make_phone_key, read_field
from daycare_ledger.services.storage import (
    CUSTOMERS,
    DocumentStore,
    get_document,
    query_documents,
)

logger = structlog.get_logger(__name__)


class MatchStrategy(str, Enum):
    CUSTOMER_ID = "customer_id"
    DOG_AND_PHONE = "dog_and_phone"
    DOG_AND_OWNER = "dog_and_owner"


@dataclass(frozen=True)
class CustomerMatch:
    customer_id: str
    strategy: MatchStrategy


def transaction_phone_key(transaction: Any) -> Optional[str]:
    return read_field(transaction, "phone_key") or make_phone_key(
        read_field(transaction, "dog_name"), read_field(transaction, "phone")
    )


def transaction_name_key(transaction: Any) -> Optional[str]:
    return read_field(transaction, "name_key") or make_name_key(
        read_field(transaction, "dog_name"), read_field(transaction, "customer_name")
    )


class CustomerMatcher:
    """
    Resolves transactions to customers against the confirmed store state.

    Lookups are memoized per instance, so create one matcher per
    operation (one reconciliation run, one batch delete) rather than
    keeping it around between operations.
    """

    def __init__(self, store: DocumentStore):
        self._store = store
        self._existing_ids: dict[str, bool] = {}
        self._key_owners: dict[tuple[str, str], Optional[str]] = {}

    async def resolve(self, transaction: Any) -> Optional[CustomerMatch]:
        """Return the winning match, or None for an unlinked transaction."""
        customer_id = read_field(transaction, "customer_id")
        if customer_id and await self._customer_exists(customer_id):
            return CustomerMatch(customer_id, MatchStrategy.CUSTOMER_ID)

        phone_key = transaction_phone_key(transaction)
        if phone_key:
            owner = await self._owner_of("phone_key", phone_key)
            if owner:
                return CustomerMatch(owner, MatchStrategy.DOG_AND_PHONE)

        name_key = transaction_name_key(transaction)
        if name_key:
            owner = await self._owner_of("name_key", name_key)
            if owner:
                return CustomerMatch(owner, MatchStrategy.DOG_AND_OWNER)

        return None

    async def resolve_id(self, transaction: Any) -> Optional[str]:
        match = await self.resolve(transaction)
        return match.customer_id if match else None

    async def _customer_exists(self, customer_id: str) -> bool:
        if customer_id not in self._existing_ids:
            document = await get_document(self._store, CUSTOMERS, customer_id)
            self._existing_ids[customer_id] = document is not None
        return self._existing_ids[customer_id]

    async def _owner_of(self, key_field: str, key: str) -> Optional[str]:
        cache_key = (key_field, key)
        if cache_key not in self._key_owners:
            documents: list[dict[str, Any]] = await query_documents(
                self._store, CUSTOMERS, {key_field: key}
            )
            if len(documents) == 1:
                self._key_owners[cache_key] = documents[0]["id"]
            else:
                if len(documents) > 1:
                    logger.warning(
                        "ambiguous_customer_key",
                        key_field=key_field,
                        key=key,
                        candidates=[d["id"] for d in documents],
                    )
                self._key_owners[cache_key] = None
        return self._key_owners[cache_key]
