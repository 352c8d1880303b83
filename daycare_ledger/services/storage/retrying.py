"""
Retried Store Reads

Reads are idempotent, so transient connection failures are retried with
exponential backoff. Writes are NEVER routed through here: a retried
financial batch could be applied twice.
"""

from typing import Any, Optional

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from daycare_ledger.config import get_settings
from daycare_ledger.services.storage.interface import DocumentStore, StoreConnectionError


def read_retrying() -> AsyncRetrying:
    """Retry policy for store reads, built from StoreSettings."""
    settings = get_settings().store
    return AsyncRetrying(
        stop=stop_after_attempt(settings.read_retry_attempts),
        wait=wait_exponential(
            multiplier=1,
            min=settings.read_retry_min_wait_seconds,
            max=settings.read_retry_max_wait_seconds,
        ),
        retry=retry_if_exception_type(StoreConnectionError),
        reraise=True,
    )


async def get_document(
    store: DocumentStore,
    collection: str,
    doc_id: str,
) -> Optional[dict[str, Any]]:
    async for attempt in read_retrying():
        with attempt:
            return await store.get(collection, doc_id)


async def query_documents(
    store: DocumentStore,
    collection: str,
    filters: Optional[dict[str, Any]] = None,
) -> list[dict[str, Any]]:
    async for attempt in read_retrying():
        with attempt:
            return await store.query(collection, filters)
