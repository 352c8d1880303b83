"""
Optimistic Echo Layer

Shows a mutation to staff before the store confirms it, then reconciles
with the confirmed state.

DESIGN DECISION: Two explicit layers per collection:

1. CONFIRMED CACHE - the latest snapshot pushed by the store. Anything
   correctness-critical (reconciliation, balance math) reads only this
   layer or the store itself.
2. PENDING OVERLAYS - a keyed map of in-flight mutations, each tagged
   with a token. `view()` lays them over the confirmed cache and marks
   the records they produce with `is_optimistic`.

A pending overlay ends in exactly one of two ways:
- A confirmed snapshot shows its effect (or the write is confirmed and
  the cache already matches it): the overlay is cleared
- The write fails: the overlay is rolled back and the error is re-raised.
  There is NO automatic retry; a retried financial write could be
  applied twice

Reloading simply discards the pending layer; the store is the truth.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar
from uuid import uuid4

import structlog

from daycare_ledger.models.keys import utcnow

logger = structlog.get_logger(__name__)

T = TypeVar("T")

OPTIMISTIC_FLAG = "is_optimistic"


class PendingKind(str, Enum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class PendingMutation:
    """One in-flight mutation shown ahead of confirmation."""
    token: str
    kind: PendingKind
    key: str
    record: Optional[dict[str, Any]]
    base: Optional[dict[str, Any]]  # Confirmed record when the mutation began
    created_at: datetime = field(default_factory=utcnow)
    confirmed: bool = False

    def is_reflected_in(self, confirmed: dict[str, dict[str, Any]]) -> bool:
        """Does the confirmed state already show this mutation's effect?"""
        current = confirmed.get(self.key)
        if self.kind == PendingKind.DELETE:
            return current is None
        if self.kind == PendingKind.ADD:
            return current is not None
        return current != self.base or _strip(current) == _strip(self.record)


def _strip(record: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    if record is None:
        return None
    return {k: v for k, v in record.items() if k != OPTIMISTIC_FLAG}


class OptimisticOverlay:
    """
    Confirmed snapshot cache plus pending mutation overlays for one collection.

    Usage:
        overlay = OptimisticOverlay("transactions")
        unsubscribe = store.subscribe("transactions", overlay.apply_snapshot)
        await overlay.run(txn.id, txn.to_document(), lambda: adjuster.create_transaction(txn))
    """

    def __init__(
        self,
        name: str,
        key_field: str = "id",
        on_change: Optional[Callable[[list[dict[str, Any]]], None]] = None,
    ):
        """
        Args:
            name: Collection name, for logging
            key_field: Record field holding the key
            on_change: Called with `view()` whenever the projection changes
        """
        self.name = name
        self._key_field = key_field
        self._on_change = on_change
        self._confirmed: dict[str, dict[str, Any]] = {}
        self._pending: dict[str, PendingMutation] = {}
        self._snapshot_count = 0

    # ------------------------------------------------------------------
    # Confirmed layer
    # ------------------------------------------------------------------

    def apply_snapshot(self, snapshot: list[dict[str, Any]]) -> None:
        """
        Replace the confirmed cache with a pushed snapshot.

        Pending overlays whose effect the snapshot shows are cleared, and
        so is every overlay whose write was already confirmed.
        """
        self._confirmed = {
            str(record[self._key_field]): copy.deepcopy(record)
            for record in snapshot
            if record.get(self._key_field) is not None
        }
        self._snapshot_count += 1

        cleared = [
            token for token, mutation in self._pending.items()
            if mutation.confirmed or mutation.is_reflected_in(self._confirmed)
        ]
        for token in cleared:
            del self._pending[token]
        if cleared:
            logger.debug("optimistic_overlays_cleared", overlay=self.name, count=len(cleared))
        self._changed()

    def confirmed(self) -> list[dict[str, Any]]:
        """Confirmed records only. Use this for anything balance-critical."""
        return [copy.deepcopy(record) for record in self._confirmed.values()]

    def confirmed_record(self, key: str) -> Optional[dict[str, Any]]:
        record = self._confirmed.get(key)
        return copy.deepcopy(record) if record is not None else None

    @property
    def has_snapshot(self) -> bool:
        return self._snapshot_count > 0

    # ------------------------------------------------------------------
    # Pending layer
    # ------------------------------------------------------------------

    def begin(
        self,
        key: str,
        record: Optional[dict[str, Any]] = None,
        kind: Optional[PendingKind] = None,
    ) -> str:
        """
        Show a mutation immediately.

        Args:
            key: Record key (new records get their ID before being written)
            record: Full record after the mutation; None means delete
            kind: Inferred from `record` and the confirmed cache when omitted

        Returns:
            Token identifying the overlay for confirm/rollback
        """
        base = self._confirmed.get(key)
        if kind is None:
            if record is None:
                kind = PendingKind.DELETE
            else:
                kind = PendingKind.UPDATE if base is not None else PendingKind.ADD

        token = uuid4().hex
        self._pending[token] = PendingMutation(
            token=token,
            kind=kind,
            key=key,
            record=copy.deepcopy(record),
            base=copy.deepcopy(base),
        )
        self._changed()
        return token

    def confirm(self, token: str) -> None:
        """
        The write behind `token` succeeded.

        The overlay is cleared now if the confirmed cache already shows the
        change, otherwise on the next snapshot.
        """
        mutation = self._pending.get(token)
        if mutation is None:
            return
        if mutation.is_reflected_in(self._confirmed):
            del self._pending[token]
            self._changed()
        else:
            mutation.confirmed = True

    def rollback(self, token: str) -> None:
        """The write behind `token` failed: drop its overlay."""
        mutation = self._pending.pop(token, None)
        if mutation is not None:
            logger.info(
                "optimistic_overlay_rolled_back",
                overlay=self.name,
                key=mutation.key,
                kind=mutation.kind.value,
            )
            self._changed()

    def clear_pending(self) -> None:
        """Discard every overlay (e.g. on reload)."""
        self._pending.clear()
        self._changed()

    @property
    def pending(self) -> list[PendingMutation]:
        return list(self._pending.values())

    def is_pending(self, key: str) -> bool:
        return any(mutation.key == key for mutation in self._pending.values())

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------

    def view(self) -> list[dict[str, Any]]:
        """Confirmed records with pending overlays applied, in begin order."""
        merged: dict[str, dict[str, Any]] = {
            key: copy.deepcopy(record) for key, record in self._confirmed.items()
        }
        for mutation in self._pending.values():
            if mutation.kind == PendingKind.DELETE:
                merged.pop(mutation.key, None)
            else:
                projected = copy.deepcopy(mutation.record) or {}
                projected.setdefault(self._key_field, mutation.key)
                projected[OPTIMISTIC_FLAG] = True
                merged[mutation.key] = projected
        return list(merged.values())

    def get(self, key: str) -> Optional[dict[str, Any]]:
        for record in self.view():
            if str(record.get(self._key_field)) == key:
                return record
        return None

    async def run(
        self,
        key: str,
        record: Optional[dict[str, Any]],
        write: Callable[[], Awaitable[T]],
        kind: Optional[PendingKind] = None,
    ) -> T:
        """
        Begin an overlay, await the write, then confirm or roll back.

        Raises:
            Whatever `write` raises, after the overlay is rolled back
        """
        token = self.begin(key, record, kind)
        try:
            result = await write()
        except BaseException:
            # Cancellation included: a write that never finished leaves no overlay
            self.rollback(token)
            raise
        self.confirm(token)
        return result

    def _changed(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self.view())
        except Exception:
            # A broken view must not undo a committed write
            logger.exception("overlay_listener_failed", overlay=self.name)
