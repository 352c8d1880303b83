"""Optimistic previews of in-flight mutations."""

from daycare_ledger.echo.overlay import (
    OPTIMISTIC_FLAG,
    OptimisticOverlay,
    PendingKind,
    PendingMutation,
)

__all__ = ["OPTIMISTIC_FLAG", "OptimisticOverlay", "PendingKind", "PendingMutation"]
