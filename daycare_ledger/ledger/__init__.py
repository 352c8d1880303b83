"""
Ledger Package

The balance side of the consistency engine: the diff rule, incremental
balance adjustment and full reconciliation. Bulk import lives in
`daycare_ledger.ledger.importer` (it depends on boundary validation).
"""

from daycare_ledger.ledger.adjuster import AdjustmentResult, BalanceAdjuster, BalanceEffect
from daycare_ledger.ledger.diff import (
    EXTRA_DOG_FEE,
    DiffBreakdown,
    calculate_billed,
    calculate_diff,
    compute_breakdown,
)
from daycare_ledger.ledger.reconciliation import ReconciliationResult, ReconciliationService

__all__ = [
    "EXTRA_DOG_FEE",
    "AdjustmentResult",
    "BalanceAdjuster",
    "BalanceEffect",
    "DiffBreakdown",
    "ReconciliationResult",
    "ReconciliationService",
    "calculate_billed",
    "calculate_diff",
    "compute_breakdown",
]
