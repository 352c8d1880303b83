"""
Daycare Ledger - Source Package

The consistency engine behind a small dog boarding, grooming and
day-care business. It keeps every customer's running balance and
prepaid attendance tickets in step with the transaction ledger and
the daily attendance board.

DESIGN PRINCIPLES:
1. Every financial write is one atomic batch (domain write + balance/ticket increment)
2. Fail early, fail visibly - no automatic retry of financial mutations
3. Reconciliation always reads confirmed store state, never optimistic previews
4. Every step must be auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Daycare Ledger Team"
