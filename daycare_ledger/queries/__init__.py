"""Read models for balances, tickets and attendance."""

from daycare_ledger.queries.executor import (
    BalanceStatus,
    BalanceView,
    LedgerQueries,
    TicketView,
)

__all__ = ["BalanceStatus", "BalanceView", "LedgerQueries", "TicketView"]
