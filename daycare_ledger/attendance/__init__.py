"""Attendance state machine and ticket bookkeeping."""

from daycare_ledger.attendance.ledger import AttendanceLedger

__all__ = ["AttendanceLedger"]
