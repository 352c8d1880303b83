"""Audit logging package."""

from daycare_ledger.audit.logger import AuditLogger, configure_log_level, create_correlation_id

__all__ = ["AuditLogger", "configure_log_level", "create_correlation_id"]
