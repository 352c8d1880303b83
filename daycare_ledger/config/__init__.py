"""Configuration package."""

from daycare_ledger.config.settings import (
    AppSettings,
    LedgerSettings,
    Settings,
    StoreSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "LedgerSettings",
    "Settings",
    "StoreSettings",
    "get_settings",
    "validate_all_settings",
]
