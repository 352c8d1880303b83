"""
Configuration Management for Daycare Ledger

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
The per-extra-dog surcharge is NOT configurable: it is part of the
public pricing contract and lives in `daycare_ledger.ledger.diff`.
"""

from datetime import date
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerSettings(BaseSettings):
    """Balance and ticket engine configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # The document store rejects batches above 500 writes
    batch_chunk_size: int = Field(
        default=500,
        ge=1,
        le=500,
        description="Maximum number of writes per atomic batch (imports, batch deletes)"
    )
    default_staff_name: str = Field(
        default="System",
        min_length=1,
        description="Staff name recorded on automatic ticket log entries"
    )
    reconciliation_since: Optional[date] = Field(
        default=None,
        description="Ignore transactions that start before this date when reconciling"
    )
    delete_confirmation_ttl_seconds: int = Field(
        default=300,
        ge=1,
        description="How long a requested delete can still be confirmed"
    )
    max_pending_deletes: int = Field(
        default=100,
        ge=1,
        description="Unconfirmed delete requests kept at once; the oldest is dropped first"
    )


class StoreSettings(BaseSettings):
    """Document store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="STORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    backend: str = Field(
        default="memory",
        description="Document store backend"
    )
    # Reads only. Financial writes are never retried.
    read_retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for idempotent store reads"
    )
    read_retry_min_wait_seconds: float = Field(
        default=0.5,
        ge=0.0,
        description="Minimum backoff between read attempts"
    )
    read_retry_max_wait_seconds: float = Field(
        default=4.0,
        ge=0.0,
        description="Maximum backoff between read attempts"
    )

    @field_validator('backend')
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Only the in-memory backend ships with the package."""
        if v.lower() != "memory":
            raise ValueError(f"Unsupported store backend: {v}")
        return v.lower()


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Minimum level for the local structured log"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()

    @property
    def store(self) -> StoreSettings:
        return StoreSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}, plus
    `<name>_error` entries for groups that failed to load.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("ledger", "store", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except ValueError as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
