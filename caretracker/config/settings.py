"""
Configuration Management for CareTracker

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
This makes it easy to see what external dependencies exist and
ensures all required configuration is validated at startup.
"""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets storage configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        extra="ignore"
    )

    credentials_path: str = Field(
        ...,
        description="Path to Google service account credentials JSON"
    )
    spreadsheet_id: str = Field(
        ...,
        description="ID of the Google Sheets spreadsheet to use"
    )

    # Sheet names within the spreadsheet
    transactions_sheet_name: str = Field(
        default="SyncedTransactions",
        description="Name of the sheet for synced bank transactions"
    )
    expenses_sheet_name: str = Field(
        default="Expenses",
        description="Name of the sheet for expenses"
    )
    decisions_sheet_name: str = Field(
        default="TriageDecisions",
        description="Name of the sheet for triage decisions"
    )
    care_recipients_sheet_name: str = Field(
        default="CareRecipients",
        description="Name of the sheet for care recipients"
    )
    accounts_sheet_name: str = Field(
        default="LinkedAccounts",
        description="Name of the sheet for linked financial accounts"
    )
    audit_sheet_name: str = Field(
        default="AuditLog",
        description="Name of the sheet for audit logs"
    )

    @field_validator('credentials_path')
    @classmethod
    def validate_credentials_path(cls, v: str) -> str:
        """Warn if credentials file doesn't exist (but don't fail - might be mounted later)."""
        if not Path(v).exists():
            import warnings
            warnings.warn(
                f"Google credentials file not found at {v}. "
                "Make sure it exists before running the application."
            )
        return v


class TriageSettings(BaseSettings):
    """Transaction triage and ingestion configuration."""

    model_config = SettingsConfigDict(
        env_prefix="TRIAGE_",
        extra="ignore"
    )

    fetch_limit: int = Field(
        default=50,
        ge=1,
        le=500,
        description="How many pending transactions to load into one review session"
    )
    undo_depth: Optional[int] = Field(
        default=None,
        ge=1,
        description="Maximum undo history (None = unbounded)"
    )
    sync_days: int = Field(
        default=30,
        ge=1,
        le=730,
        description="How many days of history to request from the bank on sync"
    )
    default_currency: str = Field(
        default="USD",
        min_length=3,
        max_length=3,
        description="Currency used when the provider omits one"
    )


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

    # Tax deduction tracking
    default_household_agi: Decimal = Field(
        default=Decimal("75000"),
        ge=0,
        description="Household AGI used when the user has not entered one"
    )
    medical_deduction_rate: Decimal = Field(
        default=Decimal("0.075"),
        gt=0,
        le=1,
        description="Share of AGI medical expenses must exceed to be deductible"
    )

    # Validation thresholds
    max_expense_amount: Decimal = Field(
        default=Decimal("250000"),
        description="Maximum reasonable expense amount (for sanity checking)"
    )
    future_date_tolerance_days: int = Field(
        default=7,
        description="How many days in the future an expense date can be"
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

    # Load all sub-settings
    # Note: These are loaded lazily to allow partial configuration

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

    @property
    def triage(self) -> TriageSettings:
        return TriageSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("google_sheets", "triage", "app"):
        try:
            _ = getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
