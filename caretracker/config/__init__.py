"""Configuration package."""

from caretracker.config.settings import (
    AppSettings,
    GoogleSheetsSettings,
    Settings,
    TriageSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "GoogleSheetsSettings",
    "Settings",
    "TriageSettings",
    "get_settings",
    "validate_all_settings",
]
