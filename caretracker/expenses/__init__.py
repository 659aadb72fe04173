"""Expense and care recipient services."""

from caretracker.expenses.service import (
    CareRecipientInUseError,
    CareRecipientService,
    ExpenseService,
)

__all__ = ["CareRecipientInUseError", "CareRecipientService", "ExpenseService"]
