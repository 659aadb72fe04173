"""Validation package."""

from caretracker.validation.validator import ExpenseDraftValidator, InvalidExpenseError

__all__ = ["ExpenseDraftValidator", "InvalidExpenseError"]
