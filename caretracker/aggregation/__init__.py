"""Expense aggregation package."""

from caretracker.aggregation.aggregator import (
    CareRecipientBreakdown,
    ExpenseStats,
    SpendingGroup,
    TaxProgress,
    compute_stats,
    recent,
    spending_by_care_recipient,
    spending_by_category,
    tax_progress,
)

__all__ = [
    "CareRecipientBreakdown",
    "ExpenseStats",
    "SpendingGroup",
    "TaxProgress",
    "compute_stats",
    "recent",
    "spending_by_care_recipient",
    "spending_by_category",
    "tax_progress",
]
