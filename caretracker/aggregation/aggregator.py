"""
Expense Aggregation

DESIGN DECISION: Aggregation is DETERMINISTIC and pure.
Every number on the dashboard is computed here from the user's stored
expenses and an explicit reference date. Nothing reads the clock
implicitly, nothing touches storage.

Amounts are summed as Decimal and never rounded on the way.
"""

from datetime import date
from decimal import Decimal
from typing import Iterable, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field

from caretracker.models.expense import (
    CareRecipient,
    Expense,
    ExpenseCategory,
    ReviewStatus,
)


DEFAULT_DEDUCTION_RATE = Decimal("0.075")

ZERO = Decimal("0")


class ExpenseStats(BaseModel):
    """Counts and totals shown on the dashboard."""

    # Count-based stats
    total: int = 0
    deductible: int = 0
    reimbursed: int = 0
    manual: int = 0
    auto_imported: int = 0
    pending: int = 0
    kept: int = 0
    skipped: int = 0
    this_month: int = 0
    this_year: int = 0

    # Amount-based stats
    total_amount: Decimal = ZERO
    deductible_amount: Decimal = ZERO
    this_month_amount: Decimal = ZERO
    this_year_amount: Decimal = ZERO


class TaxProgress(BaseModel):
    """
    Progress toward the medical expense deduction threshold.

    Only the portion of expenses above threshold is deductible.
    """

    threshold: Decimal = Field(
        ...,
        description="household AGI x deduction rate"
    )
    current_tracked: Decimal = Field(
        ...,
        description="This year's tax-deductible expenses"
    )
    progress_percent: Decimal = Field(..., ge=0, le=100)
    unlocked_deductions: Decimal = Field(
        ...,
        ge=0,
        description="Amount tracked above the threshold"
    )


class SpendingGroup(BaseModel):
    """Total spending for one group of expenses."""

    key: str
    label: str
    amount: Decimal = ZERO
    count: int = 0


class CareRecipientBreakdown(BaseModel):
    """Spending per care recipient, plus what is not assigned to anyone."""

    recipients: list[SpendingGroup] = Field(default_factory=list)
    unassigned: SpendingGroup = Field(
        default_factory=lambda: SpendingGroup(key="unassigned", label="Unassigned")
    )

    @property
    def unassigned_percent(self) -> Decimal:
        total = self.unassigned.amount + sum((g.amount for g in self.recipients), ZERO)
        if total == 0:
            return ZERO
        return (self.unassigned.amount / total * 100).quantize(Decimal("1"))


def _same_month(d: date, today: date) -> bool:
    return d.year == today.year and d.month == today.month


def _sum(expenses: Iterable[Expense]) -> Decimal:
    return sum((e.amount for e in expenses), ZERO)


def compute_stats(expenses: list[Expense], today: date) -> ExpenseStats:
    """
    Compute dashboard statistics.

    Expenses without a triage status count as pending.
    """
    this_month = [e for e in expenses if _same_month(e.expense_date, today)]
    this_year = [e for e in expenses if e.expense_date.year == today.year]
    deductible = [e for e in expenses if e.is_tax_deductible]

    def status_count(status: ReviewStatus) -> int:
        return sum(1 for e in expenses if (e.triage_status or ReviewStatus.PENDING) == status)

    return ExpenseStats(
        total=len(expenses),
        deductible=len(deductible),
        reimbursed=sum(1 for e in expenses if e.is_reimbursed),
        manual=sum(1 for e in expenses if not e.is_auto_imported),
        auto_imported=sum(1 for e in expenses if e.is_auto_imported),
        pending=status_count(ReviewStatus.PENDING),
        kept=status_count(ReviewStatus.KEPT),
        skipped=status_count(ReviewStatus.SKIPPED),
        this_month=len(this_month),
        this_year=len(this_year),
        total_amount=_sum(expenses),
        deductible_amount=_sum(deductible),
        this_month_amount=_sum(this_month),
        this_year_amount=_sum(this_year),
    )


def tax_progress(
    expenses: list[Expense],
    household_agi: Optional[Union[Decimal, int, str]],
    today: date,
    rate: Decimal = DEFAULT_DEDUCTION_RATE,
) -> TaxProgress:
    """
    Compute progress toward the deduction threshold for today's tax year.

    With no AGI (None or not positive) the threshold is zero and the
    progress is reported as 0%.
    """
    current_tracked = _sum(
        e for e in expenses
        if e.is_tax_deductible and e.expense_date.year == today.year
    )

    agi = Decimal(str(household_agi)) if household_agi is not None else ZERO
    threshold = agi * Decimal(str(rate)) if agi > 0 else ZERO

    if threshold > 0:
        progress = min(Decimal("100"), current_tracked / threshold * 100)
    else:
        progress = ZERO

    return TaxProgress(
        threshold=threshold,
        current_tracked=current_tracked,
        progress_percent=progress,
        unlocked_deductions=max(ZERO, current_tracked - threshold),
    )


def spending_by_category(expenses: list[Expense]) -> list[SpendingGroup]:
    """Total spending per category, largest first."""
    groups: dict[ExpenseCategory, SpendingGroup] = {}

    for expense in expenses:
        group = groups.get(expense.category)
        if group is None:
            group = SpendingGroup(key=expense.category.name.lower(), label=expense.category.value)
            groups[expense.category] = group
        group.amount += expense.amount
        group.count += 1

    return sorted(groups.values(), key=lambda g: (-g.amount, g.label))


def spending_by_care_recipient(
    expenses: list[Expense],
    recipients: list[CareRecipient],
) -> CareRecipientBreakdown:
    """
    Total spending per care recipient, largest first.

    Expenses pointing at an unknown recipient count as unassigned.
    """
    names: dict[UUID, str] = {r.id: r.name for r in recipients}
    groups: dict[UUID, SpendingGroup] = {}
    breakdown = CareRecipientBreakdown()

    for expense in expenses:
        recipient_id = expense.care_recipient_id
        if recipient_id is None or recipient_id not in names:
            breakdown.unassigned.amount += expense.amount
            breakdown.unassigned.count += 1
            continue

        group = groups.get(recipient_id)
        if group is None:
            group = SpendingGroup(key=str(recipient_id), label=names[recipient_id])
            groups[recipient_id] = group
        group.amount += expense.amount
        group.count += 1

    breakdown.recipients = sorted(groups.values(), key=lambda g: (-g.amount, g.label))
    return breakdown


def recent(expenses: list[Expense], limit: int = 3) -> list[Expense]:
    """Most recent expenses by date, then by creation time."""
    ordered = sorted(expenses, key=lambda e: (e.expense_date, e.created_at), reverse=True)
    return ordered[:limit]
