"""
Link reconciliation between expenses and synced transactions.

A kept transaction and its expense point at each other:
    expense.synced_transaction_id == transaction.id
    transaction.matched_expense_id == expense.id

A crash between the two writes of a keep, or an InconsistentStateError,
can leave one side pointing at nothing. This pass finds those pairs and,
when asked to, repairs them.
"""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from caretracker.audit import AuditLogger
from caretracker.models.expense import ReviewStatus
from caretracker.models.transaction import TriageDecision, TriageDecisionType
from caretracker.services.storage import ExpenseStore, TransactionStore


# Upper bound on kept transactions scanned in one pass
SCAN_LIMIT = 10_000


class ReconciliationReport(BaseModel):
    """What a reconciliation pass found and fixed."""

    checked: int = 0
    orphans: list[UUID] = Field(
        default_factory=list,
        description="Expenses whose transaction does not point back"
    )
    dangling: list[UUID] = Field(
        default_factory=list,
        description="Kept transactions whose expense is missing"
    )
    relinked: list[UUID] = Field(default_factory=list)
    removed: list[UUID] = Field(default_factory=list)
    reset: list[UUID] = Field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return not self.orphans and not self.dangling


async def reconcile_links(
    user_id: str,
    transaction_store: TransactionStore,
    expense_store: ExpenseStore,
    repair: bool = False,
    audit_logger: Optional[AuditLogger] = None,
) -> ReconciliationReport:
    """
    Check every transaction-backed expense for a matching back-link.

    With repair=True:
    - an orphaned expense whose transaction is unlinked (and not skipped)
      gets the link completed and the transaction marked kept;
    - an orphaned expense whose transaction is missing, skipped or linked
      to another expense is deleted;
    - a kept transaction whose expense is gone is reset to pending.
    """
    report = ReconciliationReport()
    expenses = await expense_store.list_expenses(user_id)
    expense_ids = {e.id for e in expenses}

    for expense in expenses:
        if expense.synced_transaction_id is None:
            continue
        report.checked += 1

        transaction = await transaction_store.get_transaction(
            user_id, expense.synced_transaction_id
        )
        if transaction is not None and transaction.matched_expense_id == expense.id:
            continue

        report.orphans.append(expense.id)
        if not repair:
            continue

        can_relink = (
            transaction is not None
            and transaction.matched_expense_id is None
            and transaction.review_status != ReviewStatus.SKIPPED
        )
        if can_relink:
            await transaction_store.mark_transaction_kept(user_id, transaction.id, expense.id)
            await transaction_store.persist_decision(TriageDecision(
                user_id=user_id,
                transaction_id=transaction.id,
                decision=TriageDecisionType.KEEP,
            ))
            report.relinked.append(expense.id)
        else:
            await expense_store.delete_expense(user_id, expense.id)
            expense_ids.discard(expense.id)
            report.removed.append(expense.id)

    kept = await transaction_store.list_transactions(
        user_id, review_status=ReviewStatus.KEPT, limit=SCAN_LIMIT
    )
    for transaction in kept:
        if transaction.matched_expense_id in expense_ids:
            continue
        report.dangling.append(transaction.id)
        if repair:
            await transaction_store.reset_transaction(user_id, transaction.id)
            await transaction_store.delete_decision(user_id, transaction.id)
            report.reset.append(transaction.id)

    audit = audit_logger or AuditLogger()
    await audit.log_reconciliation_completed(
        user_id=user_id,
        orphans=len(report.orphans),
        relinked=len(report.relinked),
        removed=len(report.removed),
    )
    return report
