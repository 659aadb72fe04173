"""
Expense and Care Recipient Services

The manual side of the app: expenses the user types in, edits and
deletes, and the people they care for.

Deleting an expense that came from a kept transaction puts that
transaction back in the triage queue, so no transaction is left
pointing at an expense that no longer exists.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from caretracker.aggregation import (
    ExpenseStats,
    TaxProgress,
    compute_stats,
    tax_progress,
)
from caretracker.audit import AuditLogger
from caretracker.config import get_settings
from caretracker.models.expense import (
    CareRecipient,
    Expense,
    ExpenseCategory,
    ExpenseDraft,
    ValidationIssue,
)
from caretracker.services.storage import (
    CareRecipientStore,
    ExpenseStore,
    NotFoundError,
    TransactionStore,
)
from caretracker.validation import ExpenseDraftValidator, InvalidExpenseError

# Fields a user may not change through update_expense
PROTECTED_FIELDS = frozenset({
    "id",
    "user_id",
    "created_at",
    "updated_at",
    "synced_transaction_id",
    "triage_status",
})


class ExpenseService:
    """
    Create, edit, delete and summarize a user's expenses.
    """

    def __init__(
        self,
        expense_store: ExpenseStore,
        transaction_store: Optional[TransactionStore] = None,
        validator: Optional[ExpenseDraftValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._expenses = expense_store
        self._transactions = transaction_store
        self._validator = validator or ExpenseDraftValidator()
        self._audit = audit_logger or AuditLogger()
        self._settings = get_settings().app

    async def create_expense(self, user_id: str, draft: ExpenseDraft) -> Expense:
        """
        Validate a manually entered draft and store it.

        Only triage links an expense to a bank transaction, so a draft
        carrying synced_transaction_id is refused here.

        Raises:
            InvalidExpenseError: If the draft fails validation
        """
        if draft.synced_transaction_id is not None:
            raise InvalidExpenseError.from_issue(ValidationIssue(
                field="synced_transaction_id",
                issue_type="not_allowed",
                message="Manual expenses cannot be linked to a bank transaction",
                severity="error",
                suggested_fix="Keep the transaction from the review queue instead",
            ))
        await self._validator.ensure_valid(user_id, draft)
        expense = await self._expenses.create_expense(user_id, draft)

        await self._audit.log_expense_created(
            user_id=user_id,
            expense_id=expense.id,
            vendor=expense.vendor,
            amount=str(expense.amount),
        )
        return expense

    async def update_expense(
        self,
        user_id: str,
        expense_id: UUID,
        changes: dict[str, Any],
    ) -> Expense:
        """
        Apply user edits to an expense.

        The merged result is re-validated as a draft.

        Raises:
            NotFoundError: If the expense doesn't exist
            ValueError: If a protected field is being changed
            InvalidExpenseError: If the edited expense fails validation
        """
        existing = await self._expenses.get_expense(user_id, expense_id)
        if existing is None:
            raise NotFoundError(f"Expense not found: {expense_id}")

        protected = PROTECTED_FIELDS.intersection(changes)
        if protected:
            raise ValueError(f"Cannot change field(s): {', '.join(sorted(protected))}")

        merged = {**existing.model_dump(), **changes}
        draft = ExpenseDraft.model_validate(
            {k: v for k, v in merged.items() if k in ExpenseDraft.model_fields}
        )
        await self._validator.ensure_valid(user_id, draft)

        updated = Expense.model_validate({**merged, **draft.model_dump()})
        saved = await self._expenses.update_expense(updated)

        await self._audit.log_expense_updated(
            user_id=user_id,
            expense_id=expense_id,
            fields=sorted(changes),
        )
        return saved

    async def delete_expense(self, user_id: str, expense_id: UUID) -> bool:
        """
        Delete an expense.

        If it was created from a bank transaction, that transaction is
        reset to pending and its link cleared.

        Returns:
            True if the expense existed
        """
        expense = await self._expenses.get_expense(user_id, expense_id)
        if expense is None:
            return False

        deleted = await self._expenses.delete_expense(user_id, expense_id)

        unlinked = None
        if deleted and expense.synced_transaction_id and self._transactions:
            transaction = await self._transactions.get_transaction(
                user_id, expense.synced_transaction_id
            )
            if transaction and transaction.matched_expense_id == expense_id:
                await self._transactions.reset_transaction(user_id, transaction.id)
                await self._transactions.delete_decision(user_id, transaction.id)
                unlinked = transaction.id

        await self._audit.log_expense_deleted(
            user_id=user_id,
            expense_id=expense_id,
            unlinked_transaction_id=unlinked,
        )
        return deleted

    async def list_expenses(
        self,
        user_id: str,
        category: Optional[ExpenseCategory] = None,
        care_recipient_id: Optional[UUID] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: Optional[int] = None,
    ) -> list[Expense]:
        return await self._expenses.list_expenses(
            user_id,
            category=category,
            care_recipient_id=care_recipient_id,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
        )

    async def get_stats(self, user_id: str, today: Optional[date] = None) -> ExpenseStats:
        expenses = await self._expenses.list_expenses(user_id)
        return compute_stats(expenses, today or date.today())

    async def get_tax_progress(
        self,
        user_id: str,
        household_agi: Optional[Decimal] = None,
        today: Optional[date] = None,
    ) -> TaxProgress:
        """
        Progress toward this year's medical deduction threshold.

        Falls back to the configured default AGI when none is given.
        """
        expenses = await self._expenses.list_expenses(user_id)
        agi = household_agi if household_agi is not None else self._settings.default_household_agi
        return tax_progress(
            expenses,
            agi,
            today or date.today(),
            rate=self._settings.medical_deduction_rate,
        )


class CareRecipientService:
    """Manage the people a user cares for."""

    def __init__(
        self,
        care_recipient_store: CareRecipientStore,
        expense_store: ExpenseStore,
    ):
        self._recipients = care_recipient_store
        self._expenses = expense_store

    async def add(self, recipient: CareRecipient) -> CareRecipient:
        return await self._recipients.save_care_recipient(recipient)

    async def list(self, user_id: str) -> list[CareRecipient]:
        return await self._recipients.list_care_recipients(user_id)

    async def delete(self, user_id: str, recipient_id: UUID) -> bool:
        """
        Delete a care recipient.

        Raises:
            CareRecipientInUseError: If any expense still references them
        """
        referencing = await self._expenses.list_expenses(
            user_id, care_recipient_id=recipient_id
        )
        if referencing:
            raise CareRecipientInUseError(recipient_id, len(referencing))
        return await self._recipients.delete_care_recipient(user_id, recipient_id)


class CareRecipientInUseError(Exception):
    """Care recipient cannot be deleted while expenses reference them."""

    def __init__(self, recipient_id: UUID, expense_count: int):
        self.recipient_id = recipient_id
        self.expense_count = expense_count
        super().__init__(
            f"Care recipient {recipient_id} is used by {expense_count} expense(s)"
        )
