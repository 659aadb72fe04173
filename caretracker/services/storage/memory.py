"""
In-Memory Storage Implementation

Implements every storage interface on plain dictionaries.
Used by the test suite and for running the flows without Google Sheets.

Rows are copied on the way in and on the way out, so a caller mutating
a returned model never changes stored state behind the store's back.
"""

from datetime import date, datetime
from typing import Optional
from uuid import UUID

from caretracker.models.audit import AuditEvent
from caretracker.models.expense import (
    CareRecipient,
    Expense,
    ExpenseCategory,
    ExpenseDraft,
    ReviewStatus,
)
from caretracker.models.transaction import (
    LinkedAccount,
    SyncedTransaction,
    TriageDecision,
    TriageDecisionType,
)
from caretracker.services.storage.interface import (
    AuditStorageInterface,
    CareRecipientStore,
    DuplicateKeyError,
    ExpenseStore,
    LinkedAccountStore,
    NotFoundError,
    TransactionStore,
)


class InMemoryStore(
    TransactionStore,
    ExpenseStore,
    CareRecipientStore,
    LinkedAccountStore,
    AuditStorageInterface,
):
    """All storage seams backed by dictionaries."""

    def __init__(self):
        self.transactions: dict[UUID, SyncedTransaction] = {}
        self.expenses: dict[UUID, Expense] = {}
        self.decisions: dict[tuple[str, UUID], TriageDecision] = {}
        self.care_recipients: dict[UUID, CareRecipient] = {}
        self.accounts: dict[UUID, LinkedAccount] = {}
        self.events: list[AuditEvent] = []

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def _owned_transaction(self, user_id: str, transaction_id: UUID) -> SyncedTransaction:
        tx = self.transactions.get(transaction_id)
        if tx is None or tx.user_id != user_id:
            raise NotFoundError(f"Transaction not found: {transaction_id}")
        return tx

    async def get_by_external_id(
        self,
        user_id: str,
        external_transaction_id: str,
    ) -> Optional[SyncedTransaction]:
        for tx in self.transactions.values():
            if tx.user_id == user_id and tx.external_transaction_id == external_transaction_id:
                return tx.model_copy(deep=True)
        return None

    async def get_transaction(
        self,
        user_id: str,
        transaction_id: UUID,
    ) -> Optional[SyncedTransaction]:
        tx = self.transactions.get(transaction_id)
        if tx is None or tx.user_id != user_id:
            return None
        return tx.model_copy(deep=True)

    async def insert_transaction(self, transaction: SyncedTransaction) -> SyncedTransaction:
        existing = await self.get_by_external_id(
            transaction.user_id, transaction.external_transaction_id
        )
        if existing is not None or transaction.id in self.transactions:
            raise DuplicateKeyError(
                f"Transaction already exists: {transaction.external_transaction_id}"
            )
        self.transactions[transaction.id] = transaction.model_copy(deep=True)
        return transaction.model_copy(deep=True)

    async def update_transaction(self, transaction: SyncedTransaction) -> SyncedTransaction:
        self._owned_transaction(transaction.user_id, transaction.id)
        stored = transaction.model_copy(update={"updated_at": datetime.utcnow()}, deep=True)
        self.transactions[transaction.id] = stored
        return stored.model_copy(deep=True)

    async def fetch_pending_transactions(
        self,
        user_id: str,
        limit: int = 50,
    ) -> list[SyncedTransaction]:
        return await self.list_transactions(
            user_id, review_status=ReviewStatus.PENDING, limit=limit
        )

    async def list_transactions(
        self,
        user_id: str,
        review_status: Optional[ReviewStatus] = None,
        potential_medical_only: bool = False,
        limit: int = 100,
    ) -> list[SyncedTransaction]:
        rows = []
        for tx in self.transactions.values():
            if tx.user_id != user_id:
                continue
            if review_status and tx.review_status != review_status:
                continue
            if potential_medical_only and not tx.is_potential_medical:
                continue
            rows.append(tx)

        # Newest first; created_at keeps the order stable for same-day rows
        rows.sort(key=lambda t: (t.transaction_date, t.created_at), reverse=True)
        return [tx.model_copy(deep=True) for tx in rows[:limit]]

    async def _patch_transaction(
        self,
        user_id: str,
        transaction_id: UUID,
        **changes,
    ) -> SyncedTransaction:
        tx = self._owned_transaction(user_id, transaction_id)
        changes["updated_at"] = datetime.utcnow()
        stored = tx.model_copy(update=changes, deep=True)
        self.transactions[transaction_id] = stored
        return stored.model_copy(deep=True)

    async def mark_transaction_kept(
        self,
        user_id: str,
        transaction_id: UUID,
        expense_id: UUID,
    ) -> SyncedTransaction:
        return await self._patch_transaction(
            user_id,
            transaction_id,
            review_status=ReviewStatus.KEPT,
            matched_expense_id=expense_id,
            is_confirmed_medical=True,
        )

    async def set_review_status(
        self,
        user_id: str,
        transaction_id: UUID,
        status: ReviewStatus,
    ) -> SyncedTransaction:
        return await self._patch_transaction(user_id, transaction_id, review_status=status)

    async def reset_transaction(
        self,
        user_id: str,
        transaction_id: UUID,
    ) -> SyncedTransaction:
        return await self._patch_transaction(
            user_id,
            transaction_id,
            review_status=ReviewStatus.PENDING,
            matched_expense_id=None,
            is_confirmed_medical=False,
        )

    async def persist_decision(self, decision: TriageDecision) -> None:
        self.decisions[(decision.user_id, decision.transaction_id)] = decision.model_copy()

    async def get_decision(
        self,
        user_id: str,
        transaction_id: UUID,
    ) -> Optional[TriageDecision]:
        decision = self.decisions.get((user_id, transaction_id))
        return decision.model_copy() if decision else None

    async def delete_decision(
        self,
        user_id: str,
        transaction_id: UUID,
    ) -> bool:
        return self.decisions.pop((user_id, transaction_id), None) is not None

    async def count_decisions_since(
        self,
        user_id: str,
        since: datetime,
        decision: Optional[TriageDecisionType] = None,
    ) -> int:
        return sum(
            1
            for d in self.decisions.values()
            if d.user_id == user_id
            and d.decided_at >= since
            and (decision is None or d.decision == decision)
        )

    # -------------------------------------------------------------------------
    # Expenses
    # -------------------------------------------------------------------------

    async def create_expense(self, user_id: str, draft: ExpenseDraft) -> Expense:
        expense = Expense.from_draft(user_id, draft)
        self.expenses[expense.id] = expense
        return expense.model_copy(deep=True)

    async def get_expense(self, user_id: str, expense_id: UUID) -> Optional[Expense]:
        expense = self.expenses.get(expense_id)
        if expense is None or expense.user_id != user_id:
            return None
        return expense.model_copy(deep=True)

    async def update_expense(self, expense: Expense) -> Expense:
        if await self.get_expense(expense.user_id, expense.id) is None:
            raise NotFoundError(f"Expense not found: {expense.id}")
        stored = expense.model_copy(update={"updated_at": datetime.utcnow()}, deep=True)
        self.expenses[expense.id] = stored
        return stored.model_copy(deep=True)

    async def delete_expense(self, user_id: str, expense_id: UUID) -> bool:
        if await self.get_expense(user_id, expense_id) is None:
            return False
        del self.expenses[expense_id]
        return True

    async def find_by_transaction(
        self,
        user_id: str,
        transaction_id: UUID,
    ) -> Optional[Expense]:
        for expense in self.expenses.values():
            if expense.user_id == user_id and expense.synced_transaction_id == transaction_id:
                return expense.model_copy(deep=True)
        return None

    async def list_expenses(
        self,
        user_id: str,
        category: Optional[ExpenseCategory] = None,
        care_recipient_id: Optional[UUID] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: Optional[int] = None,
    ) -> list[Expense]:
        rows = []
        for expense in self.expenses.values():
            if expense.user_id != user_id:
                continue
            if category and expense.category != category:
                continue
            if care_recipient_id and expense.care_recipient_id != care_recipient_id:
                continue
            if date_from and expense.expense_date < date_from:
                continue
            if date_to and expense.expense_date > date_to:
                continue
            rows.append(expense)

        rows.sort(key=lambda e: (e.expense_date, e.created_at), reverse=True)
        if limit is not None:
            rows = rows[:limit]
        return [e.model_copy(deep=True) for e in rows]

    # -------------------------------------------------------------------------
    # Care recipients
    # -------------------------------------------------------------------------

    async def save_care_recipient(self, recipient: CareRecipient) -> CareRecipient:
        self.care_recipients[recipient.id] = recipient.model_copy(deep=True)
        return recipient.model_copy(deep=True)

    async def get_care_recipient(
        self,
        user_id: str,
        recipient_id: UUID,
    ) -> Optional[CareRecipient]:
        recipient = self.care_recipients.get(recipient_id)
        if recipient is None or recipient.user_id != user_id:
            return None
        return recipient.model_copy(deep=True)

    async def list_care_recipients(self, user_id: str) -> list[CareRecipient]:
        rows = [r for r in self.care_recipients.values() if r.user_id == user_id]
        rows.sort(key=lambda r: r.name.lower())
        return [r.model_copy(deep=True) for r in rows]

    async def delete_care_recipient(self, user_id: str, recipient_id: UUID) -> bool:
        if await self.get_care_recipient(user_id, recipient_id) is None:
            return False
        del self.care_recipients[recipient_id]
        return True

    # -------------------------------------------------------------------------
    # Linked accounts
    # -------------------------------------------------------------------------

    async def save_account(self, account: LinkedAccount) -> LinkedAccount:
        self.accounts[account.id] = account.model_copy(deep=True)
        return account.model_copy(deep=True)

    async def get_account(self, user_id: str, account_id: UUID) -> Optional[LinkedAccount]:
        account = self.accounts.get(account_id)
        if account is None or account.user_id != user_id:
            return None
        return account.model_copy(deep=True)

    async def list_accounts(
        self,
        user_id: str,
        active_only: bool = True,
    ) -> list[LinkedAccount]:
        return [
            a.model_copy(deep=True)
            for a in self.accounts.values()
            if a.user_id == user_id and (a.is_active or not active_only)
        ]

    # -------------------------------------------------------------------------
    # Audit
    # -------------------------------------------------------------------------

    async def append_event(self, event: AuditEvent) -> bool:
        self.events.append(event)
        return True

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        events = [
            e for e in self.events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = sorted(self.events, key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
