"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Run the same triage logic on Google Sheets, a database, or memory
2. Use in-memory storage for testing
3. Keep business logic decoupled from storage implementation
4. Pass stores in explicitly instead of reaching for a shared client

Every method takes the user_id and implementations MUST filter by it.
No operation may read or write another user's rows.

The interface is intentionally simple - we're not building a full ORM.
Just the operations the sync and triage flows need.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Optional
from uuid import UUID

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
from caretracker.models.audit import AuditEvent


class TransactionStore(ABC):
    """
    Abstract interface for synced transaction storage.

    Rows are unique per (user_id, external_transaction_id).
    """

    @abstractmethod
    async def get_by_external_id(
        self,
        user_id: str,
        external_transaction_id: str,
    ) -> Optional[SyncedTransaction]:
        """
        Look up a transaction by the provider's id.

        Returns:
            The transaction if found, None otherwise
        """
        pass

    @abstractmethod
    async def get_transaction(
        self,
        user_id: str,
        transaction_id: UUID,
    ) -> Optional[SyncedTransaction]:
        """Look up a transaction by our internal id."""
        pass

    @abstractmethod
    async def insert_transaction(self, transaction: SyncedTransaction) -> SyncedTransaction:
        """
        Insert a new transaction.

        Raises:
            DuplicateKeyError: If the external id already exists for this user
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def update_transaction(self, transaction: SyncedTransaction) -> SyncedTransaction:
        """
        Replace an existing transaction row.

        Raises:
            NotFoundError: If the transaction doesn't exist
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def fetch_pending_transactions(
        self,
        user_id: str,
        limit: int = 50,
    ) -> list[SyncedTransaction]:
        """
        Get transactions awaiting triage, newest first.

        Args:
            user_id: Owner
            limit: Maximum number of results
        """
        pass

    @abstractmethod
    async def list_transactions(
        self,
        user_id: str,
        review_status: Optional[ReviewStatus] = None,
        potential_medical_only: bool = False,
        limit: int = 100,
    ) -> list[SyncedTransaction]:
        """List transactions with optional filters, newest first."""
        pass

    @abstractmethod
    async def mark_transaction_kept(
        self,
        user_id: str,
        transaction_id: UUID,
        expense_id: UUID,
    ) -> SyncedTransaction:
        """
        Set review_status=kept, matched_expense_id and is_confirmed_medical.

        Raises:
            NotFoundError: If the transaction doesn't exist
        """
        pass

    @abstractmethod
    async def set_review_status(
        self,
        user_id: str,
        transaction_id: UUID,
        status: ReviewStatus,
    ) -> SyncedTransaction:
        """
        Set the review status without touching the expense link.

        Raises:
            NotFoundError: If the transaction doesn't exist
        """
        pass

    @abstractmethod
    async def reset_transaction(
        self,
        user_id: str,
        transaction_id: UUID,
    ) -> SyncedTransaction:
        """
        Put a transaction back to pending and clear its expense link.

        Raises:
            NotFoundError: If the transaction doesn't exist
        """
        pass

    @abstractmethod
    async def persist_decision(self, decision: TriageDecision) -> None:
        """Record the active decision for a transaction (replaces any previous one)."""
        pass

    @abstractmethod
    async def get_decision(
        self,
        user_id: str,
        transaction_id: UUID,
    ) -> Optional[TriageDecision]:
        """Get the active decision for a transaction, if any."""
        pass

    @abstractmethod
    async def delete_decision(
        self,
        user_id: str,
        transaction_id: UUID,
    ) -> bool:
        """Remove the active decision. Returns True if one existed."""
        pass

    @abstractmethod
    async def count_decisions_since(
        self,
        user_id: str,
        since: datetime,
        decision: Optional[TriageDecisionType] = None,
    ) -> int:
        """Count decisions made at or after a point in time."""
        pass


class ExpenseStore(ABC):
    """
    Abstract interface for expense storage.
    """

    @abstractmethod
    async def create_expense(self, user_id: str, draft: ExpenseDraft) -> Expense:
        """
        Create one expense from a draft.

        Returns:
            The stored expense, with its new id

        Raises:
            StorageError: If save fails
        """
        pass

    @abstractmethod
    async def get_expense(self, user_id: str, expense_id: UUID) -> Optional[Expense]:
        """Retrieve an expense by id."""
        pass

    @abstractmethod
    async def update_expense(self, expense: Expense) -> Expense:
        """
        Replace an existing expense.

        Raises:
            NotFoundError: If the expense doesn't exist
        """
        pass

    @abstractmethod
    async def delete_expense(self, user_id: str, expense_id: UUID) -> bool:
        """
        Delete an expense.

        Returns:
            True if it existed and was deleted
        """
        pass

    @abstractmethod
    async def find_by_transaction(
        self,
        user_id: str,
        transaction_id: UUID,
    ) -> Optional[Expense]:
        """Find the expense whose synced_transaction_id is transaction_id."""
        pass

    @abstractmethod
    async def list_expenses(
        self,
        user_id: str,
        category: Optional[ExpenseCategory] = None,
        care_recipient_id: Optional[UUID] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: Optional[int] = None,
    ) -> list[Expense]:
        """
        List expenses with optional filters, newest first.

        Args:
            category: Filter by category
            care_recipient_id: Filter by care recipient
            date_from: Filter expenses on or after this date
            date_to: Filter expenses on or before this date
            limit: Maximum number of results (None = all)
        """
        pass


class CareRecipientStore(ABC):
    """Abstract interface for care recipient storage."""

    @abstractmethod
    async def save_care_recipient(self, recipient: CareRecipient) -> CareRecipient:
        pass

    @abstractmethod
    async def get_care_recipient(
        self,
        user_id: str,
        recipient_id: UUID,
    ) -> Optional[CareRecipient]:
        pass

    @abstractmethod
    async def list_care_recipients(self, user_id: str) -> list[CareRecipient]:
        pass

    @abstractmethod
    async def delete_care_recipient(self, user_id: str, recipient_id: UUID) -> bool:
        pass


class LinkedAccountStore(ABC):
    """Abstract interface for linked financial accounts."""

    @abstractmethod
    async def save_account(self, account: LinkedAccount) -> LinkedAccount:
        """Insert or replace an account."""
        pass

    @abstractmethod
    async def get_account(self, user_id: str, account_id: UUID) -> Optional[LinkedAccount]:
        pass

    @abstractmethod
    async def list_accounts(
        self,
        user_id: str,
        active_only: bool = True,
    ) -> list[LinkedAccount]:
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Args:
            event: The audit event to log

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a specific entity.

        Args:
            entity_type: Type of entity (e.g., 'transaction', 'expense')
            entity_id: The entity's ID

        Returns:
            List of events in chronological order
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Args:
            limit: Maximum number of events to return

        Returns:
            List of recent events (newest first)
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateKeyError(StorageError):
    """Attempted to insert a row whose unique key already exists."""
    pass


class DependencyError(StorageError):
    """The storage backend (or another collaborator) is unavailable."""
    pass
