"""
Transaction Triage Engine

The review session where a user walks through pending bank transactions
and decides, one by one, to KEEP (turn into an expense) or SKIP.

STATE MACHINE (per transaction):
    pending --keep--> kept
    pending --skip--> skipped
    kept/skipped --undo--> pending

GUARANTEES:
- A kept transaction produces exactly one expense, and the transaction's
  matched_expense_id points at it.
- The expense store and transaction store are separate and have no
  shared transaction. If linking fails after the expense was created,
  the expense is deleted again. If that also fails the caller gets an
  InconsistentStateError naming both ids, and the audit log records it.
- A failed keep, skip or undo leaves the cursor, undo history and
  counters exactly as they were.

Concurrent sessions for the same user are not coordinated: the last
write wins.
"""

from datetime import date, datetime, time
from typing import Optional
from uuid import UUID

import structlog
from pydantic import ValidationError

from caretracker.audit import AuditLogger
from caretracker.classification import normalize_merchant
from caretracker.config import get_settings
from caretracker.models.expense import Expense, ExpenseDraft, ReviewStatus
from caretracker.models.transaction import (
    SyncedTransaction,
    TriageDecision,
    TriageDecisionType,
    TriageStats,
)
from caretracker.services.storage import (
    ExpenseStore,
    NotFoundError,
    TransactionStore,
)
from caretracker.triage.undo import UndoRecord, UndoStack
from caretracker.validation import ExpenseDraftValidator, InvalidExpenseError


logger = structlog.get_logger(__name__)


class TriageEngine:
    """
    One user's triage session.

    Usage:
        engine = TriageEngine(user_id, tx_store, expense_store)
        await engine.load()
        while not engine.is_complete:
            await engine.keep(engine.current)   # or skip
    """

    def __init__(
        self,
        user_id: str,
        transaction_store: TransactionStore,
        expense_store: ExpenseStore,
        validator: Optional[ExpenseDraftValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
        undo_depth: Optional[int] = None,
    ):
        settings = get_settings().triage

        self._user_id = user_id
        self._transactions = transaction_store
        self._expenses = expense_store
        self._validator = validator or ExpenseDraftValidator()
        self._audit = audit_logger or AuditLogger()
        self._fetch_limit = settings.fetch_limit
        self._undo = UndoStack(undo_depth if undo_depth is not None else settings.undo_depth)

        self._queue: list[SyncedTransaction] = []
        self._cursor = 0
        self._stats = TriageStats()

    # -------------------------------------------------------------------------
    # Session state
    # -------------------------------------------------------------------------

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def queue(self) -> tuple[SyncedTransaction, ...]:
        return tuple(self._queue)

    @property
    def current(self) -> Optional[SyncedTransaction]:
        if 0 <= self._cursor < len(self._queue):
            return self._queue[self._cursor]
        return None

    @property
    def position(self) -> int:
        """0-based index of the current transaction in the queue."""
        return self._cursor

    @property
    def is_complete(self) -> bool:
        return self._cursor >= len(self._queue)

    @property
    def has_undo(self) -> bool:
        return bool(self._undo)

    @property
    def undo_stack(self) -> UndoStack:
        return self._undo

    @property
    def stats(self) -> TriageStats:
        return self._stats.model_copy()

    async def load(self, limit: Optional[int] = None) -> list[SyncedTransaction]:
        """
        Load pending transactions and start a fresh pass over them.

        The undo history is kept; decisions from before the reload
        can still be undone.
        """
        self._queue = await self._transactions.fetch_pending_transactions(
            self._user_id,
            limit=limit or self._fetch_limit,
        )
        self._cursor = 0

        midnight = datetime.combine(datetime.utcnow().date(), time.min)
        reviewed_today = await self._transactions.count_decisions_since(
            self._user_id, midnight
        )
        self._stats = TriageStats(
            reviewed_today=reviewed_today,
            total_to_review=len(self._queue),
        )
        return list(self._queue)

    def previous(self) -> Optional[SyncedTransaction]:
        """Move back one transaction (no persistence)."""
        self._cursor = max(0, self._cursor - 1)
        return self.current

    def next(self) -> Optional[SyncedTransaction]:
        """Move forward one transaction (no persistence)."""
        self._cursor = min(max(len(self._queue) - 1, 0), self._cursor + 1)
        return self.current

    # -------------------------------------------------------------------------
    # Decisions
    # -------------------------------------------------------------------------

    def build_draft(
        self,
        transaction: SyncedTransaction,
        today: Optional[date] = None,
    ) -> ExpenseDraft:
        """
        Build the default expense for a kept transaction.

        Raises:
            InvalidExpenseError: If the transaction can't form an expense
                (e.g. a zero amount)
        """
        today = today or date.today()
        vendor = transaction.merchant_name or normalize_merchant(transaction.description)

        try:
            return ExpenseDraft(
                amount=transaction.amount,
                expense_date=transaction.authorized_date or transaction.transaction_date,
                category=transaction.suggested_category,
                vendor=vendor or None,
                description=transaction.description or None,
                notes=(
                    f"Imported from bank transaction {transaction.external_transaction_id} "
                    f"on {today.isoformat()}"
                ),
                is_tax_deductible=transaction.is_potential_medical,
                is_refund=transaction.is_refund,
                synced_transaction_id=transaction.id,
            )
        except ValidationError as e:
            raise InvalidExpenseError.from_pydantic(e) from e

    async def keep(
        self,
        transaction: SyncedTransaction,
        draft: Optional[ExpenseDraft] = None,
    ) -> Expense:
        """
        Keep a transaction: create its expense and link the two.

        Args:
            transaction: The pending transaction
            draft: Caller-edited expense; defaults to build_draft()

        Returns:
            The created expense

        Raises:
            AlreadyDecidedError: If the transaction is not pending
            InvalidExpenseError: If the draft fails validation
            InconsistentStateError: If linking failed and the new expense
                could not be removed again
        """
        stored = await self._require_pending(transaction)

        draft = draft or self.build_draft(stored)
        if draft.synced_transaction_id != stored.id:
            draft = draft.model_copy(update={"synced_transaction_id": stored.id})
        await self._validator.ensure_valid(self._user_id, draft)

        expense = await self._expenses.create_expense(self._user_id, draft)

        marked = False
        try:
            updated = await self._transactions.mark_transaction_kept(
                self._user_id, stored.id, expense.id
            )
            marked = True
            await self._transactions.persist_decision(TriageDecision(
                user_id=self._user_id,
                transaction_id=stored.id,
                decision=TriageDecisionType.KEEP,
            ))
        except Exception as link_error:
            await self._compensate_keep(stored, expense, marked, link_error)
            raise

        self._undo.push(UndoRecord(
            decision=TriageDecisionType.KEEP,
            transaction_id=stored.id,
            expense_id=expense.id,
        ))
        self._record_decision(updated)

        await self._audit.log_expense_created(
            user_id=self._user_id,
            expense_id=expense.id,
            vendor=expense.vendor,
            amount=str(expense.amount),
        )
        await self._audit.log_transaction_kept(
            user_id=self._user_id,
            transaction_id=stored.id,
            expense_id=expense.id,
            amount=str(expense.amount),
        )
        return expense

    async def skip(self, transaction: SyncedTransaction) -> SyncedTransaction:
        """
        Skip a transaction: mark it as not a caregiving expense.

        Raises:
            AlreadyDecidedError: If the transaction is not pending
        """
        stored = await self._require_pending(transaction)

        updated = await self._transactions.set_review_status(
            self._user_id, stored.id, ReviewStatus.SKIPPED
        )
        try:
            await self._transactions.persist_decision(TriageDecision(
                user_id=self._user_id,
                transaction_id=stored.id,
                decision=TriageDecisionType.SKIP,
            ))
        except Exception as decision_error:
            try:
                await self._transactions.reset_transaction(self._user_id, stored.id)
            except Exception as reset_error:
                await self._audit.log_inconsistent_state(
                    user_id=self._user_id,
                    transaction_id=stored.id,
                    expense_id=None,
                    error_message=str(reset_error),
                )
                raise InconsistentStateError(None, stored.id, str(decision_error)) from reset_error
            raise

        self._undo.push(UndoRecord(
            decision=TriageDecisionType.SKIP,
            transaction_id=stored.id,
        ))
        self._record_decision(updated)

        await self._audit.log_transaction_skipped(
            user_id=self._user_id,
            transaction_id=stored.id,
        )
        return updated

    async def undo(self) -> Optional[UndoRecord]:
        """
        Reverse the most recent decision.

        Returns:
            The undone record, or None when there is nothing to undo

        Raises:
            InconsistentStateError: If the expense was deleted but the
                transaction could not be reset
        """
        record = self._undo.peek()
        if record is None:
            return None

        if record.decision == TriageDecisionType.KEEP:
            reset = await self._undo_keep(record)
        else:
            reset = await self._transactions.reset_transaction(
                self._user_id, record.transaction_id
            )
            await self._transactions.delete_decision(self._user_id, record.transaction_id)

        # Storage is committed; only now touch session state
        self._undo.pop()
        self._cursor = max(0, self._cursor - 1)
        self._restore_to_queue(reset)
        self._stats.reviewed_today = max(0, self._stats.reviewed_today - 1)

        await self._audit.log_decision_undone(
            user_id=self._user_id,
            transaction_id=record.transaction_id,
            decision=record.decision.value,
            expense_id=record.expense_id,
        )
        return record

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _require_pending(self, transaction: SyncedTransaction) -> SyncedTransaction:
        """Re-read the transaction and make sure it is still undecided."""
        stored = await self._transactions.get_transaction(self._user_id, transaction.id)
        if stored is None:
            raise NotFoundError(f"Transaction not found: {transaction.id}")
        if stored.is_decided:
            raise AlreadyDecidedError(stored.id, stored.review_status)
        return stored

    def _record_decision(self, updated: SyncedTransaction) -> None:
        self._replace_in_queue(updated)
        self._cursor = min(self._cursor + 1, len(self._queue))
        self._stats.reviewed_today += 1

    def _replace_in_queue(self, transaction: SyncedTransaction) -> None:
        for idx, queued in enumerate(self._queue):
            if queued.id == transaction.id:
                self._queue[idx] = transaction
                return

    def _restore_to_queue(self, transaction: SyncedTransaction) -> None:
        """Put an undone transaction back in the queue; a reload may have dropped it."""
        for idx, queued in enumerate(self._queue):
            if queued.id == transaction.id:
                self._queue[idx] = transaction
                return
        self._queue.insert(self._cursor, transaction)
        self._stats.total_to_review += 1

    async def _compensate_keep(
        self,
        transaction: SyncedTransaction,
        expense: Expense,
        marked: bool,
        link_error: Exception,
    ) -> None:
        """Remove the expense created by a keep whose link step failed."""
        logger.warning(
            "keep_link_failed",
            user_id=self._user_id,
            transaction_id=str(transaction.id),
            expense_id=str(expense.id),
            error=str(link_error),
        )
        try:
            await self._expenses.delete_expense(self._user_id, expense.id)
            if marked:
                await self._transactions.reset_transaction(self._user_id, transaction.id)
        except Exception as compensation_error:
            await self._audit.log_inconsistent_state(
                user_id=self._user_id,
                transaction_id=transaction.id,
                expense_id=expense.id,
                error_message=str(compensation_error),
            )
            raise InconsistentStateError(
                expense.id, transaction.id, str(link_error)
            ) from compensation_error

        await self._audit.log_link_compensated(
            user_id=self._user_id,
            transaction_id=transaction.id,
            expense_id=expense.id,
            error_message=str(link_error),
        )

    async def _find_kept_expense(self, record: UndoRecord) -> Optional[Expense]:
        if record.expense_id:
            expense = await self._expenses.get_expense(self._user_id, record.expense_id)
            if expense:
                return expense

        transaction = await self._transactions.get_transaction(
            self._user_id, record.transaction_id
        )
        if transaction and transaction.matched_expense_id:
            expense = await self._expenses.get_expense(
                self._user_id, transaction.matched_expense_id
            )
            if expense:
                return expense

        return await self._expenses.find_by_transaction(self._user_id, record.transaction_id)

    async def _undo_keep(self, record: UndoRecord) -> SyncedTransaction:
        expense = await self._find_kept_expense(record)
        if expense:
            await self._expenses.delete_expense(self._user_id, expense.id)

        try:
            reset = await self._transactions.reset_transaction(
                self._user_id, record.transaction_id
            )
            await self._transactions.delete_decision(self._user_id, record.transaction_id)
        except Exception as reset_error:
            if expense is None:
                raise
            await self._audit.log_inconsistent_state(
                user_id=self._user_id,
                transaction_id=record.transaction_id,
                expense_id=expense.id,
                error_message=str(reset_error),
            )
            raise InconsistentStateError(
                expense.id, record.transaction_id, str(reset_error)
            ) from reset_error

        if expense:
            await self._audit.log_expense_deleted(
                user_id=self._user_id,
                expense_id=expense.id,
                unlinked_transaction_id=record.transaction_id,
            )
        return reset


class TriageError(Exception):
    """Base exception for triage operations."""
    pass


class AlreadyDecidedError(TriageError):
    """The transaction was already kept or skipped."""

    def __init__(self, transaction_id: UUID, status: ReviewStatus):
        self.transaction_id = transaction_id
        self.status = status
        super().__init__(f"Transaction {transaction_id} is already {status.value}")


class InconsistentStateError(TriageError):
    """
    An expense and its transaction disagree and could not be repaired.

    Run reconcile_links() to fix the pair.
    """

    def __init__(
        self,
        expense_id: Optional[UUID],
        transaction_id: UUID,
        reason: str = "",
    ):
        self.expense_id = expense_id
        self.transaction_id = transaction_id
        message = f"Expense {expense_id} and transaction {transaction_id} are out of sync"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
