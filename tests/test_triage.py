"""
Tests for the triage engine, undo history and link reconciliation.

The engine and both stores share one InMemoryStore; failure cases
subclass it to break a single call.
"""

import asyncio
from datetime import date, datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from caretracker.models.audit import AuditEventType
from caretracker.models.expense import ExpenseCategory, ExpenseDraft, ReviewStatus
from caretracker.models.transaction import (
    SyncedTransaction,
    TriageDecision,
    TriageDecisionType,
)
from caretracker.services.storage import InMemoryStore, NotFoundError, StorageError
from caretracker.triage import (
    AlreadyDecidedError,
    InconsistentStateError,
    TriageEngine,
    UndoRecord,
    UndoStack,
    reconcile_links,
)
from caretracker.validation import InvalidExpenseError


USER_ID = "user-123"


def make_transaction(external_id: str = "tx1", days_ago: int = 3, **fields) -> SyncedTransaction:
    fields.setdefault("amount", Decimal("42.50"))
    fields.setdefault("description", "CVS PHARMACY #123")
    fields.setdefault("merchant_name", "CVS")
    fields.setdefault("is_potential_medical", True)
    fields.setdefault("suggested_category", ExpenseCategory.PHARMACY)
    return SyncedTransaction(
        user_id=USER_ID,
        external_transaction_id=external_id,
        transaction_date=date.today() - timedelta(days=days_ago),
        **fields,
    )


def seed(store: InMemoryStore, count: int = 3) -> list[SyncedTransaction]:
    """Insert pending transactions, newest first in queue order."""
    transactions = [make_transaction(f"tx{i}", days_ago=i + 1) for i in range(count)]
    for tx in transactions:
        asyncio.run(store.insert_transaction(tx))
    return transactions


class LinkFailingStore(InMemoryStore):
    """mark_transaction_kept fails; optionally delete_expense too."""

    def __init__(self, fail_delete: bool = False):
        super().__init__()
        self.fail_delete = fail_delete

    async def mark_transaction_kept(self, user_id, transaction_id, expense_id):
        raise StorageError("link write failed")

    async def delete_expense(self, user_id, expense_id):
        if self.fail_delete:
            raise StorageError("delete failed")
        return await super().delete_expense(user_id, expense_id)


class DecisionFailingStore(InMemoryStore):
    """persist_decision fails."""

    async def persist_decision(self, decision):
        raise StorageError("decision write failed")


class ResetFailingStore(InMemoryStore):
    """reset_transaction fails once armed."""

    def __init__(self):
        super().__init__()
        self.armed = False

    async def reset_transaction(self, user_id, transaction_id):
        if self.armed:
            raise StorageError("reset failed")
        return await super().reset_transaction(user_id, transaction_id)


class TestUndoStack:
    """Tests for UndoStack."""

    def record(self) -> UndoRecord:
        return UndoRecord(decision=TriageDecisionType.SKIP, transaction_id=uuid4())

    def test_lifo(self):
        """Test that the last pushed record comes out first."""
        stack = UndoStack()
        first, second = self.record(), self.record()
        stack.push(first)
        stack.push(second)

        assert stack.peek() == second
        assert stack.pop() == second
        assert stack.pop() == first
        assert stack.pop() is None
        assert len(stack) == 0

    def test_max_depth_drops_oldest(self):
        """Test that a bounded stack forgets the oldest decision."""
        stack = UndoStack(max_depth=2)
        records = [self.record() for _ in range(3)]
        for record in records:
            stack.push(record)

        assert len(stack) == 2
        assert stack.pop() == records[2]
        assert stack.pop() == records[1]
        assert stack.pop() is None

    def test_invalid_depth(self):
        """Test that a zero depth is rejected."""
        with pytest.raises(ValueError):
            UndoStack(max_depth=0)

    def test_peek_and_clear(self):
        """Test peek on empty and clear."""
        stack = UndoStack()
        assert stack.peek() is None
        stack.push(self.record())
        stack.clear()
        assert not stack


class TestSession:
    """Tests for loading and navigating the queue."""

    def test_load_pending(self, store, engine):
        """Test that load fetches pending transactions newest first."""
        transactions = seed(store, 3)

        queue = asyncio.run(engine.load())

        assert [t.id for t in queue] == [t.id for t in transactions]
        assert engine.current.id == transactions[0].id
        assert engine.position == 0
        assert engine.stats.total_to_review == 3
        assert engine.is_complete is False
        assert engine.has_undo is False

    def test_load_respects_limit(self, store, engine):
        """Test that load honours the fetch limit."""
        seed(store, 3)
        queue = asyncio.run(engine.load(limit=2))
        assert len(queue) == 2

    def test_empty_queue_is_complete(self, engine):
        """Test that an empty session is complete immediately."""
        asyncio.run(engine.load())
        assert engine.is_complete is True
        assert engine.current is None

    def test_navigation_is_clamped(self, store, engine):
        """Test previous/next stay inside the queue."""
        transactions = seed(store, 2)
        asyncio.run(engine.load())

        assert engine.previous().id == transactions[0].id
        assert engine.position == 0
        assert engine.next().id == transactions[1].id
        assert engine.next().id == transactions[1].id
        assert engine.position == 1

    def test_reviewed_today_restored_on_load(self, store, engine):
        """Test that today's decisions are counted on load."""
        seed(store, 1)
        asyncio.run(store.persist_decision(TriageDecision(
            user_id=USER_ID, transaction_id=uuid4(), decision=TriageDecisionType.SKIP,
        )))
        asyncio.run(store.persist_decision(TriageDecision(
            user_id=USER_ID,
            transaction_id=uuid4(),
            decision=TriageDecisionType.KEEP,
            decided_at=datetime.utcnow() - timedelta(days=2),
        )))

        asyncio.run(engine.load())

        assert engine.stats.reviewed_today == 1


class TestKeep:
    """Tests for keeping transactions."""

    def test_keep_zero_amount_is_invalid(self, store, engine):
        """Test that a zero-amount transaction fails with InvalidExpenseError."""
        tx = make_transaction("tx-zero", amount=Decimal("0"))
        asyncio.run(store.insert_transaction(tx))

        async def scenario():
            await engine.load()
            await engine.keep(engine.current)

        with pytest.raises(InvalidExpenseError) as exc_info:
            asyncio.run(scenario())

        assert exc_info.value.result.errors[0].field == "amount"
        assert store.expenses == {}
        assert asyncio.run(store.get_transaction(USER_ID, tx.id)).review_status == ReviewStatus.PENDING
        assert engine.position == 0

    def test_keep_creates_exactly_one_linked_expense(self, store, engine):
        """Test that keep creates one expense and links both sides."""
        (tx, *_) = seed(store, 2)

        async def scenario():
            await engine.load()
            return await engine.keep(engine.current)

        expense = asyncio.run(scenario())
        stored = asyncio.run(store.get_transaction(USER_ID, tx.id))

        assert len(store.expenses) == 1
        assert expense.synced_transaction_id == tx.id
        assert stored.review_status == ReviewStatus.KEPT
        assert stored.matched_expense_id == expense.id
        assert stored.is_confirmed_medical is True
        assert store.decisions[(USER_ID, tx.id)].decision == TriageDecisionType.KEEP

    def test_keep_builds_expense_from_transaction(self, store, engine):
        """Test the default expense fields."""
        (tx,) = seed(store, 1)

        async def scenario():
            await engine.load()
            return await engine.keep(engine.current)

        expense = asyncio.run(scenario())

        assert expense.amount == Decimal("42.50")
        assert expense.vendor == "CVS"
        assert expense.category == ExpenseCategory.PHARMACY
        assert expense.expense_date == tx.transaction_date
        assert expense.is_tax_deductible is True
        assert expense.triage_status == ReviewStatus.KEPT
        assert expense.notes == (
            f"Imported from bank transaction tx0 on {date.today().isoformat()}"
        )

    def test_build_draft_prefers_authorized_date_and_normalizes_vendor(self, engine):
        """Test vendor and date fallbacks."""
        tx = make_transaction(
            merchant_name=None,
            description="SQ *JOES PHARMACY 1234",
            authorized_date=date(2024, 2, 28),
        )
        draft = engine.build_draft(tx, today=date(2024, 3, 1))

        assert draft.vendor == "JOES PHARMACY"
        assert draft.expense_date == date(2024, 2, 28)
        assert draft.synced_transaction_id == tx.id

    def test_keep_advances_session(self, store, engine):
        """Test cursor, counter and undo after keep."""
        transactions = seed(store, 2)

        async def scenario():
            await engine.load()
            await engine.keep(engine.current)

        asyncio.run(scenario())

        assert engine.position == 1
        assert engine.current.id == transactions[1].id
        assert engine.stats.reviewed_today == 1
        assert engine.has_undo is True
        assert engine.undo_stack.peek().decision == TriageDecisionType.KEEP

    def test_keep_with_edited_draft(self, store, engine):
        """Test that a caller-supplied draft overrides the default."""
        (tx,) = seed(store, 1)
        draft = ExpenseDraft(
            amount=Decimal("40.00"),
            expense_date=tx.transaction_date,
            category=ExpenseCategory.MEDICAL_CARE,
            vendor="CVS Health",
        )

        async def scenario():
            await engine.load()
            return await engine.keep(engine.current, draft)

        expense = asyncio.run(scenario())

        assert expense.amount == Decimal("40.00")
        assert expense.vendor == "CVS Health"
        assert expense.synced_transaction_id == tx.id

    def test_keep_twice_raises(self, store, engine):
        """Test that a decided transaction cannot be kept again."""
        (tx,) = seed(store, 1)

        async def scenario():
            await engine.load()
            await engine.keep(tx)
            await engine.keep(tx)

        with pytest.raises(AlreadyDecidedError):
            asyncio.run(scenario())
        assert len(store.expenses) == 1

    def test_keep_skipped_raises(self, store, engine):
        """Test that re-deciding must go through undo."""
        (tx,) = seed(store, 1)

        async def scenario():
            await engine.load()
            await engine.skip(tx)
            await engine.keep(tx)

        with pytest.raises(AlreadyDecidedError):
            asyncio.run(scenario())

    def test_keep_unknown_transaction(self, engine):
        """Test that keeping a missing transaction raises NotFoundError."""
        with pytest.raises(NotFoundError):
            asyncio.run(engine.keep(make_transaction()))

    def test_keep_invalid_draft_changes_nothing(self, store, engine):
        """Test that a draft failing validation creates nothing."""
        (tx,) = seed(store, 1)
        draft = ExpenseDraft(
            amount=Decimal("42.50"),
            expense_date=date.today() + timedelta(days=60),
        )

        async def scenario():
            await engine.load()
            await engine.keep(engine.current, draft)

        with pytest.raises(InvalidExpenseError):
            asyncio.run(scenario())
        assert store.expenses == {}
        assert engine.position == 0
        assert engine.has_undo is False

    def test_link_failure_is_compensated(self):
        """Test that the expense is removed when linking fails."""
        store = LinkFailingStore()
        engine = TriageEngine(USER_ID, store, store)
        (tx,) = seed(store, 1)

        async def scenario():
            await engine.load()
            await engine.keep(engine.current)

        with pytest.raises(StorageError, match="link write failed"):
            asyncio.run(scenario())

        stored = asyncio.run(store.get_transaction(USER_ID, tx.id))
        assert store.expenses == {}
        assert stored.review_status == ReviewStatus.PENDING
        assert engine.position == 0
        assert engine.stats.reviewed_today == 0
        assert engine.has_undo is False

    def test_decision_failure_resets_link(self):
        """Test compensation after the link was already written."""
        store = DecisionFailingStore()
        engine = TriageEngine(USER_ID, store, store)
        (tx,) = seed(store, 1)

        async def scenario():
            await engine.load()
            await engine.keep(engine.current)

        with pytest.raises(StorageError, match="decision write failed"):
            asyncio.run(scenario())

        stored = asyncio.run(store.get_transaction(USER_ID, tx.id))
        assert store.expenses == {}
        assert stored.review_status == ReviewStatus.PENDING
        assert stored.matched_expense_id is None

    def test_failed_compensation_raises_inconsistent_state(self):
        """Test that a failed compensating delete is surfaced with both ids."""
        store = LinkFailingStore(fail_delete=True)
        engine = TriageEngine(USER_ID, store, store, audit_logger=None)
        (tx,) = seed(store, 1)

        async def scenario():
            await engine.load()
            await engine.keep(engine.current)

        with pytest.raises(InconsistentStateError) as exc_info:
            asyncio.run(scenario())

        (expense_id,) = store.expenses
        assert exc_info.value.expense_id == expense_id
        assert exc_info.value.transaction_id == tx.id
        assert engine.has_undo is False

    def test_keep_is_audited(self, store, engine):
        """Test keep audit events."""
        seed(store, 1)

        async def scenario():
            await engine.load()
            await engine.keep(engine.current)

        asyncio.run(scenario())
        types = [e.event_type for e in store.events]

        assert AuditEventType.EXPENSE_CREATED in types
        assert AuditEventType.TRANSACTION_KEPT in types


class TestSkip:
    """Tests for skipping transactions."""

    def test_skip(self, store, engine):
        """Test that skip marks the transaction and records the decision."""
        (tx, _) = seed(store, 2)

        async def scenario():
            await engine.load()
            return await engine.skip(engine.current)

        updated = asyncio.run(scenario())

        assert updated.review_status == ReviewStatus.SKIPPED
        assert store.expenses == {}
        assert store.decisions[(USER_ID, tx.id)].decision == TriageDecisionType.SKIP
        assert engine.position == 1
        assert engine.stats.reviewed_today == 1

    def test_skip_twice_raises(self, store, engine):
        """Test that a skipped transaction cannot be skipped again."""
        (tx,) = seed(store, 1)

        async def scenario():
            await engine.load()
            await engine.skip(tx)
            await engine.skip(tx)

        with pytest.raises(AlreadyDecidedError):
            asyncio.run(scenario())

    def test_skip_failure_restores_pending(self):
        """Test that a failed decision write undoes the status change."""
        store = DecisionFailingStore()
        engine = TriageEngine(USER_ID, store, store)
        (tx,) = seed(store, 1)

        async def scenario():
            await engine.load()
            await engine.skip(engine.current)

        with pytest.raises(StorageError):
            asyncio.run(scenario())

        stored = asyncio.run(store.get_transaction(USER_ID, tx.id))
        assert stored.review_status == ReviewStatus.PENDING
        assert engine.position == 0
        assert engine.has_undo is False


class TestUndo:
    """Tests for undo."""

    def test_undo_on_empty_stack_is_noop(self, store, engine):
        """Test that undo with no decisions changes nothing."""
        (tx,) = seed(store, 1)

        async def scenario():
            await engine.load()
            return await engine.undo()

        assert asyncio.run(scenario()) is None
        assert engine.position == 0
        assert engine.stats.reviewed_today == 0
        assert asyncio.run(store.get_transaction(USER_ID, tx.id)).review_status == ReviewStatus.PENDING

    def test_undo_keep(self, store, engine):
        """Test that undoing a keep removes the expense and resets the transaction."""
        (tx, _) = seed(store, 2)

        async def scenario():
            await engine.load()
            expense = await engine.keep(engine.current)
            record = await engine.undo()
            return expense, record

        expense, record = asyncio.run(scenario())
        stored = asyncio.run(store.get_transaction(USER_ID, tx.id))

        assert record.decision == TriageDecisionType.KEEP
        assert record.expense_id == expense.id
        assert store.expenses == {}
        assert stored.review_status == ReviewStatus.PENDING
        assert stored.matched_expense_id is None
        assert stored.is_confirmed_medical is False
        assert (USER_ID, tx.id) not in store.decisions
        assert engine.position == 0
        assert engine.current.review_status == ReviewStatus.PENDING
        assert engine.stats.reviewed_today == 0
        assert engine.has_undo is False

    def test_undo_leaves_transaction_history(self, store, engine):
        """Test that keep and undo are both in the transaction's audit trail."""
        (tx,) = seed(store, 1)

        async def scenario():
            await engine.load()
            await engine.keep(engine.current)
            await engine.undo()
            return await store.get_events_by_entity("transaction", tx.id)

        history = asyncio.run(scenario())

        assert [e.event_type for e in history] == [
            AuditEventType.TRANSACTION_KEPT,
            AuditEventType.DECISION_UNDONE,
        ]

    def test_undo_after_reload_requeues_transaction(self, store, engine):
        """Test that undoing a decision made before load() puts it back in the queue."""
        (first, second) = seed(store, 2)

        async def scenario():
            await engine.load()
            await engine.skip(engine.current)
            await engine.load()
            return await engine.undo()

        record = asyncio.run(scenario())

        assert record.transaction_id == first.id
        assert [t.id for t in engine.queue] == [first.id, second.id]
        assert engine.current.id == first.id
        assert engine.current.review_status == ReviewStatus.PENDING
        assert engine.stats.total_to_review == 2

    def test_undo_skip(self, store, engine):
        """Test that undoing a skip resets the transaction."""
        (tx,) = seed(store, 1)

        async def scenario():
            await engine.load()
            await engine.skip(engine.current)
            return await engine.undo()

        record = asyncio.run(scenario())
        stored = asyncio.run(store.get_transaction(USER_ID, tx.id))

        assert record.decision == TriageDecisionType.SKIP
        assert stored.review_status == ReviewStatus.PENDING
        assert (USER_ID, tx.id) not in store.decisions
        assert engine.is_complete is False

    def test_undo_is_lifo(self, store, engine):
        """Test that undo reverses the most recent decision first."""
        (first, second) = seed(store, 2)

        async def scenario():
            await engine.load()
            await engine.keep(engine.current)
            await engine.skip(engine.current)
            return await engine.undo()

        record = asyncio.run(scenario())

        assert record.transaction_id == second.id
        assert asyncio.run(store.get_transaction(USER_ID, first.id)).review_status == ReviewStatus.KEPT
        assert len(store.expenses) == 1
        assert engine.position == 1

    def test_undo_finds_expense_by_back_reference(self, store, engine):
        """Test undo when the recorded expense id is gone."""
        (tx,) = seed(store, 1)

        async def scenario():
            await engine.load()
            expense = await engine.keep(engine.current)
            # Replace the expense under a new id, as a manual repair would
            moved = store.expenses.pop(expense.id).model_copy(update={"id": uuid4()})
            store.expenses[moved.id] = moved
            await engine.undo()

        asyncio.run(scenario())

        assert store.expenses == {}
        assert asyncio.run(store.get_transaction(USER_ID, tx.id)).review_status == ReviewStatus.PENDING

    def test_undo_reset_failure_raises_inconsistent_state(self):
        """Test that a failed reset after deleting the expense is surfaced."""
        store = ResetFailingStore()
        engine = TriageEngine(USER_ID, store, store)
        (tx,) = seed(store, 1)

        async def keep():
            await engine.load()
            return await engine.keep(engine.current)

        expense = asyncio.run(keep())
        store.armed = True

        with pytest.raises(InconsistentStateError) as exc_info:
            asyncio.run(engine.undo())

        assert exc_info.value.expense_id == expense.id
        assert exc_info.value.transaction_id == tx.id
        assert engine.has_undo is True  # not popped
        assert engine.stats.reviewed_today == 1

    def test_failed_undo_skip_keeps_history(self):
        """Test that a failed undo can be retried."""
        store = ResetFailingStore()
        engine = TriageEngine(USER_ID, store, store)
        seed(store, 1)

        async def skip():
            await engine.load()
            await engine.skip(engine.current)

        asyncio.run(skip())
        store.armed = True

        with pytest.raises(StorageError):
            asyncio.run(engine.undo())
        assert engine.has_undo is True

        store.armed = False
        assert asyncio.run(engine.undo()) is not None
        assert engine.has_undo is False

    def test_undo_depth_limit(self, store):
        """Test that only the configured number of decisions can be undone."""
        engine = TriageEngine(USER_ID, store, store, undo_depth=1)
        seed(store, 2)

        async def scenario():
            await engine.load()
            await engine.skip(engine.current)
            await engine.skip(engine.current)
            first = await engine.undo()
            second = await engine.undo()
            return first, second

        first, second = asyncio.run(scenario())

        assert first is not None
        assert second is None


class TestEndToEnd:
    """The CVS scenario: ingest, keep, verify."""

    def test_cvs_transaction(self, store, ingestor, engine, raw_row):
        """Test ingest → keep for one pharmacy transaction."""
        row = raw_row(
            transaction_id="tx1",
            amount=-42.50,
            name="CVS PHARMACY #123",
            merchant_name="CVS",
            pending=False,
        )

        async def scenario():
            await ingestor.ingest(USER_ID, [row])
            tx = await store.get_by_external_id(USER_ID, "tx1")
            assert tx.amount == Decimal("42.50")
            assert tx.is_potential_medical is True
            assert tx.review_status == ReviewStatus.PENDING

            await engine.load()
            expense = await engine.keep(engine.current)
            return expense, await store.get_by_external_id(USER_ID, "tx1")

        expense, tx = asyncio.run(scenario())

        assert expense.amount == Decimal("42.50")
        assert tx.review_status == ReviewStatus.KEPT
        assert tx.matched_expense_id == expense.id


class TestReconcile:
    """Tests for reconcile_links."""

    def orphan(self, store: InMemoryStore, tx: SyncedTransaction):
        """Create an expense whose transaction doesn't point back."""
        draft = ExpenseDraft(
            amount=tx.amount,
            expense_date=tx.transaction_date,
            synced_transaction_id=tx.id,
        )
        return asyncio.run(store.create_expense(USER_ID, draft))

    def test_consistent_links(self, store, engine):
        """Test that a clean keep reports nothing."""
        seed(store, 1)

        async def scenario():
            await engine.load()
            await engine.keep(engine.current)
            return await reconcile_links(USER_ID, store, store)

        report = asyncio.run(scenario())

        assert report.checked == 1
        assert report.is_consistent is True

    def test_report_only(self, store):
        """Test that repair=False changes nothing."""
        (tx,) = seed(store, 1)
        expense = self.orphan(store, tx)

        report = asyncio.run(reconcile_links(USER_ID, store, store))

        assert report.orphans == [expense.id]
        assert report.relinked == []
        assert expense.id in store.expenses

    def test_relinks_pending_transaction(self, store):
        """Test that an orphan is linked when its transaction is free."""
        (tx,) = seed(store, 1)
        expense = self.orphan(store, tx)

        report = asyncio.run(reconcile_links(USER_ID, store, store, repair=True))
        stored = asyncio.run(store.get_transaction(USER_ID, tx.id))

        assert report.relinked == [expense.id]
        assert stored.review_status == ReviewStatus.KEPT
        assert stored.matched_expense_id == expense.id
        assert (USER_ID, tx.id) in store.decisions

    def test_removes_orphan_of_missing_transaction(self, store):
        """Test that an expense pointing at nothing is removed."""
        expense = self.orphan(store, make_transaction("ghost"))

        report = asyncio.run(reconcile_links(USER_ID, store, store, repair=True))

        assert report.removed == [expense.id]
        assert store.expenses == {}

    def test_resets_dangling_kept_transaction(self, store):
        """Test that a kept transaction without expense goes back to pending."""
        (tx,) = seed(store, 1)
        asyncio.run(store.mark_transaction_kept(USER_ID, tx.id, uuid4()))

        report = asyncio.run(reconcile_links(USER_ID, store, store, repair=True))
        stored = asyncio.run(store.get_transaction(USER_ID, tx.id))

        assert report.dangling == [tx.id]
        assert report.reset == [tx.id]
        assert stored.review_status == ReviewStatus.PENDING

    def test_reconciliation_is_audited(self, store, audit_logger):
        """Test that each pass leaves an event."""
        asyncio.run(reconcile_links(USER_ID, store, store, audit_logger=audit_logger))
        assert store.events[-1].event_type == AuditEventType.RECONCILIATION_COMPLETED


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
