"""
Undo history for the triage session.

A plain LIFO of decisions. The engine peeks, commits the reversal to
storage, and only then pops, so a failed undo can be retried.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from caretracker.models.transaction import TriageDecisionType


class UndoRecord(BaseModel):
    """One reversible triage decision."""
    model_config = ConfigDict(frozen=True)

    decision: TriageDecisionType
    transaction_id: UUID
    expense_id: Optional[UUID] = Field(
        default=None,
        description="Expense created by a KEEP decision"
    )
    decided_at: datetime = Field(default_factory=datetime.utcnow)


class UndoStack:
    """
    LIFO stack of UndoRecords with an optional maximum depth.

    When full, pushing drops the oldest record.
    """

    def __init__(self, max_depth: Optional[int] = None):
        if max_depth is not None and max_depth < 1:
            raise ValueError("max_depth must be at least 1")
        self._max_depth = max_depth
        self._records: list[UndoRecord] = []

    @property
    def max_depth(self) -> Optional[int]:
        return self._max_depth

    def push(self, record: UndoRecord) -> None:
        self._records.append(record)
        if self._max_depth is not None and len(self._records) > self._max_depth:
            del self._records[0]

    def pop(self) -> Optional[UndoRecord]:
        return self._records.pop() if self._records else None

    def peek(self) -> Optional[UndoRecord]:
        return self._records[-1] if self._records else None

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)

    def __bool__(self) -> bool:
        return bool(self._records)
