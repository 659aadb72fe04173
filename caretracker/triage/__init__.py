"""Transaction triage package."""

from caretracker.triage.engine import (
    AlreadyDecidedError,
    InconsistentStateError,
    TriageEngine,
    TriageError,
)
from caretracker.triage.reconcile import ReconciliationReport, reconcile_links
from caretracker.triage.undo import UndoRecord, UndoStack

__all__ = [
    "AlreadyDecidedError",
    "InconsistentStateError",
    "ReconciliationReport",
    "TriageEngine",
    "TriageError",
    "UndoRecord",
    "UndoStack",
    "reconcile_links",
]
