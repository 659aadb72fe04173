"""
Data Models Package

This package contains all Pydantic models used in CareTracker.
All data flowing through the system must conform to these schemas.
"""

from caretracker.models.expense import (
    CareRecipient,
    Expense,
    ExpenseCategory,
    ExpenseDraft,
    ReimbursementSource,
    Relationship,
    ReviewStatus,
    ValidationIssue,
    ValidationResult,
)
from caretracker.models.transaction import (
    AccountType,
    Classification,
    IngestionFailure,
    IngestionResult,
    LinkedAccount,
    RawProviderTransaction,
    SyncedTransaction,
    TriageDecision,
    TriageDecisionType,
    TriageStats,
)
from caretracker.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Expense models
    "CareRecipient",
    "Expense",
    "ExpenseCategory",
    "ExpenseDraft",
    "ReimbursementSource",
    "Relationship",
    "ReviewStatus",
    "ValidationIssue",
    "ValidationResult",
    # Transaction models
    "AccountType",
    "Classification",
    "IngestionFailure",
    "IngestionResult",
    "LinkedAccount",
    "RawProviderTransaction",
    "SyncedTransaction",
    "TriageDecision",
    "TriageDecisionType",
    "TriageStats",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
