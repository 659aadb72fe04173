"""
Core Expense Models for CareTracker

These models define the strict schemas for the expense side of the system.
They are designed to:
1. Enforce type safety at runtime
2. Provide clear validation error messages
3. Be serializable for storage and logging
4. Support the audit trail

DESIGN DECISION: An expense is only ever created from an ExpenseDraft.
Manual forms and triage "keep" both build a draft first, so there is
exactly one typed payload crossing into storage.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    model_validator,
)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class ExpenseCategory(str, Enum):
    """
    Supported expense categories.

    The "Medical > ..." values are the ones the transaction classifier
    suggests; the rest come from the manual expense form.
    """
    MEDICAL_CARE = "Medical Care"
    PHARMACY = "Medical > Pharmacy"
    HEALTHCARE_SERVICES = "Medical > Healthcare Services"
    IN_HOME_CARE = "In-Home Care"
    TRANSPORTATION = "Transportation"
    DENTAL_VISION = "Dental & Vision"
    INSURANCE = "Insurance"
    ASSISTIVE_DEVICES = "Assistive Devices"
    HOME_MODIFICATIONS = "Home Modifications"
    OTHER = "Other"


class ReviewStatus(str, Enum):
    """
    Triage status of an imported transaction.

    CRITICAL: Only the triage engine moves a transaction out of PENDING.
    Bank sync NEVER changes this value on an existing row.
    """
    PENDING = "pending"
    KEPT = "kept"
    SKIPPED = "skipped"


class ReimbursementSource(str, Enum):
    """Who paid the user back for an expense."""
    FSA = "fsa"
    HSA = "hsa"
    INSURANCE = "insurance"
    EMPLOYER = "employer"
    OTHER = "other"


class Relationship(str, Enum):
    """Relationship of a care recipient to the caregiver."""
    PARENT = "Parent"
    SPOUSE = "Spouse"
    CHILD = "Child"
    SIBLING = "Sibling"
    GRANDPARENT = "Grandparent"
    OTHER_RELATIVE = "Other Relative"
    FRIEND = "Friend"
    OTHER = "Other"


# =============================================================================
# EXPENSE MODELS
# =============================================================================

class ExpenseDraft(BaseModel):
    """
    Everything needed to create an expense.

    Built by the manual expense form or by the triage engine from a
    kept transaction. Validated by ExpenseDraftValidator before it
    reaches storage.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    amount: Decimal = Field(
        ...,
        gt=0,
        description="Amount paid (always positive)"
    )
    expense_date: date = Field(
        ...,
        description="Date the expense was incurred"
    )
    category: ExpenseCategory = Field(
        default=ExpenseCategory.OTHER,
        description="Expense category"
    )
    subcategory: Optional[str] = Field(default=None, max_length=100)
    vendor: Optional[str] = Field(
        default=None,
        max_length=200,
        description="Who was paid"
    )
    description: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = Field(
        default=None,
        max_length=1000,
        description="User notes about this expense"
    )
    care_recipient_id: Optional[UUID] = None
    receipt_urls: list[str] = Field(default_factory=list)

    is_tax_deductible: bool = False
    is_reimbursed: bool = False
    reimbursement_source: Optional[ReimbursementSource] = None
    is_refund: bool = False

    # Set only when the draft comes from a triaged bank transaction
    synced_transaction_id: Optional[UUID] = None

    @model_validator(mode='after')
    def validate_reimbursement(self) -> 'ExpenseDraft':
        if self.reimbursement_source and not self.is_reimbursed:
            raise ValueError("Reimbursement source given for an expense that is not reimbursed")
        return self


class Expense(ExpenseDraft):
    """
    A user-confirmed caregiving expense.

    If synced_transaction_id is set, the transaction with that id has
    matched_expense_id pointing back here.
    """

    # Identity
    id: UUID = Field(
        default_factory=uuid4,
        description="Unique expense ID"
    )
    user_id: str = Field(
        ...,
        min_length=1,
        description="Owner of this expense"
    )

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    triage_status: Optional[ReviewStatus] = Field(
        default=None,
        description="Set for expenses created through transaction triage"
    )

    @classmethod
    def from_draft(cls, user_id: str, draft: ExpenseDraft) -> 'Expense':
        """Create a new expense record from a validated draft."""
        return cls(
            user_id=user_id,
            triage_status=ReviewStatus.KEPT if draft.synced_transaction_id else None,
            **draft.model_dump(),
        )

    @property
    def is_auto_imported(self) -> bool:
        return self.synced_transaction_id is not None


class CareRecipient(BaseModel):
    """
    A person the user cares for.

    Referenced (not owned) by expenses. Cannot be deleted while
    expenses still point at it.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=200)
    relationship: Relationship = Relationship.OTHER
    conditions: list[str] = Field(
        default_factory=list,
        description="Medical conditions, free text"
    )
    insurance_info: Optional[str] = Field(default=None, max_length=1000)
    created_at: datetime = Field(default_factory=datetime.utcnow)


# =============================================================================
# VALIDATION MODELS
# =============================================================================

class ValidationIssue(BaseModel):
    """A single validation issue found."""

    field: str = Field(
        ...,
        description="Field with the issue"
    )
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'missing', 'future_date', 'suspicious_value')"
    )
    message: str = Field(
        ...,
        description="Human-readable description of the issue"
    )
    severity: str = Field(
        ...,
        pattern="^(error|warning|info)$",
        description="Issue severity"
    )
    suggested_fix: Optional[str] = Field(
        default=None,
        description="Suggested fix if available"
    )


class ValidationResult(BaseModel):
    """
    Result of validating an ExpenseDraft.

    Stage 1: Schema validation (required content)
    Stage 2: Semantic validation (dates, amounts, references)
    """

    validated_at: datetime = Field(
        default_factory=datetime.utcnow
    )

    schema_valid: bool
    semantic_valid: bool
    is_valid: bool = Field(
        ...,
        description="True when no issue has severity 'error'"
    )

    issues: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[str] = Field(
        default_factory=list,
        description="Warning messages for display"
    )

    @property
    def errors(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == "error"]
