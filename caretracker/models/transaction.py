"""
Bank Transaction Models for CareTracker

Two shapes of the same transaction exist in the system:

1. RawProviderTransaction - what the bank-sync collaborator hands us.
   This is UNTRUSTED input. It is parsed here and malformed rows are
   rejected one at a time, never the whole batch.
2. SyncedTransaction - our stored copy, tagged with the classifier's
   guess and the user's triage decision.

DESIGN DECISION: Amounts are always stored as a positive magnitude.
The sign from the provider survives only as the is_refund flag.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)

from caretracker.models.expense import ExpenseCategory, ReviewStatus


# Largest magnitude a provider row may carry; anything above is malformed
MAX_PROVIDER_AMOUNT = Decimal("1000000000")


class TriageDecisionType(str, Enum):
    """What the user decided about a pending transaction."""
    KEEP = "keep"
    SKIP = "skip"


class AccountType(str, Enum):
    """Kinds of financial account a user can link."""
    BANK = "bank"
    FSA = "fsa"
    HSA = "hsa"
    CREDIT_CARD = "credit_card"


# =============================================================================
# PROVIDER INPUT
# =============================================================================

class RawProviderTransaction(BaseModel):
    """
    A transaction as returned by the bank-sync provider.

    Field names follow our conventions; the provider's own names
    (transaction_id, amount, name, ...) are accepted as aliases.
    """
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    external_transaction_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("external_transaction_id", "transaction_id"),
    )
    account_external_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("account_external_id", "account_id"),
    )
    amount_signed: Decimal = Field(
        ...,
        validation_alias=AliasChoices("amount_signed", "amount"),
        description="Provider amount; debits may be negative",
    )
    currency_code: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("currency_code", "iso_currency_code"),
    )
    transaction_date: date = Field(
        ...,
        validation_alias=AliasChoices("transaction_date", "date"),
    )
    authorized_date: Optional[date] = None
    name: str = Field(
        ...,
        description="Raw statement descriptor"
    )
    merchant_name: Optional[str] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    payment_channel: Optional[str] = None
    pending: bool = False
    location: Optional[dict[str, Any]] = None

    @field_validator('category', 'subcategory', mode='before')
    @classmethod
    def join_category_path(cls, v):
        """Providers send category hierarchies as lists."""
        if isinstance(v, (list, tuple)):
            parts = [str(p).strip() for p in v if p]
            return " > ".join(parts) or None
        return v

    @field_validator('amount_signed')
    @classmethod
    def amount_within_bounds(cls, v: Decimal) -> Decimal:
        if abs(v) >= MAX_PROVIDER_AMOUNT:
            raise ValueError(f"amount out of range (limit {MAX_PROVIDER_AMOUNT})")
        return v

    @field_validator('merchant_name', 'currency_code', mode='before')
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def amount(self) -> Decimal:
        """Positive magnitude, rounded to cents."""
        return abs(self.amount_signed).quantize(Decimal("0.01"))

    @property
    def is_refund(self) -> bool:
        return self.amount_signed < 0


class Classification(BaseModel):
    """Output of the medical classifier for one transaction."""
    model_config = ConfigDict(frozen=True)

    is_potential_medical: bool
    suggested_category: ExpenseCategory


# =============================================================================
# STORED TRANSACTION
# =============================================================================

class SyncedTransaction(BaseModel):
    """
    A bank transaction stored for triage.

    CRITICAL: (user_id, external_transaction_id) is unique.
    review_status and matched_expense_id belong to the user's decision
    and are never written by ingestion after the first insert.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    # Identity
    id: UUID = Field(default_factory=uuid4)
    user_id: str = Field(..., min_length=1)
    external_transaction_id: str = Field(..., min_length=1)
    linked_account_id: Optional[UUID] = None

    # Provider data (refreshed on every sync)
    amount: Decimal = Field(..., ge=0)
    is_refund: bool = False
    currency_code: str = Field(default="USD", min_length=3, max_length=3)
    transaction_date: date
    authorized_date: Optional[date] = None
    description: str = ""
    merchant_name: Optional[str] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    payment_channel: Optional[str] = None
    pending: bool = False
    location: Optional[dict[str, Any]] = None

    # Classifier output (refreshed on every sync)
    is_potential_medical: bool = False
    suggested_category: ExpenseCategory = ExpenseCategory.OTHER

    # User decision (owned by triage)
    is_confirmed_medical: bool = False
    review_status: ReviewStatus = ReviewStatus.PENDING
    matched_expense_id: Optional[UUID] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_decided(self) -> bool:
        return self.review_status != ReviewStatus.PENDING


class TriageDecision(BaseModel):
    """
    The active decision for one transaction.

    At most one per (user_id, transaction_id). Removed on undo.
    """

    user_id: str
    transaction_id: UUID
    decision: TriageDecisionType
    decided_at: datetime = Field(default_factory=datetime.utcnow)


class TriageStats(BaseModel):
    """Session counters shown on the review screen. Not a source of truth."""

    reviewed_today: int = Field(default=0, ge=0)
    total_to_review: int = Field(default=0, ge=0)


class LinkedAccount(BaseModel):
    """A connected bank, card, FSA or HSA account."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: str = Field(..., min_length=1)
    account_name: str = Field(..., min_length=1, max_length=200)
    account_type: AccountType = AccountType.BANK
    institution_name: Optional[str] = None
    access_token_ref: Optional[str] = Field(
        default=None,
        description="Reference to the provider access token (never the token itself in logs)"
    )
    provider_item_id: Optional[str] = None
    is_active: bool = True
    last_sync_at: Optional[datetime] = None
    error_message: Optional[str] = None


# =============================================================================
# INGESTION RESULTS
# =============================================================================

class IngestionFailure(BaseModel):
    """One row that could not be ingested."""

    external_transaction_id: Optional[str] = None
    reason: str
    kind: str = Field(
        ...,
        pattern="^(invalid|failed)$",
        description="invalid = malformed input, failed = storage error"
    )


class IngestionResult(BaseModel):
    """Summary of one ingestion batch. Partial success is normal."""

    inserted: int = 0
    updated: int = 0
    invalid: int = 0
    failed: int = 0
    failures: list[IngestionFailure] = Field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.inserted + self.updated

    def merge(self, other: 'IngestionResult') -> 'IngestionResult':
        """Combine two batch results (used when syncing several accounts)."""
        return IngestionResult(
            inserted=self.inserted + other.inserted,
            updated=self.updated + other.updated,
            invalid=self.invalid + other.invalid,
            failed=self.failed + other.failed,
            failures=[*self.failures, *other.failures],
        )
