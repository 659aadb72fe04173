"""
Two-Stage Expense Validation

DESIGN DECISION: Every ExpenseDraft passes through two stages before
it reaches storage, whether it came from the manual form or from a
kept bank transaction.

STAGE 1 - SCHEMA VALIDATION:
- Content the type system can't express (blank vendor, blank receipt refs)
- Required field presence for the chosen category

STAGE 2 - SEMANTIC VALIDATION:
- Future date detection
- Absurd amount detection
- Care recipient reference check (needs storage)

IMPORTANT: Validation NEVER silently fixes issues.
It reports them; callers raise InvalidExpenseError on errors.
"""

from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

from pydantic import ValidationError

from caretracker.config import get_settings
from caretracker.models.expense import (
    ExpenseDraft,
    ValidationIssue,
    ValidationResult,
)
from caretracker.services.storage import CareRecipientStore


class ExpenseDraftValidator:
    """
    Validates expense drafts through a two-stage pipeline.

    Stage 1: Schema validation (can run without storage)
    Stage 2: Semantic validation (may need storage for reference checks)
    """

    def __init__(
        self,
        care_recipient_store: Optional[CareRecipientStore] = None,
    ):
        """
        Initialize validator.

        Args:
            care_recipient_store: Used to check care_recipient_id exists.
                                  If None, the reference check is skipped.
        """
        self._recipients = care_recipient_store
        self._settings = get_settings().app

    def _validate_schema(
        self,
        draft: ExpenseDraft,
    ) -> tuple[bool, list[ValidationIssue]]:
        """
        Stage 1: Schema validation.

        Returns: (is_valid, list_of_issues)
        """
        issues = []

        if not draft.vendor:
            issues.append(ValidationIssue(
                field="vendor",
                issue_type="missing",
                message="No vendor given for this expense",
                severity="warning",  # Warning because plenty of receipts lack one
                suggested_fix="Add who was paid so the expense is easy to find later",
            ))

        if any(not url.strip() for url in draft.receipt_urls):
            issues.append(ValidationIssue(
                field="receipt_urls",
                issue_type="invalid_value",
                message="Receipt reference is empty",
                severity="error",
                suggested_fix="Remove the empty receipt entry",
            ))

        if draft.is_reimbursed and draft.reimbursement_source is None:
            issues.append(ValidationIssue(
                field="reimbursement_source",
                issue_type="missing",
                message="Expense is marked reimbursed but no source is given",
                severity="info",
                suggested_fix="Pick FSA, HSA, insurance, employer or other",
            ))

        is_valid = not any(issue.severity == "error" for issue in issues)
        return is_valid, issues

    def _validate_semantic(
        self,
        draft: ExpenseDraft,
        today: date,
    ) -> tuple[bool, list[ValidationIssue]]:
        """
        Stage 2: Semantic validation.

        Checks:
        - Future dates
        - Absurd amounts

        Returns: (is_valid, list_of_issues)
        """
        issues = []

        max_future_date = today + timedelta(days=self._settings.future_date_tolerance_days)
        if draft.expense_date > max_future_date:
            issues.append(ValidationIssue(
                field="expense_date",
                issue_type="future_date",
                message=f"Expense date ({draft.expense_date}) is in the future",
                severity="error",
                suggested_fix="Expenses can only be recorded once they are incurred",
            ))

        if draft.amount > self._settings.max_expense_amount:
            issues.append(ValidationIssue(
                field="amount",
                issue_type="suspicious_value",
                message=f"Amount (${draft.amount:,.2f}) seems unusually high",
                severity="warning",
                suggested_fix="Please verify this amount is correct",
            ))

        if draft.amount < Decimal("1"):
            issues.append(ValidationIssue(
                field="amount",
                issue_type="suspicious_value",
                message=f"Amount (${draft.amount}) seems unusually low",
                severity="warning",
                suggested_fix="Please verify this amount is correct",
            ))

        is_valid = not any(issue.severity == "error" for issue in issues)
        return is_valid, issues

    async def _check_care_recipient(
        self,
        user_id: str,
        draft: ExpenseDraft,
    ) -> list[ValidationIssue]:
        """Check the referenced care recipient belongs to the user."""
        if self._recipients is None or draft.care_recipient_id is None:
            return []

        recipient = await self._recipients.get_care_recipient(
            user_id, draft.care_recipient_id
        )
        if recipient is None:
            return [ValidationIssue(
                field="care_recipient_id",
                issue_type="not_found",
                message="The selected care recipient no longer exists",
                severity="error",
                suggested_fix="Choose another care recipient or leave it empty",
            )]
        return []

    async def validate(
        self,
        user_id: str,
        draft: ExpenseDraft,
        today: Optional[date] = None,
    ) -> ValidationResult:
        """
        Run full two-stage validation pipeline.

        Args:
            user_id: Owner of the expense being created
            draft: The draft to validate
            today: Reference date (defaults to date.today())

        Returns:
            ValidationResult with all issues found
        """
        today = today or date.today()
        all_issues = []

        # Stage 1: Schema validation
        schema_valid, schema_issues = self._validate_schema(draft)
        all_issues.extend(schema_issues)

        # Only run stage 2 if stage 1 passes
        semantic_valid = False
        if schema_valid:
            semantic_valid, semantic_issues = self._validate_semantic(draft, today)
            all_issues.extend(semantic_issues)

            reference_issues = await self._check_care_recipient(user_id, draft)
            all_issues.extend(reference_issues)
            semantic_valid = semantic_valid and not reference_issues

        warnings = [issue.message for issue in all_issues if issue.severity == "warning"]

        return ValidationResult(
            schema_valid=schema_valid,
            semantic_valid=semantic_valid,
            is_valid=schema_valid and semantic_valid,
            issues=all_issues,
            warnings=warnings,
        )

    async def ensure_valid(
        self,
        user_id: str,
        draft: ExpenseDraft,
        today: Optional[date] = None,
    ) -> ValidationResult:
        """
        Validate and raise if the draft has errors.

        Raises:
            InvalidExpenseError: If any issue has severity 'error'
        """
        result = await self.validate(user_id, draft, today)
        if not result.is_valid:
            raise InvalidExpenseError(result)
        return result

    def get_user_friendly_summary(
        self,
        result: ValidationResult,
    ) -> str:
        """
        Generate a user-friendly summary of validation results.

        This is what we show to non-technical users.
        """
        if result.is_valid and not result.warnings:
            return "✅ All checks passed!"

        lines = []

        if result.errors:
            lines.append("❌ This expense can't be saved yet:")
            for issue in result.errors:
                lines.append(f"   • {issue.message}")
                if issue.suggested_fix:
                    lines.append(f"     💡 {issue.suggested_fix}")

        if result.warnings:
            if lines:
                lines.append("")
            lines.append("⚠️ Please verify the following:")
            for warning in result.warnings:
                lines.append(f"   • {warning}")

        return "\n".join(lines)


class InvalidExpenseError(ValueError):
    """Raised when an ExpenseDraft fails validation."""

    def __init__(self, result: ValidationResult):
        self.result = result
        messages = "; ".join(issue.message for issue in result.errors)
        super().__init__(f"Invalid expense: {messages}")

    @classmethod
    def from_issue(cls, issue: ValidationIssue) -> "InvalidExpenseError":
        """Wrap a single schema-level issue."""
        return cls(ValidationResult(
            schema_valid=False,
            semantic_valid=True,
            is_valid=False,
            issues=[issue],
        ))

    @classmethod
    def from_pydantic(cls, error: ValidationError) -> "InvalidExpenseError":
        """Wrap a model ValidationError raised while building a draft."""
        issues = [
            ValidationIssue(
                field=".".join(str(part) for part in err["loc"]) or "draft",
                issue_type=err["type"],
                message=err["msg"],
                severity="error",
            )
            for err in error.errors()
        ]
        return cls(ValidationResult(
            schema_valid=False,
            semantic_valid=True,
            is_valid=False,
            issues=issues,
        ))
