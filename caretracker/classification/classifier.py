"""
Medical Expense Classifier

Flags bank transactions that look like medical or caregiving spending
and suggests an expense category for them.

DESIGN DECISION: This is a keyword heuristic, not a model.
- An ordered table of rules; the first rule with a matching keyword wins.
- Matching is case-insensitive SUBSTRING containment, not word matching.
  "home care" also matches "HOME CARE SUPPLY OUTLET". Keywords are kept
  specific (no bare "care") to limit false positives, but the limitation
  is known and accepted.
- Deterministic: same input, same output. Ingestion relies on this to
  stay idempotent.

The classifier never raises. The worst case is ("Other", not medical).
"""

from typing import Optional, Sequence

from pydantic import BaseModel, ConfigDict

from caretracker.models.expense import ExpenseCategory
from caretracker.models.transaction import Classification


class KeywordRule(BaseModel):
    """One row of the rule table: any keyword hit selects the category."""
    model_config = ConfigDict(frozen=True)

    name: str
    category: ExpenseCategory
    keywords: tuple[str, ...]

    def matches(self, text: str) -> bool:
        return any(keyword in text for keyword in self.keywords)


# Order matters: the first matching rule decides the category.
DEFAULT_RULES: tuple[KeywordRule, ...] = (
    KeywordRule(
        name="pharmacy",
        category=ExpenseCategory.PHARMACY,
        keywords=("pharmacy", "cvs", "walgreens", "rite aid", "prescription"),
    ),
    KeywordRule(
        name="transportation",
        category=ExpenseCategory.TRANSPORTATION,
        keywords=("uber", "lyft", "taxi", "rideshare"),
    ),
    KeywordRule(
        name="doctor",
        category=ExpenseCategory.HEALTHCARE_SERVICES,
        keywords=(
            "medical", "hospital", "clinic", "doctor", "physician",
            "urgent care", "therapy", "counseling", "mental health",
            "dermatology", "cardiology",
        ),
    ),
    KeywordRule(
        name="in_home_care",
        category=ExpenseCategory.IN_HOME_CARE,
        keywords=(
            "home care", "home health", "nursing", "caregiver",
            "assisted living", "respite care", "adult day care",
        ),
    ),
    KeywordRule(
        name="dental_vision",
        category=ExpenseCategory.DENTAL_VISION,
        keywords=(
            "dentist", "dental", "orthodont", "optometr", "vision",
            "eyeglass", "optical",
        ),
    ),
    KeywordRule(
        name="insurance",
        category=ExpenseCategory.INSURANCE,
        keywords=("insurance", "medicare", "medicaid", "copay", "deductible"),
    ),
)

# Fallback when no keyword matched: look at the provider's own category
CATEGORY_HINTS: tuple[tuple[str, ExpenseCategory], ...] = (
    ("medical", ExpenseCategory.HEALTHCARE_SERVICES),
    ("transport", ExpenseCategory.TRANSPORTATION),
    ("pharmacy", ExpenseCategory.PHARMACY),
)


class MedicalClassifier:
    """
    Scores transaction text against the keyword rule table.

    Usage:
        classifier = MedicalClassifier()
        result = classifier.classify("CVS PHARMACY #123", "CVS", None)
        result.suggested_category  # ExpenseCategory.PHARMACY
    """

    def __init__(self, rules: Optional[Sequence[KeywordRule]] = None):
        self._rules = tuple(rules) if rules is not None else DEFAULT_RULES

    @property
    def rules(self) -> tuple[KeywordRule, ...]:
        return self._rules

    def classify(
        self,
        description: Optional[str],
        merchant_name: Optional[str] = None,
        category_hint: Optional[str] = None,
    ) -> Classification:
        text = f"{description or ''} {merchant_name or ''}".lower()

        for rule in self._rules:
            if rule.matches(text):
                return Classification(
                    is_potential_medical=True,
                    suggested_category=rule.category,
                )

        if category_hint:
            hint = category_hint.lower()
            for needle, category in CATEGORY_HINTS:
                if needle in hint:
                    return Classification(
                        is_potential_medical=True,
                        suggested_category=category,
                    )

        return Classification(
            is_potential_medical=False,
            suggested_category=ExpenseCategory.OTHER,
        )
