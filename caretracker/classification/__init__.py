"""Transaction classification package."""

from caretracker.classification.classifier import (
    DEFAULT_RULES,
    KeywordRule,
    MedicalClassifier,
)
from caretracker.classification.merchant import normalize_merchant

__all__ = [
    "DEFAULT_RULES",
    "KeywordRule",
    "MedicalClassifier",
    "normalize_merchant",
]
