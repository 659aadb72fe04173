"""
Shared fixtures.

Everything runs on InMemoryStore. Async code is driven with asyncio.run
inside each test, so fixtures stay synchronous.
"""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from caretracker.audit import AuditLogger
from caretracker.ingestion import TransactionIngestor
from caretracker.models.expense import Expense, ExpenseCategory
from caretracker.services.storage import InMemoryStore
from caretracker.triage import TriageEngine


USER_ID = "user-123"


@pytest.fixture
def user_id():
    return USER_ID


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def audit_logger(store):
    return AuditLogger(store)


@pytest.fixture
def ingestor(store, audit_logger):
    return TransactionIngestor(store, audit_logger=audit_logger)


@pytest.fixture
def engine(store, audit_logger):
    return TriageEngine(USER_ID, store, store, audit_logger=audit_logger)


@pytest.fixture
def raw_row():
    """Factory for provider rows in the provider's own field names."""
    counter = {"n": 0}

    def make(**overrides) -> dict:
        counter["n"] += 1
        row = {
            "transaction_id": f"tx{counter['n']}",
            "account_id": "acc-1",
            "amount": "-42.50",
            "iso_currency_code": "USD",
            "date": (date.today() - timedelta(days=3)).isoformat(),
            "name": "CVS PHARMACY #123",
            "merchant_name": "CVS",
            "pending": False,
        }
        row.update(overrides)
        return row

    return make


@pytest.fixture
def make_expense():
    """Factory for stored expenses."""

    def make(
        amount: str,
        expense_date: date,
        is_tax_deductible: bool = False,
        **fields,
    ) -> Expense:
        fields.setdefault("category", ExpenseCategory.MEDICAL_CARE)
        return Expense(
            user_id=USER_ID,
            amount=Decimal(amount),
            expense_date=expense_date,
            is_tax_deductible=is_tax_deductible,
            **fields,
        )

    return make
