"""
Storage Services Package

Provides abstract interfaces and concrete implementations for data storage.
Implements an in-memory backend and Google Sheets; both are swappable.
"""

from caretracker.services.storage.interface import (
    AuditStorageInterface,
    CareRecipientStore,
    DependencyError,
    DuplicateKeyError,
    ExpenseStore,
    LinkedAccountStore,
    NotFoundError,
    StorageError,
    TransactionStore,
)
from caretracker.services.storage.memory import InMemoryStore
from caretracker.services.storage.google_sheets import (
    GoogleSheetsAccountStorage,
    GoogleSheetsAuditStorage,
    GoogleSheetsCareRecipientStorage,
    GoogleSheetsClient,
    GoogleSheetsExpenseStorage,
    GoogleSheetsTransactionStorage,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "CareRecipientStore",
    "ExpenseStore",
    "LinkedAccountStore",
    "TransactionStore",
    # Exceptions
    "DependencyError",
    "DuplicateKeyError",
    "NotFoundError",
    "StorageError",
    # In-memory implementation
    "InMemoryStore",
    # Google Sheets implementation
    "GoogleSheetsAccountStorage",
    "GoogleSheetsAuditStorage",
    "GoogleSheetsCareRecipientStorage",
    "GoogleSheetsClient",
    "GoogleSheetsExpenseStorage",
    "GoogleSheetsTransactionStorage",
]
