"""Services package."""

from caretracker.services.storage import (
    AuditStorageInterface,
    CareRecipientStore,
    DependencyError,
    DuplicateKeyError,
    ExpenseStore,
    GoogleSheetsAccountStorage,
    GoogleSheetsAuditStorage,
    GoogleSheetsCareRecipientStorage,
    GoogleSheetsClient,
    GoogleSheetsExpenseStorage,
    GoogleSheetsTransactionStorage,
    InMemoryStore,
    LinkedAccountStore,
    NotFoundError,
    StorageError,
    TransactionStore,
)

__all__ = [
    # Storage interfaces
    "AuditStorageInterface",
    "CareRecipientStore",
    "ExpenseStore",
    "LinkedAccountStore",
    "TransactionStore",
    # Storage implementations
    "GoogleSheetsAccountStorage",
    "GoogleSheetsAuditStorage",
    "GoogleSheetsCareRecipientStorage",
    "GoogleSheetsClient",
    "GoogleSheetsExpenseStorage",
    "GoogleSheetsTransactionStorage",
    "InMemoryStore",
    # Errors
    "DependencyError",
    "DuplicateKeyError",
    "NotFoundError",
    "StorageError",
]
