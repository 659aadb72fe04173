"""
Main Orchestrator for CareTracker

This module ties together all the components and defines the
end-to-end flows for:
1. Bank sync (linked accounts → provider → ingest → classify)
2. Triage (pending queue → keep/skip/undo → expenses)

DESIGN DECISION: The orchestrator enforces the boundaries:
- Bank sync never decides anything; it only feeds the pending queue
- Expenses from bank data exist only after an explicit keep
- Every step is audited

The bank-sync provider itself is a collaborator behind the
TransactionSource protocol. Its wire format is not our concern.
"""

from datetime import datetime
from typing import Optional, Protocol, Union
from uuid import UUID

import structlog
from pydantic import BaseModel, Field

from caretracker.audit import AuditLogger, create_correlation_id
from caretracker.classification import MedicalClassifier
from caretracker.config import get_settings
from caretracker.expenses import CareRecipientService, ExpenseService
from caretracker.ingestion import TransactionIngestor
from caretracker.models.transaction import (
    IngestionResult,
    LinkedAccount,
    RawProviderTransaction,
)
from caretracker.services.storage import (
    AuditStorageInterface,
    CareRecipientStore,
    DependencyError,
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
    TransactionStore,
)
from caretracker.triage import TriageEngine
from caretracker.validation import ExpenseDraftValidator


logger = structlog.get_logger(__name__)


class TransactionSource(Protocol):
    """
    The bank-sync collaborator.

    Returns the provider's transactions for one account over the last
    `days` days, as dicts or RawProviderTransactions.
    """

    async def fetch_transactions(
        self,
        account: LinkedAccount,
        days: int,
    ) -> list[Union[dict, RawProviderTransaction]]:
        ...


class AccountSyncResult(BaseModel):
    """Outcome of syncing one linked account."""

    account_id: UUID
    account_name: str
    status: str = Field(..., pattern="^(synced|skipped|failed)$")
    result: Optional[IngestionResult] = None
    error_message: Optional[str] = None


class SyncSummary(BaseModel):
    """Outcome of one sync run across all of a user's accounts."""

    user_id: str
    correlation_id: UUID
    started_at: datetime = Field(default_factory=datetime.utcnow)
    totals: IngestionResult = Field(default_factory=IngestionResult)
    accounts: list[AccountSyncResult] = Field(default_factory=list)

    @property
    def synced_count(self) -> int:
        return sum(1 for a in self.accounts if a.status == "synced")

    @property
    def failed_count(self) -> int:
        return sum(1 for a in self.accounts if a.status == "failed")


class SyncFlow:
    """
    Orchestrates bank sync for one user.

    Flow, per active linked account:
    1. Skip accounts without an access token
    2. Fetch recent transactions from the provider
    3. Ingest (dedupe + classify) into the pending queue
    4. Stamp last_sync_at

    A provider error fails only its own account; the others continue.
    An unavailable store aborts the run.
    """

    def __init__(
        self,
        account_store: LinkedAccountStore,
        ingestor: TransactionIngestor,
        source: TransactionSource,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._accounts = account_store
        self._ingestor = ingestor
        self._source = source
        self._audit = audit_logger or AuditLogger()
        self._default_days = get_settings().triage.sync_days

    async def sync_user(
        self,
        user_id: str,
        days: Optional[int] = None,
    ) -> SyncSummary:
        """
        Sync every active linked account of a user.

        Args:
            user_id: The user to sync
            days: How much history to request (defaults to settings)

        Returns:
            SyncSummary with totals and per-account outcomes

        Raises:
            DependencyError: If the transaction or account store is unavailable
        """
        days = days or self._default_days
        correlation_id = create_correlation_id()
        summary = SyncSummary(user_id=user_id, correlation_id=correlation_id)

        accounts = await self._accounts.list_accounts(user_id, active_only=True)
        await self._audit.log_sync_started(
            user_id=user_id,
            account_count=len(accounts),
            correlation_id=correlation_id,
        )

        for account in accounts:
            outcome = await self._sync_account(account, days, correlation_id)
            summary.accounts.append(outcome)
            if outcome.result:
                summary.totals = summary.totals.merge(outcome.result)

        logger.info(
            "sync_completed",
            user_id=user_id,
            correlation_id=str(correlation_id),
            accounts=len(accounts),
            inserted=summary.totals.inserted,
            updated=summary.totals.updated,
            failed_accounts=summary.failed_count,
        )
        return summary

    async def _sync_account(
        self,
        account: LinkedAccount,
        days: int,
        correlation_id: UUID,
    ) -> AccountSyncResult:
        if not account.access_token_ref:
            logger.info(
                "account_skipped_no_token",
                user_id=account.user_id,
                account_id=str(account.id),
            )
            return AccountSyncResult(
                account_id=account.id,
                account_name=account.account_name,
                status="skipped",
            )

        try:
            rows = await self._source.fetch_transactions(account, days)
        except Exception as e:
            await self._audit.log_external_service_error(
                service="bank_sync",
                error_message=str(e),
                correlation_id=correlation_id,
            )
            return await self._account_failed(account, e, correlation_id)

        try:
            result = await self._ingestor.ingest(
                account.user_id,
                rows,
                linked_account_id=account.id,
                correlation_id=correlation_id,
            )
            await self._accounts.save_account(account.model_copy(update={
                "last_sync_at": datetime.utcnow(),
                "error_message": None,
            }))
        except DependencyError:
            # Store unavailable: abort the whole run
            raise
        except Exception as e:
            return await self._account_failed(account, e, correlation_id)

        await self._audit.log_account_synced(
            user_id=account.user_id,
            account_id=account.id,
            inserted=result.inserted,
            updated=result.updated,
            correlation_id=correlation_id,
        )
        return AccountSyncResult(
            account_id=account.id,
            account_name=account.account_name,
            status="synced",
            result=result,
        )

    async def _account_failed(
        self,
        account: LinkedAccount,
        error: Exception,
        correlation_id: UUID,
    ) -> AccountSyncResult:
        await self._audit.log_account_sync_failed(
            user_id=account.user_id,
            account_id=account.id,
            error_message=str(error),
            correlation_id=correlation_id,
        )
        return AccountSyncResult(
            account_id=account.id,
            account_name=account.account_name,
            status="failed",
            error_message=str(error),
        )

    async def deactivate_account(
        self,
        user_id: str,
        account_id: UUID,
        reason: str,
    ) -> LinkedAccount:
        """
        Mark an account inactive after the provider reported an item error.

        Raises:
            NotFoundError: If the account doesn't exist
        """
        account = await self._accounts.get_account(user_id, account_id)
        if account is None:
            raise NotFoundError(f"Linked account not found: {account_id}")

        saved = await self._accounts.save_account(account.model_copy(update={
            "is_active": False,
            "error_message": reason,
        }))
        await self._audit.log_account_deactivated(
            user_id=user_id,
            account_id=account_id,
            reason=reason,
        )
        return saved


class AppComponents:
    """Everything an app needs, wired to one set of stores."""

    def __init__(
        self,
        transaction_store: TransactionStore,
        expense_store: ExpenseStore,
        care_recipient_store: CareRecipientStore,
        account_store: LinkedAccountStore,
        audit_logger: AuditLogger,
        sync_flow: Optional[SyncFlow] = None,
        sheets_client: Optional[GoogleSheetsClient] = None,
    ):
        self.transaction_store = transaction_store
        self.expense_store = expense_store
        self.care_recipient_store = care_recipient_store
        self.account_store = account_store
        self.audit_logger = audit_logger
        self.sync_flow = sync_flow
        self.sheets_client = sheets_client

        self.validator = ExpenseDraftValidator(care_recipient_store)
        self.expense_service = ExpenseService(
            expense_store,
            transaction_store=transaction_store,
            validator=self.validator,
            audit_logger=audit_logger,
        )
        self.care_recipient_service = CareRecipientService(care_recipient_store, expense_store)

    def triage_engine(self, user_id: str) -> TriageEngine:
        """Start a triage session for a user."""
        return TriageEngine(
            user_id,
            self.transaction_store,
            self.expense_store,
            validator=self.validator,
            audit_logger=self.audit_logger,
        )


def create_app_components(
    use_storage: bool = True,
    transaction_source: Optional[TransactionSource] = None,
    classifier: Optional[MedicalClassifier] = None,
) -> AppComponents:
    """
    Factory function to create all application components.

    Args:
        use_storage: Whether to initialize Google Sheets storage.
                    Set to False (or leave Sheets unconfigured) to run
                    on the in-memory store.
        transaction_source: Bank-sync collaborator. Without one there
                    is no SyncFlow.
        classifier: Custom classifier (defaults to the built-in rules)

    Returns:
        AppComponents
    """
    sheets_client = None
    stores: Optional[tuple] = None
    audit_storage: Optional[AuditStorageInterface] = None

    if use_storage:
        try:
            sheets_client = GoogleSheetsClient()
            stores = (
                GoogleSheetsTransactionStorage(sheets_client),
                GoogleSheetsExpenseStorage(sheets_client),
                GoogleSheetsCareRecipientStorage(sheets_client),
                GoogleSheetsAccountStorage(sheets_client),
            )
            audit_storage = GoogleSheetsAuditStorage(sheets_client)
        except Exception as e:
            # Storage not configured - continue in memory
            logger.warning("storage_not_configured", error=str(e))
            sheets_client = None
            stores = None

    if stores is None:
        memory = InMemoryStore()
        stores = (memory, memory, memory, memory)
        audit_storage = None  # Local-only logging

    transaction_store, expense_store, care_recipient_store, account_store = stores
    audit_logger = AuditLogger(audit_storage)

    sync_flow = None
    if transaction_source is not None:
        ingestor = TransactionIngestor(
            transaction_store,
            classifier=classifier,
            audit_logger=audit_logger,
        )
        sync_flow = SyncFlow(
            account_store,
            ingestor,
            transaction_source,
            audit_logger=audit_logger,
        )

    return AppComponents(
        transaction_store=transaction_store,
        expense_store=expense_store,
        care_recipient_store=care_recipient_store,
        account_store=account_store,
        audit_logger=audit_logger,
        sync_flow=sync_flow,
        sheets_client=sheets_client,
    )
