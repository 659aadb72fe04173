"""
Google Sheets Storage Implementation

DESIGN DECISION: Google Sheets is a supported storage backend because:
1. Non-technical caregivers can look at their expenses directly in Sheets
2. No database setup required
3. Built-in backup (Google's infrastructure)
4. Easy to export/migrate later

TRADEOFFS:
- Not suitable for high-volume data (we're fine for one household)
- No transactions: the triage engine compensates instead (see triage.engine)
- Limited query capabilities (we filter in Python)

Each entity lives in its own worksheet with one row per record.
Columns are the model's field names. dict/list fields are JSON-encoded.

Retries belong here, not in the core: API calls are retried with
exponential backoff, and a backend that stays down surfaces as
DependencyError.
"""

import json
from datetime import date, datetime
from typing import Generic, Optional, TypeVar
from uuid import UUID

import gspread
from google.oauth2.service_account import Credentials
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from caretracker.config import get_settings
from caretracker.models.audit import AuditEvent, AuditEventType, AuditSeverity
from caretracker.models.expense import (
    CareRecipient,
    Expense,
    ExpenseCategory,
    ExpenseDraft,
    ReviewStatus,
)
from caretracker.models.transaction import (
    LinkedAccount,
    SyncedTransaction,
    TriageDecision,
    TriageDecisionType,
)
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


# Column mappings
TRANSACTION_COLUMNS = list(SyncedTransaction.model_fields)
EXPENSE_COLUMNS = list(Expense.model_fields)
DECISION_COLUMNS = list(TriageDecision.model_fields)
CARE_RECIPIENT_COLUMNS = list(CareRecipient.model_fields)
ACCOUNT_COLUMNS = list(LinkedAccount.model_fields)

# Column mappings for Audit sheet
AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "user_id",
    "entity_type",
    "entity_id",
    "correlation_id",
    "description",
    "details_json",
    "error_message",
    "is_user_action",
]

sheets_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    retry=retry_if_not_exception_type((NotFoundError, DuplicateKeyError)),
    reraise=True,
)

ModelT = TypeVar("ModelT", bound=BaseModel)


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and provides retry logic for API calls.
    """

    def __init__(self):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._settings = get_settings().google_sheets

    @property
    def settings(self):
        return self._settings

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise DependencyError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise DependencyError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise DependencyError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def get_worksheet(self, title: str, columns: list[str], rows: int = 1000) -> gspread.Worksheet:
        """Get or create a worksheet, writing the header row on creation."""
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            sheet = spreadsheet.add_worksheet(
                title=title,
                rows=rows,
                cols=len(columns),
            )
            sheet.append_row(columns)
        return sheet


class SheetTable(Generic[ModelT]):
    """
    One worksheet holding one pydantic model per row.

    Row numbers returned by records() are 1-based sheet rows
    (row 1 is the header).
    """

    def __init__(
        self,
        client: GoogleSheetsClient,
        title: str,
        model: type[ModelT],
        json_fields: tuple[str, ...] = (),
    ):
        self._client = client
        self._title = title
        self._model = model
        self._columns = list(model.model_fields)
        self._json_fields = json_fields

    def sheet(self) -> gspread.Worksheet:
        return self._client.get_worksheet(self._title, self._columns)

    def to_row(self, record: ModelT) -> list:
        data = record.model_dump(mode="json")
        row = []
        for column in self._columns:
            value = data.get(column)
            if value is None:
                row.append("")
            elif column in self._json_fields:
                row.append(json.dumps(value))
            elif isinstance(value, bool):
                row.append("true" if value else "false")
            else:
                row.append(str(value))
        return row

    def from_row(self, row: list) -> ModelT:
        data = {}
        for idx, column in enumerate(self._columns):
            value = row[idx] if idx < len(row) else ""
            if value == "":
                continue  # Let the model default apply
            if column in self._json_fields:
                value = json.loads(value)
            data[column] = value
        return self._model.model_validate(data)

    def records(self) -> list[tuple[int, ModelT]]:
        """All parseable rows; malformed rows are skipped."""
        try:
            all_rows = self.sheet().get_all_values()[1:]
        except gspread.exceptions.APIError as e:
            raise DependencyError(f"Failed to read {self._title}: {e}")

        records = []
        for row_number, row in enumerate(all_rows, start=2):
            if not row or not row[0]:
                continue
            try:
                records.append((row_number, self.from_row(row)))
            except Exception:
                continue  # Skip malformed rows
        return records

    def append(self, record: ModelT) -> None:
        try:
            self.sheet().append_row(self.to_row(record), value_input_option="RAW")
        except gspread.exceptions.APIError as e:
            raise DependencyError(f"Failed to write {self._title}: {e}")

    def replace(self, row_number: int, record: ModelT) -> None:
        try:
            self.sheet().update(
                range_name=f"A{row_number}",
                values=[self.to_row(record)],
                value_input_option="RAW",
            )
        except gspread.exceptions.APIError as e:
            raise DependencyError(f"Failed to update {self._title}: {e}")

    def delete(self, row_number: int) -> None:
        try:
            self.sheet().delete_rows(row_number)
        except gspread.exceptions.APIError as e:
            raise DependencyError(f"Failed to delete from {self._title}: {e}")


class GoogleSheetsTransactionStorage(TransactionStore):
    """
    Google Sheets implementation of transaction storage.

    Transactions and triage decisions live in two worksheets.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()
        settings = self._client.settings
        self._transactions = SheetTable(
            self._client,
            settings.transactions_sheet_name,
            SyncedTransaction,
            json_fields=("location",),
        )
        self._decisions = SheetTable(
            self._client,
            settings.decisions_sheet_name,
            TriageDecision,
        )

    def _find(self, user_id: str, transaction_id: UUID) -> tuple[int, SyncedTransaction]:
        for row_number, tx in self._transactions.records():
            if tx.id == transaction_id and tx.user_id == user_id:
                return row_number, tx
        raise NotFoundError(f"Transaction not found: {transaction_id}")

    async def get_by_external_id(
        self,
        user_id: str,
        external_transaction_id: str,
    ) -> Optional[SyncedTransaction]:
        for _, tx in self._transactions.records():
            if tx.user_id == user_id and tx.external_transaction_id == external_transaction_id:
                return tx
        return None

    async def get_transaction(
        self,
        user_id: str,
        transaction_id: UUID,
    ) -> Optional[SyncedTransaction]:
        try:
            return self._find(user_id, transaction_id)[1]
        except NotFoundError:
            return None

    @sheets_retry
    async def insert_transaction(self, transaction: SyncedTransaction) -> SyncedTransaction:
        existing = await self.get_by_external_id(
            transaction.user_id, transaction.external_transaction_id
        )
        if existing is not None:
            raise DuplicateKeyError(
                f"Transaction already exists: {transaction.external_transaction_id}"
            )
        self._transactions.append(transaction)
        return transaction

    @sheets_retry
    async def update_transaction(self, transaction: SyncedTransaction) -> SyncedTransaction:
        row_number, _ = self._find(transaction.user_id, transaction.id)
        updated = transaction.model_copy(update={"updated_at": datetime.utcnow()})
        self._transactions.replace(row_number, updated)
        return updated

    async def fetch_pending_transactions(
        self,
        user_id: str,
        limit: int = 50,
    ) -> list[SyncedTransaction]:
        return await self.list_transactions(
            user_id, review_status=ReviewStatus.PENDING, limit=limit
        )

    async def list_transactions(
        self,
        user_id: str,
        review_status: Optional[ReviewStatus] = None,
        potential_medical_only: bool = False,
        limit: int = 100,
    ) -> list[SyncedTransaction]:
        rows = [
            tx for _, tx in self._transactions.records()
            if tx.user_id == user_id
            and (review_status is None or tx.review_status == review_status)
            and (not potential_medical_only or tx.is_potential_medical)
        ]
        rows.sort(key=lambda t: (t.transaction_date, t.created_at), reverse=True)
        return rows[:limit]

    @sheets_retry
    async def _patch(self, user_id: str, transaction_id: UUID, **changes) -> SyncedTransaction:
        row_number, tx = self._find(user_id, transaction_id)
        changes["updated_at"] = datetime.utcnow()
        updated = tx.model_copy(update=changes)
        self._transactions.replace(row_number, updated)
        return updated

    async def mark_transaction_kept(
        self,
        user_id: str,
        transaction_id: UUID,
        expense_id: UUID,
    ) -> SyncedTransaction:
        return await self._patch(
            user_id,
            transaction_id,
            review_status=ReviewStatus.KEPT,
            matched_expense_id=expense_id,
            is_confirmed_medical=True,
        )

    async def set_review_status(
        self,
        user_id: str,
        transaction_id: UUID,
        status: ReviewStatus,
    ) -> SyncedTransaction:
        return await self._patch(user_id, transaction_id, review_status=status)

    async def reset_transaction(
        self,
        user_id: str,
        transaction_id: UUID,
    ) -> SyncedTransaction:
        return await self._patch(
            user_id,
            transaction_id,
            review_status=ReviewStatus.PENDING,
            matched_expense_id=None,
            is_confirmed_medical=False,
        )

    @sheets_retry
    async def persist_decision(self, decision: TriageDecision) -> None:
        for row_number, existing in self._decisions.records():
            if (existing.user_id, existing.transaction_id) == (decision.user_id, decision.transaction_id):
                self._decisions.replace(row_number, decision)
                return
        self._decisions.append(decision)

    async def get_decision(
        self,
        user_id: str,
        transaction_id: UUID,
    ) -> Optional[TriageDecision]:
        for _, decision in self._decisions.records():
            if (decision.user_id, decision.transaction_id) == (user_id, transaction_id):
                return decision
        return None

    @sheets_retry
    async def delete_decision(
        self,
        user_id: str,
        transaction_id: UUID,
    ) -> bool:
        for row_number, decision in self._decisions.records():
            if (decision.user_id, decision.transaction_id) == (user_id, transaction_id):
                self._decisions.delete(row_number)
                return True
        return False

    async def count_decisions_since(
        self,
        user_id: str,
        since: datetime,
        decision: Optional[TriageDecisionType] = None,
    ) -> int:
        return sum(
            1
            for _, d in self._decisions.records()
            if d.user_id == user_id
            and d.decided_at >= since
            and (decision is None or d.decision == decision)
        )


class GoogleSheetsExpenseStorage(ExpenseStore):
    """
    Google Sheets implementation of expense storage.

    Expenses are stored as rows in a worksheet with one expense per row.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()
        self._expenses = SheetTable(
            self._client,
            self._client.settings.expenses_sheet_name,
            Expense,
            json_fields=("receipt_urls",),
        )

    def _find(self, user_id: str, expense_id: UUID) -> Optional[tuple[int, Expense]]:
        for row_number, expense in self._expenses.records():
            if expense.id == expense_id and expense.user_id == user_id:
                return row_number, expense
        return None

    @sheets_retry
    async def create_expense(self, user_id: str, draft: ExpenseDraft) -> Expense:
        expense = Expense.from_draft(user_id, draft)
        self._expenses.append(expense)
        return expense

    async def get_expense(self, user_id: str, expense_id: UUID) -> Optional[Expense]:
        found = self._find(user_id, expense_id)
        return found[1] if found else None

    @sheets_retry
    async def update_expense(self, expense: Expense) -> Expense:
        found = self._find(expense.user_id, expense.id)
        if found is None:
            raise NotFoundError(f"Expense not found: {expense.id}")
        updated = expense.model_copy(update={"updated_at": datetime.utcnow()})
        self._expenses.replace(found[0], updated)
        return updated

    @sheets_retry
    async def delete_expense(self, user_id: str, expense_id: UUID) -> bool:
        found = self._find(user_id, expense_id)
        if found is None:
            return False
        self._expenses.delete(found[0])
        return True

    async def find_by_transaction(
        self,
        user_id: str,
        transaction_id: UUID,
    ) -> Optional[Expense]:
        for _, expense in self._expenses.records():
            if expense.user_id == user_id and expense.synced_transaction_id == transaction_id:
                return expense
        return None

    async def list_expenses(
        self,
        user_id: str,
        category: Optional[ExpenseCategory] = None,
        care_recipient_id: Optional[UUID] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: Optional[int] = None,
    ) -> list[Expense]:
        expenses = []
        for _, expense in self._expenses.records():
            if expense.user_id != user_id:
                continue
            if category and expense.category != category:
                continue
            if care_recipient_id and expense.care_recipient_id != care_recipient_id:
                continue
            if date_from and expense.expense_date < date_from:
                continue
            if date_to and expense.expense_date > date_to:
                continue
            expenses.append(expense)

        # Sort by date descending (newest first)
        expenses.sort(key=lambda e: (e.expense_date, e.created_at), reverse=True)
        return expenses[:limit] if limit is not None else expenses


class GoogleSheetsCareRecipientStorage(CareRecipientStore):
    """Care recipients, one per row."""

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()
        self._recipients = SheetTable(
            self._client,
            self._client.settings.care_recipients_sheet_name,
            CareRecipient,
            json_fields=("conditions",),
        )

    def _find(self, user_id: str, recipient_id: UUID) -> Optional[tuple[int, CareRecipient]]:
        for row_number, recipient in self._recipients.records():
            if recipient.id == recipient_id and recipient.user_id == user_id:
                return row_number, recipient
        return None

    @sheets_retry
    async def save_care_recipient(self, recipient: CareRecipient) -> CareRecipient:
        found = self._find(recipient.user_id, recipient.id)
        if found:
            self._recipients.replace(found[0], recipient)
        else:
            self._recipients.append(recipient)
        return recipient

    async def get_care_recipient(
        self,
        user_id: str,
        recipient_id: UUID,
    ) -> Optional[CareRecipient]:
        found = self._find(user_id, recipient_id)
        return found[1] if found else None

    async def list_care_recipients(self, user_id: str) -> list[CareRecipient]:
        rows = [r for _, r in self._recipients.records() if r.user_id == user_id]
        rows.sort(key=lambda r: r.name.lower())
        return rows

    @sheets_retry
    async def delete_care_recipient(self, user_id: str, recipient_id: UUID) -> bool:
        found = self._find(user_id, recipient_id)
        if found is None:
            return False
        self._recipients.delete(found[0])
        return True


class GoogleSheetsAccountStorage(LinkedAccountStore):
    """Linked financial accounts, one per row."""

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()
        self._accounts = SheetTable(
            self._client,
            self._client.settings.accounts_sheet_name,
            LinkedAccount,
        )

    @sheets_retry
    async def save_account(self, account: LinkedAccount) -> LinkedAccount:
        for row_number, existing in self._accounts.records():
            if existing.id == account.id:
                self._accounts.replace(row_number, account)
                return account
        self._accounts.append(account)
        return account

    async def get_account(self, user_id: str, account_id: UUID) -> Optional[LinkedAccount]:
        for _, account in self._accounts.records():
            if account.id == account_id and account.user_id == user_id:
                return account
        return None

    async def list_accounts(
        self,
        user_id: str,
        active_only: bool = True,
    ) -> list[LinkedAccount]:
        return [
            account for _, account in self._accounts.records()
            if account.user_id == user_id and (account.is_active or not active_only)
        ]


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _sheet(self) -> gspread.Worksheet:
        return self._client.get_worksheet(
            self._client.settings.audit_sheet_name,
            AUDIT_COLUMNS,
            rows=5000,  # More rows for audit log
        )

    def _row_to_event(self, row: list) -> AuditEvent:
        """Convert a spreadsheet row to an AuditEvent."""
        def safe_get(index: int, default: str = "") -> str:
            try:
                return row[index] if row[index] else default
            except IndexError:
                return default

        return AuditEvent(
            event_id=UUID(safe_get(0)),
            timestamp=datetime.fromisoformat(safe_get(1)),
            event_type=AuditEventType(safe_get(2)),
            severity=AuditSeverity(safe_get(3)),
            user_id=safe_get(4) or None,
            entity_type=safe_get(5) or None,
            entity_id=UUID(safe_get(6)) if safe_get(6) else None,
            correlation_id=UUID(safe_get(7)) if safe_get(7) else None,
            description=safe_get(8),
            details=json.loads(safe_get(9)) if safe_get(9) else {},
            error_message=safe_get(10) or None,
            is_user_action=safe_get(11).lower() == "true",
        )

    def _all_events(self) -> list[AuditEvent]:
        try:
            all_rows = self._sheet().get_all_values()[1:]
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")

        events = []
        for row in all_rows:
            if row and row[0]:
                try:
                    events.append(self._row_to_event(row))
                except Exception:
                    continue
        return events

    @sheets_retry
    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        try:
            self._sheet().append_row(event.to_sheets_row(), value_input_option="RAW")
            return True
        except gspread.exceptions.APIError as e:
            raise DependencyError(f"Failed to write audit event: {e}")

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        """Get events by entity."""
        events = [
            e for e in self._all_events()
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Get recent events."""
        events = self._all_events()
        # Sort newest first
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
