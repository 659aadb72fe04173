"""
Transaction Ingestion

Turns a batch of provider transactions into stored SyncedTransactions.

GUARANTEES:
- Idempotent: ingesting the same payload twice leaves the same rows.
  Rows are keyed by (user_id, external_transaction_id).
- Never clobbers a decision: on re-ingestion only provider data and the
  classifier output are refreshed. review_status, matched_expense_id and
  is_confirmed_medical are left alone.
- Partial success: one bad row is counted and skipped, the rest of the
  batch continues. Only an unavailable store aborts the batch.

Rows are processed one at a time, in order.
"""

from typing import Any, Optional, Union
from uuid import UUID

import structlog
from pydantic import ValidationError

from caretracker.audit import AuditLogger
from caretracker.classification import MedicalClassifier, normalize_merchant
from caretracker.config import get_settings
from caretracker.models.transaction import (
    IngestionFailure,
    IngestionResult,
    RawProviderTransaction,
    SyncedTransaction,
)
from caretracker.services.storage import (
    DependencyError,
    DuplicateKeyError,
    StorageError,
    TransactionStore,
)


logger = structlog.get_logger(__name__)

# Fields refreshed from the provider on every sync
PROVIDER_FIELDS = frozenset({
    "amount",
    "is_refund",
    "currency_code",
    "transaction_date",
    "authorized_date",
    "description",
    "merchant_name",
    "category",
    "subcategory",
    "payment_channel",
    "pending",
    "location",
    "is_potential_medical",
    "suggested_category",
})

ProviderRow = Union[RawProviderTransaction, dict[str, Any]]


class TransactionIngestor:
    """
    Deduplicating, classifying ingestion of provider transactions.

    Usage:
        ingestor = TransactionIngestor(store)
        result = await ingestor.ingest(user_id, rows, linked_account_id=account.id)
    """

    def __init__(
        self,
        transaction_store: TransactionStore,
        classifier: Optional[MedicalClassifier] = None,
        audit_logger: Optional[AuditLogger] = None,
        default_currency: Optional[str] = None,
    ):
        self._store = transaction_store
        self._classifier = classifier or MedicalClassifier()
        self._audit = audit_logger or AuditLogger()
        self._default_currency = default_currency or get_settings().triage.default_currency

    def _build(
        self,
        user_id: str,
        row: ProviderRow,
        linked_account_id: Optional[UUID],
    ) -> SyncedTransaction:
        """
        Parse one provider row into a new SyncedTransaction.

        Raises:
            ValidationError: If the row is malformed
        """
        raw = (
            row if isinstance(row, RawProviderTransaction)
            else RawProviderTransaction.model_validate(row)
        )

        classification = self._classifier.classify(
            raw.name,
            raw.merchant_name or normalize_merchant(raw.name),
            raw.category,
        )

        return SyncedTransaction(
            user_id=user_id,
            external_transaction_id=raw.external_transaction_id,
            linked_account_id=linked_account_id,
            amount=raw.amount,
            is_refund=raw.is_refund,
            currency_code=raw.currency_code or self._default_currency,
            transaction_date=raw.transaction_date,
            authorized_date=raw.authorized_date,
            description=raw.name,
            merchant_name=raw.merchant_name,
            category=raw.category,
            subcategory=raw.subcategory,
            payment_channel=raw.payment_channel,
            pending=raw.pending,
            location=raw.location,
            is_potential_medical=classification.is_potential_medical,
            suggested_category=classification.suggested_category,
        )

    async def _refresh(
        self,
        existing: SyncedTransaction,
        candidate: SyncedTransaction,
    ) -> SyncedTransaction:
        """Copy provider data onto an existing row, keeping the user's decision."""
        changes = {field: getattr(candidate, field) for field in PROVIDER_FIELDS}
        if candidate.linked_account_id is not None:
            changes["linked_account_id"] = candidate.linked_account_id
        return await self._store.update_transaction(existing.model_copy(update=changes))

    async def _upsert(self, candidate: SyncedTransaction) -> bool:
        """
        Insert or refresh one transaction.

        Returns:
            True if inserted, False if an existing row was updated
        """
        existing = await self._store.get_by_external_id(
            candidate.user_id, candidate.external_transaction_id
        )

        if existing is None:
            try:
                await self._store.insert_transaction(candidate)
                return True
            except DuplicateKeyError:
                # Lost a race with a concurrent sync; fall through to update
                existing = await self._store.get_by_external_id(
                    candidate.user_id, candidate.external_transaction_id
                )
                if existing is None:
                    raise

        await self._refresh(existing, candidate)
        return False

    async def ingest(
        self,
        user_id: str,
        provider_transactions: list[ProviderRow],
        linked_account_id: Optional[UUID] = None,
        correlation_id: Optional[UUID] = None,
    ) -> IngestionResult:
        """
        Ingest a batch of provider transactions for one user.

        Args:
            user_id: Owner of the transactions
            provider_transactions: Raw rows (dicts or RawProviderTransaction)
            linked_account_id: Account the rows were fetched from
            correlation_id: Ties the audit events to one sync run

        Returns:
            IngestionResult with per-row counts and failures

        Raises:
            DependencyError: If the transaction store is unavailable
        """
        result = IngestionResult()

        for row in provider_transactions:
            external_id = _external_id_of(row)

            try:
                candidate = self._build(user_id, row, linked_account_id)
            except ValidationError as e:
                reason = _summarize_validation_error(e)
                result.invalid += 1
                result.failures.append(IngestionFailure(
                    external_transaction_id=external_id,
                    reason=reason,
                    kind="invalid",
                ))
                await self._audit.log_transaction_rejected(
                    user_id=user_id,
                    external_transaction_id=external_id,
                    reason=reason,
                    correlation_id=correlation_id,
                )
                continue

            try:
                inserted = await self._upsert(candidate)
            except DependencyError as e:
                await self._audit.log_error(
                    error_type="transaction_store_unavailable",
                    error_message=str(e),
                    details={"user_id": user_id, "processed": result.processed},
                    correlation_id=correlation_id,
                )
                raise
            except StorageError as e:
                logger.warning(
                    "transaction_store_failed",
                    user_id=user_id,
                    external_transaction_id=candidate.external_transaction_id,
                    error=str(e),
                )
                result.failed += 1
                result.failures.append(IngestionFailure(
                    external_transaction_id=candidate.external_transaction_id,
                    reason=str(e),
                    kind="failed",
                ))
                continue

            if inserted:
                result.inserted += 1
            else:
                result.updated += 1

        await self._audit.log_transactions_ingested(
            user_id=user_id,
            inserted=result.inserted,
            updated=result.updated,
            invalid=result.invalid,
            failed=result.failed,
            correlation_id=correlation_id,
        )

        return result


def _external_id_of(row: Any) -> Optional[str]:
    """Best-effort provider id of a row, for error reports."""
    if isinstance(row, RawProviderTransaction):
        return row.external_transaction_id
    if isinstance(row, dict):
        value = row.get("external_transaction_id") or row.get("transaction_id")
        return str(value) if value is not None else None
    return None


def _summarize_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ())) or "row"
        parts.append(f"{location}: {item.get('msg', 'invalid')}")
    return "; ".join(parts)
