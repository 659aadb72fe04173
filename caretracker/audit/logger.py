"""
Audit Logger

DESIGN DECISION: Every sync, triage decision and expense change is logged.
This provides:
1. Complete traceability
2. Debugging capability
3. A trail for repairing broken expense/transaction links
4. User can see history of their decisions

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (doesn't crash the app if logging fails)
- Supports correlation IDs to trace related events
"""

from typing import Optional
from uuid import UUID, uuid4

import structlog

from caretracker.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from caretracker.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage (for persistence and user visibility)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("caretracker.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity == AuditSeverity.CRITICAL:
            self._logger.critical("audit_event", **log_dict)
        elif event.severity == AuditSeverity.ERROR:
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    # -------------------------------------------------------------------------
    # Sync / ingestion
    # -------------------------------------------------------------------------

    async def log_sync_started(
        self,
        user_id: str,
        account_count: int,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.sync_started(
            user_id=user_id,
            account_count=account_count,
            correlation_id=correlation_id,
        ))

    async def log_account_synced(
        self,
        user_id: str,
        account_id: UUID,
        inserted: int,
        updated: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.account_synced(
            user_id=user_id,
            account_id=account_id,
            inserted=inserted,
            updated=updated,
            correlation_id=correlation_id,
        ))

    async def log_account_sync_failed(
        self,
        user_id: str,
        account_id: UUID,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.account_sync_failed(
            user_id=user_id,
            account_id=account_id,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_account_deactivated(
        self,
        user_id: str,
        account_id: UUID,
        reason: str,
    ) -> None:
        await self.log(AuditEventBuilder.account_deactivated(
            user_id=user_id,
            account_id=account_id,
            reason=reason,
        ))

    async def log_transactions_ingested(
        self,
        user_id: str,
        inserted: int,
        updated: int,
        invalid: int,
        failed: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log the summary of one ingestion batch."""
        await self.log(AuditEventBuilder.transactions_ingested(
            user_id=user_id,
            inserted=inserted,
            updated=updated,
            invalid=invalid,
            failed=failed,
            correlation_id=correlation_id,
        ))

    async def log_transaction_rejected(
        self,
        user_id: str,
        external_transaction_id: Optional[str],
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log one provider row that was dropped."""
        await self.log(AuditEventBuilder.transaction_rejected(
            user_id=user_id,
            external_transaction_id=external_transaction_id,
            reason=reason,
            correlation_id=correlation_id,
        ))

    # -------------------------------------------------------------------------
    # Triage
    # -------------------------------------------------------------------------

    async def log_transaction_kept(
        self,
        user_id: str,
        transaction_id: UUID,
        expense_id: UUID,
        amount: str,
    ) -> None:
        await self.log(AuditEventBuilder.transaction_kept(
            user_id=user_id,
            transaction_id=transaction_id,
            expense_id=expense_id,
            amount=amount,
        ))

    async def log_transaction_skipped(
        self,
        user_id: str,
        transaction_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.transaction_skipped(
            user_id=user_id,
            transaction_id=transaction_id,
        ))

    async def log_decision_undone(
        self,
        user_id: str,
        transaction_id: UUID,
        decision: str,
        expense_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.decision_undone(
            user_id=user_id,
            transaction_id=transaction_id,
            decision=decision,
            expense_id=expense_id,
        ))

    async def log_link_compensated(
        self,
        user_id: str,
        transaction_id: UUID,
        expense_id: UUID,
        error_message: str,
    ) -> None:
        await self.log(AuditEventBuilder.link_compensated(
            user_id=user_id,
            transaction_id=transaction_id,
            expense_id=expense_id,
            error_message=error_message,
        ))

    async def log_inconsistent_state(
        self,
        user_id: str,
        transaction_id: UUID,
        expense_id: Optional[UUID],
        error_message: str,
    ) -> None:
        """Log a broken expense/transaction link that needs repair."""
        await self.log(AuditEventBuilder.inconsistent_state(
            user_id=user_id,
            transaction_id=transaction_id,
            expense_id=expense_id,
            error_message=error_message,
        ))

    async def log_reconciliation_completed(
        self,
        user_id: str,
        orphans: int,
        relinked: int,
        removed: int,
    ) -> None:
        await self.log(AuditEventBuilder.reconciliation_completed(
            user_id=user_id,
            orphans=orphans,
            relinked=relinked,
            removed=removed,
        ))

    # -------------------------------------------------------------------------
    # Expenses
    # -------------------------------------------------------------------------

    async def log_expense_created(
        self,
        user_id: str,
        expense_id: UUID,
        vendor: Optional[str],
        amount: str,
    ) -> None:
        await self.log(AuditEventBuilder.expense_created(
            user_id=user_id,
            expense_id=expense_id,
            vendor=vendor,
            amount=amount,
        ))

    async def log_expense_updated(
        self,
        user_id: str,
        expense_id: UUID,
        fields: list[str],
    ) -> None:
        await self.log(AuditEventBuilder.expense_updated(
            user_id=user_id,
            expense_id=expense_id,
            fields=fields,
        ))

    async def log_expense_deleted(
        self,
        user_id: str,
        expense_id: UUID,
        unlinked_transaction_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.expense_deleted(
            user_id=user_id,
            expense_id=expense_id,
            unlinked_transaction_id=unlinked_transaction_id,
        ))

    # -------------------------------------------------------------------------
    # Errors
    # -------------------------------------------------------------------------

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))

    async def log_external_service_error(
        self,
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log external service error."""
        await self.log(AuditEventBuilder.external_service_error(
            service=service,
            error_message=error_message,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new user action (e.g., a bank sync).
    Pass it through all subsequent operations.
    """
    return uuid4()
