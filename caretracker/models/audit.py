"""
Audit Models for CareTracker

Every significant action in the system is logged for audit purposes.
This provides:
1. Complete traceability of every sync and triage decision
2. Debugging information when things go wrong
3. A trail for repairing broken expense/transaction links
4. Ability to reconstruct history

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Every step in the sync → triage → expense pipeline has its own event type.
    """
    # Bank sync / ingestion
    SYNC_STARTED = "sync_started"
    ACCOUNT_SYNCED = "account_synced"
    ACCOUNT_SYNC_FAILED = "account_sync_failed"
    ACCOUNT_DEACTIVATED = "account_deactivated"
    TRANSACTIONS_INGESTED = "transactions_ingested"
    TRANSACTION_REJECTED = "transaction_rejected"

    # Triage decisions
    TRANSACTION_KEPT = "transaction_kept"
    TRANSACTION_SKIPPED = "transaction_skipped"
    DECISION_UNDONE = "decision_undone"

    # Expenses
    EXPENSE_CREATED = "expense_created"
    EXPENSE_UPDATED = "expense_updated"
    EXPENSE_DELETED = "expense_deleted"

    # Link integrity
    LINK_COMPENSATED = "link_compensated"
    INCONSISTENT_STATE = "inconsistent_state"
    RECONCILIATION_COMPLETED = "reconciliation_completed"

    # System events
    SYSTEM_ERROR = "system_error"
    EXTERNAL_SERVICE_ERROR = "external_service_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=datetime.utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Tenant
    user_id: Optional[str] = Field(
        default=None,
        description="User the event belongs to"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'transaction', 'expense', 'account')"
    )
    entity_id: Optional[UUID] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events in one sync)"
    )

    # Event details
    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    # Additional data (event-specific)
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    # User action tracking
    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "user_id": self.user_id,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }

    def to_sheets_row(self) -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, user_id, entity_type,
         entity_id, correlation_id, description, details_json, error_message,
         is_user_action]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.user_id or "",
            self.entity_type or "",
            str(self.entity_id) if self.entity_id else "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details, default=str) if self.details else "",
            self.error_message or "",
            str(self.is_user_action),
        ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.transaction_kept(user_id, tx_id, expense_id)
        event = AuditEventBuilder.transactions_ingested(user_id, result)
    """

    @staticmethod
    def sync_started(
        user_id: str,
        account_count: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_STARTED,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"Bank sync started for {account_count} account(s)",
            details={"account_count": account_count},
        )

    @staticmethod
    def account_synced(
        user_id: str,
        account_id: UUID,
        inserted: int,
        updated: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACCOUNT_SYNCED,
            user_id=user_id,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description=f"Account synced: {inserted} new, {updated} updated",
            details={"inserted": inserted, "updated": updated},
        )

    @staticmethod
    def account_sync_failed(
        user_id: str,
        account_id: UUID,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACCOUNT_SYNC_FAILED,
            severity=AuditSeverity.ERROR,
            user_id=user_id,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description="Account sync failed",
            error_message=error_message,
        )

    @staticmethod
    def account_deactivated(
        user_id: str,
        account_id: UUID,
        reason: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACCOUNT_DEACTIVATED,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            entity_type="account",
            entity_id=account_id,
            description="Linked account deactivated",
            details={"reason": reason},
        )

    @staticmethod
    def transactions_ingested(
        user_id: str,
        inserted: int,
        updated: int,
        invalid: int,
        failed: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        severity = AuditSeverity.WARNING if (invalid or failed) else AuditSeverity.INFO
        return AuditEvent(
            event_type=AuditEventType.TRANSACTIONS_INGESTED,
            severity=severity,
            user_id=user_id,
            correlation_id=correlation_id,
            description=(
                f"Ingested transactions: {inserted} inserted, {updated} updated, "
                f"{invalid} invalid, {failed} failed"
            ),
            details={
                "inserted": inserted,
                "updated": updated,
                "invalid": invalid,
                "failed": failed,
            },
        )

    @staticmethod
    def transaction_rejected(
        user_id: str,
        external_transaction_id: Optional[str],
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_REJECTED,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            entity_type="transaction",
            correlation_id=correlation_id,
            description="Provider transaction rejected during ingestion",
            details={
                "external_transaction_id": external_transaction_id,
                "reason": reason,
            },
        )

    @staticmethod
    def transaction_kept(
        user_id: str,
        transaction_id: UUID,
        expense_id: UUID,
        amount: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_KEPT,
            user_id=user_id,
            entity_type="transaction",
            entity_id=transaction_id,
            description=f"Transaction kept as expense (${amount})",
            details={"expense_id": str(expense_id), "amount": amount},
            is_user_action=True,
        )

    @staticmethod
    def transaction_skipped(
        user_id: str,
        transaction_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_SKIPPED,
            user_id=user_id,
            entity_type="transaction",
            entity_id=transaction_id,
            description="Transaction skipped",
            is_user_action=True,
        )

    @staticmethod
    def decision_undone(
        user_id: str,
        transaction_id: UUID,
        decision: str,
        expense_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DECISION_UNDONE,
            user_id=user_id,
            entity_type="transaction",
            entity_id=transaction_id,
            description=f"Undid '{decision}' decision",
            details={
                "decision": decision,
                "expense_id": str(expense_id) if expense_id else None,
            },
            is_user_action=True,
        )

    @staticmethod
    def expense_created(
        user_id: str,
        expense_id: UUID,
        vendor: Optional[str],
        amount: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_CREATED,
            user_id=user_id,
            entity_type="expense",
            entity_id=expense_id,
            description=f"Expense saved: {vendor or 'unknown vendor'} - ${amount}",
            details={"vendor": vendor, "amount": amount},
        )

    @staticmethod
    def expense_updated(
        user_id: str,
        expense_id: UUID,
        fields: list[str],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_UPDATED,
            user_id=user_id,
            entity_type="expense",
            entity_id=expense_id,
            description=f"Expense updated ({len(fields)} field(s))",
            details={"fields": fields},
            is_user_action=True,
        )

    @staticmethod
    def expense_deleted(
        user_id: str,
        expense_id: UUID,
        unlinked_transaction_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_DELETED,
            user_id=user_id,
            entity_type="expense",
            entity_id=expense_id,
            description="Expense deleted",
            details={
                "unlinked_transaction_id": (
                    str(unlinked_transaction_id) if unlinked_transaction_id else None
                ),
            },
            is_user_action=True,
        )

    @staticmethod
    def link_compensated(
        user_id: str,
        transaction_id: UUID,
        expense_id: UUID,
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LINK_COMPENSATED,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            entity_type="transaction",
            entity_id=transaction_id,
            description="Keep failed after expense was created; expense removed again",
            details={"expense_id": str(expense_id)},
            error_message=error_message,
        )

    @staticmethod
    def inconsistent_state(
        user_id: str,
        transaction_id: UUID,
        expense_id: Optional[UUID],
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INCONSISTENT_STATE,
            severity=AuditSeverity.CRITICAL,
            user_id=user_id,
            entity_type="transaction",
            entity_id=transaction_id,
            description="Expense and transaction are out of sync",
            details={"expense_id": str(expense_id) if expense_id else None},
            error_message=error_message,
        )

    @staticmethod
    def reconciliation_completed(
        user_id: str,
        orphans: int,
        relinked: int,
        removed: int,
    ) -> AuditEvent:
        severity = AuditSeverity.WARNING if orphans else AuditSeverity.INFO
        return AuditEvent(
            event_type=AuditEventType.RECONCILIATION_COMPLETED,
            severity=severity,
            user_id=user_id,
            description=f"Reconciliation found {orphans} orphaned expense(s)",
            details={"orphans": orphans, "relinked": relinked, "removed": removed},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )

    @staticmethod
    def external_service_error(
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_SERVICE_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"External service error: {service}",
            error_message=error_message,
            details={
                "service": service,
            },
            correlation_id=correlation_id,
        )
