"""
Audit Models for Invoice Sync

Every significant action in the pipeline is logged for audit purposes.
This provides:
1. Traceability of every carrier change and sync cycle
2. Debugging information when the upstream API misbehaves
3. A history the user can inspect in their spreadsheet

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from invoice_sync.clock import utc_now


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Every step of carrier management and reconciliation has its own type.
    """
    # Carrier management
    CARRIER_ADDED = "carrier_added"
    CARRIER_REJECTED = "carrier_rejected"
    CARRIER_REMOVED = "carrier_removed"
    DEFAULT_CARRIER_CHANGED = "default_carrier_changed"

    # Reconciliation
    SYNC_STARTED = "sync_started"
    INVOICES_FETCHED = "invoices_fetched"
    TRANSACTIONS_SAVED = "transactions_saved"
    SYNC_COMPLETED = "sync_completed"
    SYNC_FAILED = "sync_failed"
    SYNC_SKIPPED = "sync_skipped"

    # Scheduler
    AUTO_SYNC_ENABLED = "auto_sync_enabled"
    AUTO_SYNC_DISABLED = "auto_sync_disabled"
    AUTO_SYNC_CIRCUIT_OPENED = "auto_sync_circuit_opened"

    # QR lookup
    QR_INVOICE_LOOKED_UP = "qr_invoice_looked_up"

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
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utc_now,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'carrier', 'sync', 'invoice')"
    )
    entity_id: Optional[UUID] = None

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events in one sync cycle)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(default_factory=dict)

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

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
        [event_id, timestamp, event_type, severity, entity_type, entity_id,
         correlation_id, description, details_json, error_message, is_user_action]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.entity_type or "",
            str(self.entity_id) if self.entity_id else "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details, ensure_ascii=False) if self.details else "",
            self.error_message or "",
            str(self.is_user_action),
        ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.carrier_added(carrier_id, number, name)
        event = AuditEventBuilder.sync_completed(carrier_id, 3, 0, correlation_id)
    """

    @staticmethod
    def carrier_added(
        carrier_id: UUID,
        carrier_number: str,
        carrier_name: str,
        is_default: bool,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CARRIER_ADDED,
            entity_type="carrier",
            entity_id=carrier_id,
            description=f"Carrier added: {carrier_name or carrier_number}",
            details={
                "carrier_number": carrier_number,
                "is_default": is_default,
            },
            is_user_action=True,
        )

    @staticmethod
    def carrier_rejected(
        carrier_number: str,
        reason: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CARRIER_REJECTED,
            severity=AuditSeverity.WARNING,
            entity_type="carrier",
            description=f"Carrier rejected: {reason}",
            details={
                "carrier_number": carrier_number,
                "reason": reason,
            },
            is_user_action=True,
        )

    @staticmethod
    def carrier_removed(
        carrier_id: UUID,
        carrier_number: str,
        was_default: bool,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CARRIER_REMOVED,
            entity_type="carrier",
            entity_id=carrier_id,
            description=f"Carrier removed: {carrier_number}",
            details={
                "carrier_number": carrier_number,
                "was_default": was_default,
            },
            is_user_action=True,
        )

    @staticmethod
    def default_carrier_changed(
        carrier_id: UUID,
        carrier_number: str,
        previous_default_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DEFAULT_CARRIER_CHANGED,
            entity_type="carrier",
            entity_id=carrier_id,
            description=f"Default carrier set to {carrier_number}",
            details={
                "previous_default_id": str(previous_default_id) if previous_default_id else None,
            },
            is_user_action=True,
        )

    @staticmethod
    def sync_started(
        carrier_id: UUID,
        start_date: date,
        end_date: date,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_STARTED,
            entity_type="carrier",
            entity_id=carrier_id,
            correlation_id=correlation_id,
            description=f"Invoice sync started for {start_date} to {end_date}",
            details={
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat(),
            },
        )

    @staticmethod
    def invoices_fetched(
        carrier_id: UUID,
        invoice_count: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INVOICES_FETCHED,
            entity_type="carrier",
            entity_id=carrier_id,
            correlation_id=correlation_id,
            description=f"Fetched {invoice_count} invoices from the tax bureau",
            details={"invoice_count": invoice_count},
        )

    @staticmethod
    def transactions_saved(
        created_count: int,
        duplicate_count: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTIONS_SAVED,
            entity_type="transaction",
            correlation_id=correlation_id,
            description=(
                f"Created {created_count} transactions, "
                f"skipped {duplicate_count} duplicate invoices"
            ),
            details={
                "created_count": created_count,
                "duplicate_count": duplicate_count,
            },
        )

    @staticmethod
    def sync_completed(
        carrier_id: UUID,
        created_count: int,
        duplicate_count: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_COMPLETED,
            entity_type="carrier",
            entity_id=carrier_id,
            correlation_id=correlation_id,
            description="Invoice sync completed",
            details={
                "created_count": created_count,
                "duplicate_count": duplicate_count,
            },
        )

    @staticmethod
    def sync_failed(
        carrier_id: Optional[UUID],
        error_code: str,
        error_message: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="carrier",
            entity_id=carrier_id,
            correlation_id=correlation_id,
            description=f"Invoice sync failed: {error_code}",
            error_code=error_code,
            error_message=error_message,
        )

    @staticmethod
    def sync_skipped(
        carrier_id: UUID,
        reason: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_SKIPPED,
            severity=AuditSeverity.WARNING,
            entity_type="carrier",
            entity_id=carrier_id,
            correlation_id=correlation_id,
            description=f"Invoice sync skipped: {reason}",
            details={"reason": reason},
        )

    @staticmethod
    def auto_sync_toggled(enabled: bool, interval_seconds: float) -> AuditEvent:
        return AuditEvent(
            event_type=(
                AuditEventType.AUTO_SYNC_ENABLED
                if enabled
                else AuditEventType.AUTO_SYNC_DISABLED
            ),
            entity_type="scheduler",
            description=f"Auto sync {'enabled' if enabled else 'disabled'}",
            details={"interval_seconds": interval_seconds},
        )

    @staticmethod
    def circuit_opened(
        consecutive_failures: int,
        cooldown_seconds: float,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.AUTO_SYNC_CIRCUIT_OPENED,
            severity=AuditSeverity.WARNING,
            entity_type="scheduler",
            description=(
                f"Auto sync paused after {consecutive_failures} consecutive failures"
            ),
            details={
                "consecutive_failures": consecutive_failures,
                "cooldown_seconds": cooldown_seconds,
            },
        )

    @staticmethod
    def qr_invoice_looked_up(
        invoice_number: str,
        found: bool,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.QR_INVOICE_LOOKED_UP,
            severity=AuditSeverity.INFO if found else AuditSeverity.WARNING,
            entity_type="invoice",
            correlation_id=correlation_id,
            description=(
                f"QR invoice {invoice_number} "
                f"{'found' if found else 'not found'} at the tax bureau"
            ),
            details={"invoice_number": invoice_number, "found": found},
            is_user_action=True,
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
        correlation_id: UUID
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
