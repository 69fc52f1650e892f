"""
Audit Logger

DESIGN DECISION: Every significant action in the pipeline is logged.
This provides:
1. Traceability of what each sync cycle fetched and wrote
2. Debugging capability when the tax bureau misbehaves
3. A history the user can read in the AuditLog sheet

The audit logger:
- Is async so it can share the event loop with the sync engine
- Gracefully handles storage failures (an audit write never fails a sync)
- Supports correlation IDs to trace the events of one sync cycle
"""

from typing import Optional
from uuid import UUID, uuid4

import structlog

from invoice_sync.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from invoice_sync.services.storage import AuditStorageInterface


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
        structlog.processors.JSONRenderer(ensure_ascii=False)
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
        self._logger = structlog.get_logger(__name__)

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Audit persistence must not break the caller
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    # ------------------------------------------------------------------
    # Carriers
    # ------------------------------------------------------------------

    async def log_carrier_added(
        self,
        carrier_id: UUID,
        carrier_number: str,
        carrier_name: str,
        is_default: bool,
    ) -> None:
        await self.log(AuditEventBuilder.carrier_added(
            carrier_id=carrier_id,
            carrier_number=carrier_number,
            carrier_name=carrier_name,
            is_default=is_default,
        ))

    async def log_carrier_rejected(self, carrier_number: str, reason: str) -> None:
        await self.log(AuditEventBuilder.carrier_rejected(
            carrier_number=carrier_number,
            reason=reason,
        ))

    async def log_carrier_removed(
        self,
        carrier_id: UUID,
        carrier_number: str,
        was_default: bool,
    ) -> None:
        await self.log(AuditEventBuilder.carrier_removed(
            carrier_id=carrier_id,
            carrier_number=carrier_number,
            was_default=was_default,
        ))

    async def log_default_carrier_changed(
        self,
        carrier_id: UUID,
        carrier_number: str,
        previous_default_id: Optional[UUID],
    ) -> None:
        await self.log(AuditEventBuilder.default_carrier_changed(
            carrier_id=carrier_id,
            carrier_number=carrier_number,
            previous_default_id=previous_default_id,
        ))

    # ------------------------------------------------------------------
    # Sync cycle
    # ------------------------------------------------------------------

    async def log_sync_started(self, carrier_id, start_date, end_date, correlation_id) -> None:
        """Log the start of a sync cycle with its resolved date range."""
        await self.log(AuditEventBuilder.sync_started(
            carrier_id=carrier_id,
            start_date=start_date,
            end_date=end_date,
            correlation_id=correlation_id,
        ))

    async def log_invoices_fetched(self, carrier_id, invoice_count, correlation_id) -> None:
        await self.log(AuditEventBuilder.invoices_fetched(
            carrier_id=carrier_id,
            invoice_count=invoice_count,
            correlation_id=correlation_id,
        ))

    async def log_transactions_saved(self, created_count, duplicate_count, correlation_id) -> None:
        await self.log(AuditEventBuilder.transactions_saved(
            created_count=created_count,
            duplicate_count=duplicate_count,
            correlation_id=correlation_id,
        ))

    async def log_sync_completed(
        self,
        carrier_id: UUID,
        created_count: int,
        duplicate_count: int,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.sync_completed(
            carrier_id=carrier_id,
            created_count=created_count,
            duplicate_count=duplicate_count,
            correlation_id=correlation_id,
        ))

    async def log_sync_failed(
        self,
        carrier_id: Optional[UUID],
        error_code: str,
        error_message: str,
        correlation_id: UUID,
    ) -> None:
        """Log a sync cycle that stopped before completing."""
        await self.log(AuditEventBuilder.sync_failed(
            carrier_id=carrier_id,
            error_code=error_code,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_sync_skipped(self, carrier_id: UUID, reason: str, correlation_id: UUID) -> None:
        await self.log(AuditEventBuilder.sync_skipped(
            carrier_id=carrier_id,
            reason=reason,
            correlation_id=correlation_id,
        ))

    # ------------------------------------------------------------------
    # Scheduler
    # ------------------------------------------------------------------

    async def log_auto_sync_toggled(self, enabled: bool, interval_seconds: float) -> None:
        await self.log(AuditEventBuilder.auto_sync_toggled(
            enabled=enabled,
            interval_seconds=interval_seconds,
        ))

    async def log_circuit_opened(
        self,
        consecutive_failures: int,
        cooldown_seconds: float,
    ) -> None:
        await self.log(AuditEventBuilder.circuit_opened(
            consecutive_failures=consecutive_failures,
            cooldown_seconds=cooldown_seconds,
        ))

    # ------------------------------------------------------------------
    # QR lookups and errors
    # ------------------------------------------------------------------

    async def log_qr_invoice_looked_up(
        self,
        invoice_number: str,
        found: bool,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.qr_invoice_looked_up(
            invoice_number=invoice_number,
            found=found,
            correlation_id=correlation_id,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        event = AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_external_service_error(
        self,
        service: str,
        error_message: str,
        correlation_id: UUID,
    ) -> None:
        """Log external service error."""
        event = AuditEventBuilder.external_service_error(
            service=service,
            error_message=error_message,
            correlation_id=correlation_id,
        )
        await self.log(event)


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a sync cycle or QR lookup.
    Pass it through all subsequent operations.
    """
    return uuid4()
