"""
Tests for the audit logger.
"""

from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

from invoice_sync.audit import AuditLogger, create_correlation_id
from invoice_sync.models import AuditEvent, AuditEventType, AuditSeverity
from invoice_sync.services.storage import InMemoryAuditStorage, StorageError


def make_event(severity: AuditSeverity) -> AuditEvent:
    return AuditEvent(
        event_type=AuditEventType.SYSTEM_ERROR,
        severity=severity,
        description="something happened",
    )


class TestAuditLogger:
    """Tests for local logging and persistence."""

    async def test_severity_routing(self):
        audit = AuditLogger()
        audit._logger = MagicMock()

        await audit.log(make_event(AuditSeverity.CRITICAL))
        await audit.log(make_event(AuditSeverity.WARNING))
        await audit.log(make_event(AuditSeverity.DEBUG))

        assert audit._logger.error.call_count == 1
        assert audit._logger.warning.call_count == 1
        assert audit._logger.info.call_count == 1

    async def test_without_storage_succeeds(self):
        assert await AuditLogger().log(make_event(AuditSeverity.INFO)) is True

    async def test_persists_event(self):
        storage = InMemoryAuditStorage()
        audit = AuditLogger(storage)

        assert await audit.log(make_event(AuditSeverity.INFO))
        assert len(await storage.get_recent_events()) == 1

    async def test_storage_failure_does_not_raise(self):
        storage = InMemoryAuditStorage()
        storage.append_event = AsyncMock(side_effect=StorageError("sheet gone"))
        audit = AuditLogger(storage)
        audit._logger = MagicMock()

        assert await audit.log(make_event(AuditSeverity.INFO)) is False
        audit._logger.error.assert_called_once()
        assert audit._logger.error.call_args.args[0] == "audit_storage_failed"

    async def test_helpers_share_correlation_id(self):
        storage = InMemoryAuditStorage()
        audit = AuditLogger(storage)
        correlation_id = create_correlation_id()
        carrier_id = uuid4()

        await audit.log_sync_failed(carrier_id, "fetch_failed", "HTTP error: 500", correlation_id)
        await audit.log_external_service_error("tax_bureau", "HTTP error: 500", correlation_id)
        await audit.log_error("unexpected", "boom")

        events = await storage.get_events_by_correlation_id(correlation_id)
        assert {e.event_type for e in events} == {
            AuditEventType.SYNC_FAILED,
            AuditEventType.EXTERNAL_SERVICE_ERROR,
        }
        assert len(await storage.get_recent_events()) == 3
