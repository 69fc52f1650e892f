"""
Tests for the auto-sync scheduler.

Sleeping is replaced by FakeSleep, which records each requested delay
and parks the loop forever once enough cycles have run.
"""

import asyncio
from datetime import date
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from invoice_sync.models import AuditEventType, SyncErrorCode, SyncResult, SyncSummary
from invoice_sync.scheduler import AutoSyncScheduler, next_delay


def ok_result() -> SyncResult:
    return SyncResult.ok(SyncSummary(
        carrier_id=uuid4(),
        start_date=date(2024, 3, 1),
        end_date=date(2024, 3, 31),
    ))


def failed_result(code=SyncErrorCode.FETCH_FAILED) -> SyncResult:
    return SyncResult.failed(code, "boom")


class FakeSleep:
    def __init__(self, cycles: int):
        self.cycles = cycles
        self.delays: list[float] = []
        self.parked = asyncio.Event()

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if len(self.delays) > self.cycles:
            self.parked.set()
            await asyncio.Event().wait()


class TestNextDelay:
    """Tests for the delay calculation."""

    def test_no_failures_uses_interval(self):
        assert next_delay(60, 0, 600, 5, 3600) == 60

    def test_exponential_backoff(self):
        assert next_delay(60, 1, 600, 5, 3600) == 120
        assert next_delay(60, 2, 600, 5, 3600) == 240

    def test_backoff_is_capped(self):
        assert next_delay(60, 4, 600, 5, 3600) == 600

    def test_open_circuit_uses_cooldown(self):
        assert next_delay(60, 5, 600, 5, 3600) == 3600
        assert next_delay(60, 9, 600, 5, 3600) == 3600


class TestRunCycle:
    """Tests for failure counting around single cycles."""

    async def test_failure_then_success_resets(self, sync_settings, audit_logger):
        sync = AsyncMock(side_effect=[failed_result(), failed_result(), ok_result()])
        scheduler = AutoSyncScheduler(sync, audit_logger=audit_logger, settings=sync_settings)

        await scheduler.run_cycle()
        await scheduler.run_cycle()
        assert scheduler.consecutive_failures == 2
        assert scheduler.current_delay() == 240

        await scheduler.run_cycle()
        assert scheduler.consecutive_failures == 0
        assert scheduler.current_delay() == 60

    async def test_in_progress_is_not_a_failure(self, sync_settings, audit_logger):
        sync = AsyncMock(return_value=failed_result(SyncErrorCode.SYNC_IN_PROGRESS))
        scheduler = AutoSyncScheduler(sync, audit_logger=audit_logger, settings=sync_settings)

        await scheduler.run_cycle()

        assert scheduler.consecutive_failures == 0

    async def test_exception_counts_as_failure(self, sync_settings, audit_logger):
        sync = AsyncMock(side_effect=RuntimeError("unexpected"))
        scheduler = AutoSyncScheduler(sync, audit_logger=audit_logger, settings=sync_settings)

        result = await scheduler.run_cycle()

        assert result is None
        assert scheduler.consecutive_failures == 1

    async def test_circuit_opens_at_threshold(self, sync_settings, audit_logger, audit_storage):
        sync = AsyncMock(return_value=failed_result())
        scheduler = AutoSyncScheduler(sync, audit_logger=audit_logger, settings=sync_settings)

        for _ in range(4):
            await scheduler.run_cycle()

        assert scheduler.circuit_open
        assert scheduler.current_delay() == sync_settings.circuit_cooldown_seconds
        events = await audit_storage.get_recent_events()
        opened = [e for e in events if e.event_type == AuditEventType.AUTO_SYNC_CIRCUIT_OPENED]
        assert len(opened) == 1

    async def test_half_open_success_closes_circuit(self, sync_settings, audit_logger):
        sync = AsyncMock(side_effect=[failed_result()] * 3 + [ok_result()])
        scheduler = AutoSyncScheduler(sync, audit_logger=audit_logger, settings=sync_settings)

        for _ in range(4):
            await scheduler.run_cycle()

        assert not scheduler.circuit_open
        assert scheduler.current_delay() == sync_settings.auto_sync_interval_seconds


class TestLoop:
    """Tests for enabling and disabling the background task."""

    async def test_loop_applies_backoff(self, sync_settings, audit_logger):
        sync = AsyncMock(side_effect=[failed_result(), failed_result(), ok_result(), failed_result()])
        sleep = FakeSleep(cycles=4)
        scheduler = AutoSyncScheduler(sync, audit_logger=audit_logger, settings=sync_settings, sleep=sleep)

        await scheduler.enable_auto_sync()
        await asyncio.wait_for(sleep.parked.wait(), timeout=5)

        # First cycle waits a full interval
        assert sleep.delays == [60, 120, 240, 60, 120]
        assert sync.await_count == 4

        await scheduler.disable_auto_sync()
        assert not scheduler.is_running

    async def test_custom_interval(self, sync_settings, audit_logger):
        sleep = FakeSleep(cycles=0)
        scheduler = AutoSyncScheduler(
            AsyncMock(return_value=ok_result()),
            audit_logger=audit_logger,
            settings=sync_settings,
            sleep=sleep,
        )

        await scheduler.enable_auto_sync(interval=5)
        await asyncio.wait_for(sleep.parked.wait(), timeout=5)

        assert sleep.delays == [5]
        await scheduler.disable_auto_sync()

    async def test_enable_disable_audit_events(self, sync_settings, audit_logger, audit_storage):
        sleep = FakeSleep(cycles=0)
        scheduler = AutoSyncScheduler(
            AsyncMock(return_value=ok_result()),
            audit_logger=audit_logger,
            settings=sync_settings,
            sleep=sleep,
        )

        await scheduler.enable_auto_sync()
        assert scheduler.is_running
        await scheduler.disable_auto_sync()
        # Disabling twice is a no-op
        await scheduler.disable_auto_sync()

        types = sorted(e.event_type.value for e in await audit_storage.get_recent_events())
        assert types == [
            AuditEventType.AUTO_SYNC_DISABLED.value,
            AuditEventType.AUTO_SYNC_ENABLED.value,
        ]

    async def test_rejects_non_positive_interval(self, sync_settings, audit_logger):
        scheduler = AutoSyncScheduler(AsyncMock(), audit_logger=audit_logger, settings=sync_settings)

        with pytest.raises(ValueError):
            await scheduler.enable_auto_sync(interval=0)

        assert not scheduler.is_running
