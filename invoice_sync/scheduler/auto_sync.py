"""
Auto-Sync Scheduler

Runs the reconciliation cycle unattended on a repeating asyncio task.

Delay before the next cycle:
- after a success: the configured interval
- after n consecutive failures: interval * 2**n, capped at max_backoff
- after threshold consecutive failures: the circuit opens and the delay
  is the cool-down; the next cycle is a half-open probe

A successful cycle resets the failure count and closes the circuit.
A cycle rejected because another sync is running counts as neither.

The first cycle runs one interval after enabling.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from invoice_sync.audit import AuditLogger
from invoice_sync.config import SyncSettings, get_settings
from invoice_sync.models.invoice import SyncErrorCode, SyncResult


logger = structlog.get_logger(__name__)

SyncCallable = Callable[[], Awaitable[SyncResult]]
Sleep = Callable[[float], Awaitable[None]]


def next_delay(
    interval: float,
    consecutive_failures: int,
    max_backoff: float,
    threshold: int,
    cooldown: float,
) -> float:
    """Seconds to wait before the next cycle."""
    if consecutive_failures >= threshold:
        return cooldown
    if consecutive_failures <= 0:
        return interval
    return min(interval * 2 ** consecutive_failures, max_backoff)


class AutoSyncScheduler:
    """Fixed-interval sync loop with exponential backoff and a circuit breaker."""

    def __init__(
        self,
        sync: SyncCallable,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[SyncSettings] = None,
        sleep: Optional[Sleep] = None,
    ):
        """
        Args:
            sync: Coroutine function running one cycle, usually
                  ReconciliationEngine.sync_invoices_from_tax_bureau
            audit_logger: Receives enable/disable and circuit events
            settings: Interval, backoff and circuit configuration
            sleep: Replaces asyncio.sleep (tests)
        """
        self._sync = sync
        self._audit = audit_logger or AuditLogger()
        self._settings = settings or get_settings().sync
        self._sleep = sleep or asyncio.sleep

        self._task: Optional[asyncio.Task] = None
        self.interval: float = self._settings.auto_sync_interval_seconds
        self.consecutive_failures = 0
        self.last_result: Optional[SyncResult] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def circuit_open(self) -> bool:
        return self.consecutive_failures >= self._settings.circuit_breaker_threshold

    def current_delay(self) -> float:
        return next_delay(
            interval=self.interval,
            consecutive_failures=self.consecutive_failures,
            max_backoff=self._settings.max_backoff_seconds,
            threshold=self._settings.circuit_breaker_threshold,
            cooldown=self._settings.circuit_cooldown_seconds,
        )

    async def enable_auto_sync(self, interval: Optional[float] = None) -> None:
        """Start (or restart) the loop. Must be called from a running event loop."""
        if interval is not None and interval <= 0:
            raise ValueError("Auto-sync interval must be positive")

        if self.is_running:
            await self._cancel_task()

        self.interval = interval or self._settings.auto_sync_interval_seconds
        self.consecutive_failures = 0
        self._task = asyncio.create_task(self._run())

        logger.info("auto_sync_enabled", interval_seconds=self.interval)
        await self._audit.log_auto_sync_toggled(True, self.interval)

    async def disable_auto_sync(self) -> None:
        """Stop the loop. A cycle already in flight is cancelled."""
        if not self.is_running:
            return
        await self._cancel_task()
        logger.info("auto_sync_disabled")
        await self._audit.log_auto_sync_toggled(False, self.interval)

    async def run_cycle(self) -> Optional[SyncResult]:
        """
        Run one cycle and update the failure count.

        Unexpected exceptions from the sync callable count as failures so
        the loop keeps running.
        """
        try:
            result = await self._sync()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("auto_sync_cycle_crashed", error=str(e))
            await self._audit.log_error("auto_sync_cycle_crashed", str(e))
            self._record_failure()
            return None

        self.last_result = result
        if result.success:
            if self.consecutive_failures:
                logger.info("auto_sync_recovered", after_failures=self.consecutive_failures)
            self.consecutive_failures = 0
        elif result.error_code == SyncErrorCode.SYNC_IN_PROGRESS:
            logger.info("auto_sync_cycle_skipped")
        else:
            self._record_failure()
            if self.consecutive_failures == self._settings.circuit_breaker_threshold:
                await self._audit.log_circuit_opened(
                    self.consecutive_failures,
                    self._settings.circuit_cooldown_seconds,
                )
        return result

    def _record_failure(self) -> None:
        self.consecutive_failures += 1
        logger.warning(
            "auto_sync_cycle_failed",
            consecutive_failures=self.consecutive_failures,
            next_delay_seconds=self.current_delay(),
        )

    async def _run(self) -> None:
        while True:
            await self._sleep(self.current_delay())
            await self.run_cycle()

    async def _cancel_task(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
