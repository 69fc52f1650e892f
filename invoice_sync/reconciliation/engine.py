"""
Invoice Reconciliation Engine

One sync cycle:
1. Resolve the carrier (argument, else the store's default)
2. Resolve the date range (default: one calendar month back from today)
3. Fetch the carrier's invoices from the tax bureau
4. Read the invoice numbers already in the ledger
5. Build a Transaction for every invoice not seen before
6. Save all new transactions in ONE storage call
7. Record the carrier's last sync time

DESIGN DECISION: every call returns a SyncResult instead of raising.
Callers (UI, scheduler) need to know whether the cycle succeeded and why
not; error_message mirrors SyncResult.error_message for display.

IDEMPOTENCE: re-running a cycle over the same range creates nothing,
because every invoice number is already in the ledger.

CONCURRENCY: cycles for the same carrier never overlap. A call arriving
while one is running returns SYNC_IN_PROGRESS immediately.
"""

import asyncio
from datetime import date, datetime
from typing import Optional
from uuid import UUID

import structlog
from pydantic import ValidationError

from invoice_sync.audit import AuditLogger, create_correlation_id
from invoice_sync.carriers import CarrierStore
from invoice_sync.clock import Clock, as_date, local_clock, subtract_months
from invoice_sync.config import SyncSettings, get_settings
from invoice_sync.models.invoice import (
    Carrier,
    SyncErrorCode,
    SyncResult,
    SyncSummary,
    Transaction,
)
from invoice_sync.reconciliation.categorizer import invoice_to_transaction
from invoice_sync.services.storage import StorageError, TransactionStorageInterface
from invoice_sync.services.tax_bureau import TaxBureauClient, TaxBureauError


logger = structlog.get_logger(__name__)

MSG_NO_CARRIER = "Please set up an invoice carrier first"
MSG_IN_PROGRESS = "A sync is already running for this carrier"


class ReconciliationEngine:
    """Turns tax bureau invoices into ledger transactions."""

    def __init__(
        self,
        client: TaxBureauClient,
        carrier_store: CarrierStore,
        transaction_storage: TransactionStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[SyncSettings] = None,
        clock: Optional[Clock] = None,
    ):
        self._client = client
        self._carrier_store = carrier_store
        self._transactions = transaction_storage
        self._audit = audit_logger or AuditLogger()
        self._settings = settings or get_settings().sync
        self._clock = clock or local_clock(self._settings.timezone)

        self._locks: dict[UUID, asyncio.Lock] = {}
        self._running = 0

        self.error_message: Optional[str] = None
        self.last_sync_date: Optional[datetime] = None

    @property
    def is_syncing(self) -> bool:
        return self._running > 0

    def is_carrier_syncing(self, carrier_id: UUID) -> bool:
        lock = self._locks.get(carrier_id)
        return lock is not None and lock.locked()

    async def sync_invoices_from_tax_bureau(
        self,
        carrier: Optional[Carrier] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        correlation_id: Optional[UUID] = None,
    ) -> SyncResult:
        """
        Run one reconciliation cycle.

        Args:
            carrier: Carrier to sync; the store's default when omitted
            start_date: First invoice date; one month before today when omitted
            end_date: Last invoice date; today when omitted
            correlation_id: Groups the audit events of this cycle

        Returns:
            SyncResult with counts on success, or an error code and message
        """
        correlation_id = correlation_id or create_correlation_id()

        target = carrier or self._carrier_store.default_carrier
        if target is None:
            self.error_message = MSG_NO_CARRIER
            await self._audit.log_sync_failed(
                carrier_id=None,
                error_code=SyncErrorCode.NO_CARRIER.value,
                error_message=MSG_NO_CARRIER,
                correlation_id=correlation_id,
            )
            return SyncResult.failed(SyncErrorCode.NO_CARRIER, MSG_NO_CARRIER)

        lock = self._locks.setdefault(target.id, asyncio.Lock())
        if lock.locked():
            logger.info("sync_rejected_in_progress", carrier_id=str(target.id))
            await self._audit.log_sync_skipped(
                carrier_id=target.id,
                reason=MSG_IN_PROGRESS,
                correlation_id=correlation_id,
            )
            return SyncResult.failed(SyncErrorCode.SYNC_IN_PROGRESS, MSG_IN_PROGRESS)

        async with lock:
            self._running += 1
            try:
                return await self._run_cycle(target, start_date, end_date, correlation_id)
            finally:
                self._running -= 1

    def resolve_date_range(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> tuple[date, date]:
        """Fill in missing bounds relative to the injected clock."""
        today = as_date(self._clock())
        end = as_date(end_date) if end_date else today
        start = (
            as_date(start_date)
            if start_date
            else subtract_months(today, self._settings.default_lookback_months)
        )
        return start, end

    async def _run_cycle(
        self,
        carrier: Carrier,
        start_date: Optional[date],
        end_date: Optional[date],
        correlation_id: UUID,
    ) -> SyncResult:
        self.error_message = None
        start, end = self.resolve_date_range(start_date, end_date)
        summary = SyncSummary(carrier_id=carrier.id, start_date=start, end_date=end)

        log = logger.bind(
            carrier_id=str(carrier.id),
            correlation_id=str(correlation_id),
        )
        log.info("invoice_sync_started", start_date=start.isoformat(), end_date=end.isoformat())
        await self._audit.log_sync_started(carrier.id, start, end, correlation_id)

        # Fetch
        try:
            invoices = await self._client.fetch_invoices_by_carrier(
                carrier.carrier_number, start, end
            )
        except TaxBureauError as e:
            await self._audit.log_external_service_error(
                service="tax_bureau",
                error_message=str(e),
                correlation_id=correlation_id,
            )
            return await self._fail(
                carrier, SyncErrorCode.FETCH_FAILED,
                f"Failed to sync invoices: {e}", summary, correlation_id,
            )

        summary.fetched_count = len(invoices)
        await self._audit.log_invoices_fetched(carrier.id, len(invoices), correlation_id)

        # Dedupe and build
        try:
            seen = set(await self._transactions.list_invoice_numbers())
        except StorageError as e:
            return await self._fail(
                carrier, SyncErrorCode.SAVE_FAILED,
                f"Failed to read existing transactions: {e}", summary, correlation_id,
            )

        created_at = self._clock()
        new_transactions: list[Transaction] = []
        duplicate_count = 0
        for invoice in invoices:
            if invoice.invoice_number in seen:
                duplicate_count += 1
                log.debug("duplicate_invoice_skipped", invoice_number=invoice.invoice_number)
                continue
            try:
                transaction = invoice_to_transaction(
                    invoice, created_at, user_id=carrier.user_id
                )
            except ValidationError as e:
                log.warning(
                    "invoice_record_dropped",
                    invoice_number=invoice.invoice_number,
                    error=str(e),
                )
                continue
            seen.add(invoice.invoice_number)
            new_transactions.append(transaction)

        summary.duplicate_count = duplicate_count

        # Save (single atomic batch)
        if new_transactions:
            try:
                await self._transactions.save_transactions(new_transactions)
            except StorageError as e:
                return await self._fail(
                    carrier, SyncErrorCode.SAVE_FAILED,
                    f"Failed to save transactions: {e}", summary, correlation_id,
                )

        summary.created_count = len(new_transactions)
        await self._audit.log_transactions_saved(
            len(new_transactions), duplicate_count, correlation_id
        )

        # Record sync on the carrier
        synced_at = self._clock()
        try:
            await self._carrier_store.record_sync(carrier, synced_at)
        except StorageError as e:
            return await self._fail(
                carrier, SyncErrorCode.CARRIER_UPDATE_FAILED,
                f"Transactions were saved but the carrier could not be updated: {e}",
                summary, correlation_id,
            )

        summary.synced_at = synced_at
        self.last_sync_date = synced_at

        log.info(
            "invoice_sync_completed",
            fetched=summary.fetched_count,
            created=summary.created_count,
            duplicates=summary.duplicate_count,
        )
        await self._audit.log_sync_completed(
            carrier.id, summary.created_count, summary.duplicate_count, correlation_id
        )
        return SyncResult.ok(summary)

    async def _fail(
        self,
        carrier: Carrier,
        code: SyncErrorCode,
        message: str,
        summary: SyncSummary,
        correlation_id: UUID,
    ) -> SyncResult:
        self.error_message = message
        logger.error(
            "invoice_sync_failed",
            carrier_id=str(carrier.id),
            error_code=code.value,
            error=message,
        )
        await self._audit.log_sync_failed(
            carrier_id=carrier.id,
            error_code=code.value,
            error_message=message,
            correlation_id=correlation_id,
        )
        return SyncResult.failed(code, message, summary)
