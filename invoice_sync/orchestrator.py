"""
Main Orchestrator for Invoice Sync

This module ties together all the components and defines the
end-to-end flows for:
1. Carrier sync (carrier → tax bureau → dedupe → ledger)
2. QR lookup (scanned QR text → parse → tax bureau detail → ledger)

DESIGN DECISION: Every collaborator is passed in explicitly.
create_app_components builds the production wiring; tests build the same
objects with in-memory storage and a mocked HTTP transport.
"""

from typing import Optional
from uuid import UUID

import structlog

from invoice_sync.audit import AuditLogger, create_correlation_id
from invoice_sync.carriers import CarrierStore
from invoice_sync.clock import Clock, local_clock
from invoice_sync.config import get_settings, validate_all_settings
from invoice_sync.models.invoice import InvoiceInfo, Transaction
from invoice_sync.reconciliation import ReconciliationEngine, invoice_to_transaction
from invoice_sync.scheduler import AutoSyncScheduler
from invoice_sync.services.storage import (
    CarrierStorageInterface,
    DuplicateError,
    GoogleSheetsAuditStorage,
    GoogleSheetsCarrierStorage,
    GoogleSheetsClient,
    GoogleSheetsTransactionStorage,
    GoogleSheetsUserStorage,
    InMemoryCarrierStorage,
    InMemoryTransactionStorage,
    InMemoryUserStorage,
    TransactionStorageInterface,
    UserStorageInterface,
)
from invoice_sync.services.tax_bureau import (
    ParseError,
    TaxBureauClient,
    parse_invoice_qr,
)


logger = structlog.get_logger(__name__)


class QRInvoiceFlow:
    """
    Orchestrates the QR lookup flow.

    Flow:
    1. Parse → Decode the QR payload (number, verification code, date)
    2. Lookup → Probe recent months at the tax bureau for the detail
    3. Save (optional) → Add the invoice to the ledger unless already there
    """

    def __init__(
        self,
        client: TaxBureauClient,
        transaction_storage: TransactionStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
        clock: Optional[Clock] = None,
    ):
        self._client = client
        self._transactions = transaction_storage
        self._audit_logger = audit_logger or AuditLogger()
        self._clock = clock or local_clock(get_settings().sync.timezone)

    async def lookup(
        self,
        qr_text: str,
        correlation_id: Optional[UUID] = None,
    ) -> InvoiceInfo:
        """
        Resolve a scanned QR payload to the full invoice.

        Raises:
            InvalidQRFormatError: If the payload is not an e-invoice QR code
            ParseError: If no recent month has the invoice
            TaxBureauError: For client configuration errors
        """
        correlation_id = correlation_id or create_correlation_id()
        qr_data = parse_invoice_qr(qr_text)

        try:
            invoice = await self._client.query_invoice_detail(
                qr_data.invoice_number, qr_data.random_code
            )
        except ParseError:
            await self._audit_logger.log_qr_invoice_looked_up(
                invoice_number=qr_data.invoice_number,
                found=False,
                correlation_id=correlation_id,
            )
            raise

        await self._audit_logger.log_qr_invoice_looked_up(
            invoice_number=qr_data.invoice_number,
            found=True,
            correlation_id=correlation_id,
        )
        return invoice

    async def save_invoice(
        self,
        invoice: InvoiceInfo,
        user_id: Optional[UUID] = None,
    ) -> Optional[Transaction]:
        """
        Add a looked-up invoice to the ledger.

        Returns the new Transaction, or None if the invoice is already recorded.
        """
        existing = await self._transactions.list_invoice_numbers()
        if invoice.invoice_number in existing:
            logger.info("qr_invoice_already_recorded", invoice_number=invoice.invoice_number)
            return None

        transaction = invoice_to_transaction(invoice, self._clock(), user_id=user_id)
        try:
            await self._transactions.save_transactions([transaction])
        except DuplicateError:
            # Another writer recorded it between the check and the save
            logger.info("qr_invoice_already_recorded", invoice_number=invoice.invoice_number)
            return None
        return transaction


class InvoiceSyncApp:
    """All runtime components, wired together."""

    def __init__(
        self,
        client: TaxBureauClient,
        carrier_storage: CarrierStorageInterface,
        transaction_storage: TransactionStorageInterface,
        user_storage: Optional[UserStorageInterface] = None,
        audit_logger: Optional[AuditLogger] = None,
        clock: Optional[Clock] = None,
        sheets_client: Optional[GoogleSheetsClient] = None,
    ):
        settings = get_settings()
        self.audit_logger = audit_logger or AuditLogger()
        self.clock = clock or local_clock(settings.sync.timezone)
        self.client = client
        self.sheets_client = sheets_client

        self.carrier_store = CarrierStore(
            carrier_storage,
            user_storage=user_storage,
            audit_logger=self.audit_logger,
            clock=self.clock,
        )
        self.engine = ReconciliationEngine(
            client=client,
            carrier_store=self.carrier_store,
            transaction_storage=transaction_storage,
            audit_logger=self.audit_logger,
            clock=self.clock,
        )
        self.scheduler = AutoSyncScheduler(
            self.engine.sync_invoices_from_tax_bureau,
            audit_logger=self.audit_logger,
        )
        self.qr_flow = QRInvoiceFlow(
            client=client,
            transaction_storage=transaction_storage,
            audit_logger=self.audit_logger,
            clock=self.clock,
        )

    async def start(self, auto_sync: Optional[bool] = None) -> None:
        """
        Load carriers and optionally start the scheduler.

        Args:
            auto_sync: Start the scheduler. Defaults to the AUTO_SYNC_ENABLED setting.
        """
        await self.carrier_store.load_carriers()
        if auto_sync is None:
            auto_sync = get_settings().app.auto_sync_enabled
        if auto_sync:
            await self.scheduler.enable_auto_sync()

    async def shutdown(self) -> None:
        await self.scheduler.disable_auto_sync()
        await self.client.aclose()


def create_app_components(
    use_storage: bool = True,
) -> InvoiceSyncApp:
    """
    Factory function to create all application components.

    Args:
        use_storage: Whether to initialize Google Sheets storage.
                    Set to False for running without storage; carriers
                    and transactions then live in memory.

    Returns:
        InvoiceSyncApp with every component wired
    """
    status = validate_all_settings()
    if not all(v for k, v in status.items() if not k.endswith("_error")):
        logger.warning("settings_incomplete", **status)

    sheets_client = None
    audit_logger = None

    if use_storage:
        try:
            sheets_client = GoogleSheetsClient()
            carrier_storage = GoogleSheetsCarrierStorage(sheets_client)
            transaction_storage = GoogleSheetsTransactionStorage(sheets_client)
            user_storage = GoogleSheetsUserStorage(sheets_client)
            audit_logger = AuditLogger(GoogleSheetsAuditStorage(sheets_client))
        except Exception as e:
            # Storage not configured - continue in memory
            logger.warning("storage_not_configured", error=str(e))
            sheets_client = None
            use_storage = False

    if not use_storage:
        carrier_storage = InMemoryCarrierStorage()
        transaction_storage = InMemoryTransactionStorage()
        user_storage = InMemoryUserStorage()
        audit_logger = AuditLogger()  # Local-only logging

    return InvoiceSyncApp(
        client=TaxBureauClient(),
        carrier_storage=carrier_storage,
        transaction_storage=transaction_storage,
        user_storage=user_storage,
        audit_logger=audit_logger,
        sheets_client=sheets_client,
    )
