"""
Google Sheets Storage Implementation

DESIGN DECISION: Each table is one sheet of a single spreadsheet, so the
owner can read and correct synced rows in Sheets itself.

TRADEOFFS:
- A personal ledger is a few thousand rows a year; nothing here is paged
- No transactions. Every batch is written with a single API call
  (append_rows / update), which the Sheets API applies as a unit.
- Date filters and the invoice-number dedupe run in Python over full reads
"""

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

import gspread
import structlog
from google.oauth2.service_account import Credentials
from tenacity import (
    retry,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from invoice_sync.config import GoogleSheetsSettings, get_settings
from invoice_sync.models.audit import AuditEvent, AuditEventType, AuditSeverity
from invoice_sync.models.invoice import (
    Carrier,
    CarrierType,
    InputMethod,
    Transaction,
    TransactionCategory,
    TransactionStatus,
    TransactionType,
    User,
)
from invoice_sync.services.storage.interface import (
    AuditStorageInterface,
    CarrierStorageInterface,
    ConnectionError,
    DuplicateError,
    NotFoundError,
    StorageError,
    TransactionStorageInterface,
    UserStorageInterface,
    duplicate_invoice_numbers,
)


logger = structlog.get_logger(__name__)

CARRIER_COLUMNS = [
    "id",
    "user_id",
    "carrier_type",
    "carrier_number",
    "carrier_name",
    "is_default",
    "is_active",
    "last_sync_date",
    "created_at",
    "updated_at",
]

TRANSACTION_COLUMNS = [
    "id",
    "user_id",
    "created_at",
    "updated_at",
    "date",
    "transaction_type",
    "category",
    "amount",
    "description",
    "status",
    "input_method",
    "is_auto_categorized",
    "invoice_number",
    "invoice_date",
    "merchant_name",
    "tax_amount",
    "notes",
    "tags_json",
]

USER_COLUMNS = [
    "id",
    "display_name",
]

AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "entity_type",
    "entity_id",
    "correlation_id",
    "description",
    "details_json",
    "error_message",
    "is_user_action",
]

INVOICE_NUMBER_COLUMN = TRANSACTION_COLUMNS.index("invoice_number") + 1

_sheets_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    retry=retry_if_not_exception_type(DuplicateError),
    reraise=True,
)


def _cell(row: list, index: int, default: str = "") -> str:
    """Read a cell, tolerating short rows."""
    try:
        return row[index] if row[index] else default
    except IndexError:
        return default


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and provides retry logic for API calls.
    """

    def __init__(self, settings: Optional[GoogleSheetsSettings] = None):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._settings = settings or get_settings().google_sheets

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise ConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise ConnectionError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise ConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def _get_or_create_sheet(
        self,
        title: str,
        columns: list[str],
        rows: int = 1000,
    ) -> gspread.Worksheet:
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            # Create the sheet with headers
            sheet = spreadsheet.add_worksheet(
                title=title,
                rows=rows,
                cols=len(columns),
            )
            sheet.append_row(columns)
        return sheet

    def get_carriers_sheet(self) -> gspread.Worksheet:
        return self._get_or_create_sheet(
            self._settings.carriers_sheet_name, CARRIER_COLUMNS, rows=100
        )

    def get_transactions_sheet(self) -> gspread.Worksheet:
        return self._get_or_create_sheet(
            self._settings.transactions_sheet_name, TRANSACTION_COLUMNS
        )

    def get_users_sheet(self) -> gspread.Worksheet:
        return self._get_or_create_sheet(
            self._settings.users_sheet_name, USER_COLUMNS, rows=10
        )

    def get_audit_sheet(self) -> gspread.Worksheet:
        # More rows for audit log
        return self._get_or_create_sheet(
            self._settings.audit_sheet_name, AUDIT_COLUMNS, rows=5000
        )


class GoogleSheetsCarrierStorage(CarrierStorageInterface):
    """
    Google Sheets implementation of carrier storage.

    save_carriers rewrites the whole table in one update call, so the
    default flag never ends up set on two rows.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _carrier_to_row(self, carrier: Carrier) -> list:
        return [
            str(carrier.id),
            str(carrier.user_id) if carrier.user_id else "",
            carrier.carrier_type.value,
            carrier.carrier_number,
            carrier.carrier_name,
            str(carrier.is_default),
            str(carrier.is_active),
            carrier.last_sync_date.isoformat() if carrier.last_sync_date else "",
            carrier.created_at.isoformat(),
            carrier.updated_at.isoformat(),
        ]

    def _row_to_carrier(self, row: list) -> Carrier:
        return Carrier(
            id=UUID(_cell(row, 0)),
            user_id=UUID(_cell(row, 1)) if _cell(row, 1) else None,
            carrier_type=CarrierType(_cell(row, 2, CarrierType.MOBILE_BARCODE.value)),
            carrier_number=_cell(row, 3),
            carrier_name=_cell(row, 4),
            is_default=_cell(row, 5).lower() == "true",
            is_active=_cell(row, 6, "True").lower() == "true",
            last_sync_date=datetime.fromisoformat(_cell(row, 7)) if _cell(row, 7) else None,
            created_at=datetime.fromisoformat(_cell(row, 8)),
            updated_at=datetime.fromisoformat(_cell(row, 9)),
        )

    def _read_rows(self, sheet: gspread.Worksheet) -> list[list]:
        # Skip header and empty rows
        return [row for row in sheet.get_all_values()[1:] if row and row[0]]

    async def list_carriers(self, user_id: Optional[UUID] = None) -> list[Carrier]:
        try:
            sheet = self._client.get_carriers_sheet()
            carriers = []
            for row in self._read_rows(sheet):
                try:
                    carrier = self._row_to_carrier(row)
                except Exception:
                    continue  # Skip malformed rows
                if user_id is None or carrier.user_id == user_id:
                    carriers.append(carrier)
            return carriers
        except Exception as e:
            raise StorageError(f"Failed to list carriers: {e}")

    async def get_carrier(self, carrier_id: UUID) -> Optional[Carrier]:
        for carrier in await self.list_carriers():
            if carrier.id == carrier_id:
                return carrier
        return None

    @_sheets_retry
    async def save_carriers(self, carriers: list[Carrier]) -> bool:
        try:
            sheet = self._client.get_carriers_sheet()
            rows = self._read_rows(sheet)
            positions = {row[0]: idx for idx, row in enumerate(rows)}

            for carrier in carriers:
                new_row = self._carrier_to_row(carrier)
                idx = positions.get(str(carrier.id))
                if idx is None:
                    positions[new_row[0]] = len(rows)
                    rows.append(new_row)
                else:
                    rows[idx] = new_row

            sheet.update(
                range_name="A1",
                values=[CARRIER_COLUMNS] + rows,
                value_input_option="RAW",
            )
            return True
        except Exception as e:
            raise StorageError(f"Failed to save carriers: {e}")

    async def delete_carrier(self, carrier_id: UUID) -> bool:
        try:
            sheet = self._client.get_carriers_sheet()
            all_rows = sheet.get_all_values()

            # Start from 2 (row 1 is header)
            for idx, row in enumerate(all_rows[1:], start=2):
                if row and row[0] == str(carrier_id):
                    sheet.delete_rows(idx)
                    return True

            raise NotFoundError(f"Carrier not found: {carrier_id}")
        except NotFoundError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to delete carrier: {e}")


class GoogleSheetsTransactionStorage(TransactionStorageInterface):
    """
    Google Sheets implementation of the ledger.

    One transaction per row; tags are JSON-serialized.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _transaction_to_row(self, transaction: Transaction) -> list:
        return [
            str(transaction.id),
            str(transaction.user_id) if transaction.user_id else "",
            transaction.created_at.isoformat(),
            transaction.updated_at.isoformat(),
            transaction.date.isoformat(),
            transaction.transaction_type.value,
            transaction.category.value,
            str(transaction.amount),
            transaction.description,
            transaction.status.value,
            transaction.input_method.value,
            str(transaction.is_auto_categorized),
            transaction.invoice_number or "",
            transaction.invoice_date.isoformat() if transaction.invoice_date else "",
            transaction.merchant_name or "",
            str(transaction.tax_amount) if transaction.tax_amount is not None else "",
            transaction.notes or "",
            json.dumps(transaction.tags, ensure_ascii=False),
        ]

    def _row_to_transaction(self, row: list) -> Transaction:
        tags_json = _cell(row, 17)
        return Transaction(
            id=UUID(_cell(row, 0)),
            user_id=UUID(_cell(row, 1)) if _cell(row, 1) else None,
            created_at=datetime.fromisoformat(_cell(row, 2)),
            updated_at=datetime.fromisoformat(_cell(row, 3)),
            date=date.fromisoformat(_cell(row, 4)),
            transaction_type=TransactionType(_cell(row, 5)),
            category=TransactionCategory(_cell(row, 6)),
            amount=Decimal(_cell(row, 7)),
            description=_cell(row, 8),
            status=TransactionStatus(_cell(row, 9, TransactionStatus.CONFIRMED.value)),
            input_method=InputMethod(_cell(row, 10, InputMethod.MANUAL.value)),
            is_auto_categorized=_cell(row, 11).lower() == "true",
            invoice_number=_cell(row, 12) or None,
            invoice_date=date.fromisoformat(_cell(row, 13)) if _cell(row, 13) else None,
            merchant_name=_cell(row, 14) or None,
            tax_amount=Decimal(_cell(row, 15)) if _cell(row, 15) else None,
            notes=_cell(row, 16) or None,
            tags=json.loads(tags_json) if tags_json else [],
        )

    async def save_transactions(self, transactions: list[Transaction]) -> int:
        if not transactions:
            return 0

        existing = await self.list_invoice_numbers()
        duplicates = duplicate_invoice_numbers(existing, transactions)
        if duplicates:
            raise DuplicateError(
                f"Invoice numbers already recorded: {', '.join(duplicates)}"
            )

        rows = [self._transaction_to_row(t) for t in transactions]
        await self._append_rows(rows)
        return len(rows)

    @_sheets_retry
    async def _append_rows(self, rows: list[list]) -> None:
        # Retries cover the append only, never the duplicate check above
        try:
            sheet = self._client.get_transactions_sheet()
            sheet.append_rows(rows, value_input_option="RAW")
        except Exception as e:
            raise StorageError(f"Failed to save transactions: {e}")

    async def list_invoice_numbers(self) -> set[str]:
        try:
            sheet = self._client.get_transactions_sheet()
            values = sheet.col_values(INVOICE_NUMBER_COLUMN)[1:]  # Skip header
            return {value for value in values if value}
        except Exception as e:
            raise StorageError(f"Failed to read invoice numbers: {e}")

    async def list_transactions(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Transaction]:
        try:
            sheet = self._client.get_transactions_sheet()
            all_rows = sheet.get_all_values()[1:]  # Skip header

            transactions = []
            for row in all_rows:
                if not row or not row[0]:  # Skip empty rows
                    continue

                try:
                    transaction = self._row_to_transaction(row)
                except Exception:
                    continue  # Skip malformed rows

                if date_from and transaction.date < date_from:
                    continue
                if date_to and transaction.date > date_to:
                    continue

                transactions.append(transaction)

            # Sort by date descending (newest first)
            transactions.sort(key=lambda t: t.date, reverse=True)

            return transactions[offset:offset + limit]
        except Exception as e:
            raise StorageError(f"Failed to list transactions: {e}")


class GoogleSheetsUserStorage(UserStorageInterface):
    """The first row of the Users sheet is the current user."""

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    async def get_current_user(self) -> Optional[User]:
        try:
            sheet = self._client.get_users_sheet()
            for row in sheet.get_all_values()[1:]:
                if row and row[0]:
                    return User(id=UUID(row[0]), display_name=_cell(row, 1))
            return None
        except Exception as e:
            raise StorageError(f"Failed to load current user: {e}")


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _row_to_event(self, row: list) -> AuditEvent:
        """Convert a spreadsheet row to an AuditEvent."""
        return AuditEvent(
            event_id=UUID(_cell(row, 0)),
            timestamp=datetime.fromisoformat(_cell(row, 1)),
            event_type=AuditEventType(_cell(row, 2)),
            severity=AuditSeverity(_cell(row, 3)),
            entity_type=_cell(row, 4) or None,
            entity_id=UUID(_cell(row, 5)) if _cell(row, 5) else None,
            correlation_id=UUID(_cell(row, 6)) if _cell(row, 6) else None,
            description=_cell(row, 7),
            details=json.loads(_cell(row, 8)) if _cell(row, 8) else {},
            error_message=_cell(row, 9) or None,
            is_user_action=_cell(row, 10).lower() == "true",
        )

    def _read_events(self) -> list[AuditEvent]:
        sheet = self._client.get_audit_sheet()
        events = []
        for row in sheet.get_all_values()[1:]:
            if row and row[0]:
                try:
                    events.append(self._row_to_event(row))
                except Exception:
                    continue
        return events

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        try:
            sheet = self._client.get_audit_sheet()
            sheet.append_row(event.to_sheets_row(), value_input_option="RAW")
            return True
        except Exception as e:
            # Audit logging should not break the main flow
            logger.warning("audit_sheet_append_failed", error=str(e))
            return False

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        try:
            events = [
                e for e in self._read_events() if e.correlation_id == correlation_id
            ]
            # Sort chronologically
            events.sort(key=lambda e: e.timestamp)
            return events
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        try:
            events = self._read_events()
            # Sort newest first
            events.sort(key=lambda e: e.timestamp, reverse=True)
            return events[:limit]
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")
