"""Services package."""

from invoice_sync.services.storage import (
    AuditStorageInterface,
    CarrierStorageInterface,
    ConnectionError,
    DuplicateError,
    GoogleSheetsClient,
    NotFoundError,
    StorageError,
    TransactionStorageInterface,
    UserStorageInterface,
)
from invoice_sync.services.tax_bureau import (
    InvalidQRFormatError,
    TaxBureauClient,
    TaxBureauError,
    parse_invoice_qr,
)

__all__ = [
    # Storage services
    "AuditStorageInterface",
    "CarrierStorageInterface",
    "ConnectionError",
    "DuplicateError",
    "GoogleSheetsClient",
    "NotFoundError",
    "StorageError",
    "TransactionStorageInterface",
    "UserStorageInterface",
    # Tax bureau services
    "InvalidQRFormatError",
    "TaxBureauClient",
    "TaxBureauError",
    "parse_invoice_qr",
]
