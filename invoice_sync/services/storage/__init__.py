"""
Storage Services Package

Provides abstract interfaces and concrete implementations for data storage.
Google Sheets is the persistent backend; the in-memory backend serves
tests and storage-less runs.
"""

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
from invoice_sync.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryCarrierStorage,
    InMemoryTransactionStorage,
    InMemoryUserStorage,
)
from invoice_sync.services.storage.google_sheets import (
    GoogleSheetsAuditStorage,
    GoogleSheetsCarrierStorage,
    GoogleSheetsClient,
    GoogleSheetsTransactionStorage,
    GoogleSheetsUserStorage,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "CarrierStorageInterface",
    "TransactionStorageInterface",
    "UserStorageInterface",
    "duplicate_invoice_numbers",
    # Exceptions
    "ConnectionError",
    "DuplicateError",
    "NotFoundError",
    "StorageError",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryCarrierStorage",
    "InMemoryTransactionStorage",
    "InMemoryUserStorage",
    # Google Sheets implementation
    "GoogleSheetsAuditStorage",
    "GoogleSheetsCarrierStorage",
    "GoogleSheetsClient",
    "GoogleSheetsTransactionStorage",
    "GoogleSheetsUserStorage",
]
