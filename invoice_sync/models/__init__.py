"""
Data Models Package

This package contains all Pydantic models used by Invoice Sync.
All data flowing through the pipeline must conform to these schemas.
"""

from invoice_sync.models.invoice import (
    Carrier,
    CarrierType,
    InputMethod,
    InvoiceInfo,
    InvoiceItem,
    SyncErrorCode,
    SyncResult,
    SyncSummary,
    Transaction,
    TransactionCategory,
    TransactionStatus,
    TransactionType,
    User,
)
from invoice_sync.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Invoice & ledger models
    "Carrier",
    "CarrierType",
    "InputMethod",
    "InvoiceInfo",
    "InvoiceItem",
    "SyncErrorCode",
    "SyncResult",
    "SyncSummary",
    "Transaction",
    "TransactionCategory",
    "TransactionStatus",
    "TransactionType",
    "User",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
