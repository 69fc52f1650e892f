"""Invoice reconciliation: categorization and the sync cycle."""

from invoice_sync.reconciliation.categorizer import (
    CATEGORY_KEYWORDS,
    build_transaction_notes,
    classify_invoice,
    invoice_to_transaction,
)
from invoice_sync.reconciliation.engine import (
    MSG_IN_PROGRESS,
    MSG_NO_CARRIER,
    ReconciliationEngine,
)

__all__ = [
    "CATEGORY_KEYWORDS",
    "MSG_IN_PROGRESS",
    "MSG_NO_CARRIER",
    "ReconciliationEngine",
    "build_transaction_notes",
    "classify_invoice",
    "invoice_to_transaction",
]
