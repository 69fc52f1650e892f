"""
Invoice categorization and transaction building.

Seller names are matched against a small keyword table, first match wins,
case-insensitive. Anything unmatched is SHOPPING.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from invoice_sync.models.invoice import (
    InputMethod,
    InvoiceInfo,
    InvoiceItem,
    Transaction,
    TransactionCategory,
    TransactionStatus,
    TransactionType,
)


MAX_NOTE_ITEMS = 5

# Ledger column limits; longer invoice text is cut to fit.
MAX_DESCRIPTION_LENGTH = 500
MAX_NOTES_LENGTH = 2000

# Order matters: the first matching row decides the category.
CATEGORY_KEYWORDS: tuple[tuple[TransactionCategory, tuple[str, ...]], ...] = (
    (
        TransactionCategory.FOOD,
        ("7-11", "統一超商", "全家", "萊爾富", "ok mart", "ok超商", "來來超商"),
    ),
    (
        TransactionCategory.TRANSPORT,
        ("中油", "台塑", "加油站"),
    ),
    (
        TransactionCategory.HEALTHCARE,
        ("醫院", "診所", "藥局"),
    ),
    (
        TransactionCategory.EDUCATION,
        ("學校", "教育"),
    ),
)

DEFAULT_CATEGORY = TransactionCategory.SHOPPING


def classify_invoice(seller_name: str) -> TransactionCategory:
    """Map a seller name to a spending category."""
    name = (seller_name or "").lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in name for keyword in keywords):
            return category
    return DEFAULT_CATEGORY


def _format_quantity(quantity: Decimal) -> str:
    if quantity == quantity.to_integral_value():
        return str(int(quantity))
    return format(quantity.normalize(), "f")


def _format_item(item: InvoiceItem) -> str:
    return f"{item.name} x{_format_quantity(item.quantity)}"


def build_transaction_notes(invoice: InvoiceInfo) -> str:
    """
    Human-readable notes for an invoice-derived transaction.

    Example:
        Invoice: AB12345678
        Items: Latte x2, Bagel x1
        Tax: 4.76
    """
    lines = [f"Invoice: {invoice.invoice_number}"]

    if invoice.items:
        items_text = ", ".join(_format_item(i) for i in invoice.items[:MAX_NOTE_ITEMS])
        if len(invoice.items) > MAX_NOTE_ITEMS:
            items_text += f" ({len(invoice.items)} items total)"
        lines.append(f"Items: {items_text}")

    if invoice.tax_amount > 0:
        lines.append(f"Tax: {invoice.tax_amount:.2f}")

    return "\n".join(lines)[:MAX_NOTES_LENGTH]


def invoice_to_transaction(
    invoice: InvoiceInfo,
    created_at: datetime,
    user_id: Optional[UUID] = None,
) -> Transaction:
    """Build the ledger row for a newly seen invoice."""
    return Transaction(
        amount=invoice.amount,
        transaction_type=TransactionType.EXPENSE,
        category=classify_invoice(invoice.seller_name),
        description=invoice.seller_name[:MAX_DESCRIPTION_LENGTH],
        date=invoice.invoice_date,
        status=TransactionStatus.CONFIRMED,
        input_method=InputMethod.INVOICE_SYNC,
        is_auto_categorized=True,
        notes=build_transaction_notes(invoice),
        invoice_number=invoice.invoice_number,
        invoice_date=invoice.invoice_date,
        merchant_name=invoice.seller_name,
        tax_amount=invoice.tax_amount,
        created_at=created_at,
        updated_at=created_at,
        user_id=user_id,
    )
