"""
E-Invoice QR Payload Parser

Parses the text payload of the QR code printed on Taiwanese e-invoices.
Fields are separated by "||":

    standard:      number||code||date||total||seller_tax_id||carrier||donate
    short:         number||code||date||total
    tax-inclusive: number||code||date||sales||tax||total||seller_tax_id||carrier||donate

Amounts are in cents. The tax-inclusive layout is only assumed when
sales + tax == total; otherwise fields 4+ are read as the standard layout.
"""

import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field


logger = structlog.get_logger(__name__)

FIELD_SEPARATOR = "||"
MIN_FIELDS = 4
DEFAULT_VAT_RATE = Decimal("0.05")

_INVOICE_NUMBER = re.compile(r"^[A-Z]{2}\d{8}$")
_RANDOM_CODE = re.compile(r"^[A-Za-z0-9]{4}$")
_TAX_ID = re.compile(r"^\d{8}$")
_CENTS = re.compile(r"^\d+$")
_DATE_FORMATS = ("%Y%m%d", "%Y-%m-%d", "%Y/%m/%d")
_CENT = Decimal("0.01")


class InvalidQRFormatError(ValueError):
    """The QR payload is not a recognizable e-invoice."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid invoice QR code: {reason}")


class InvoiceQRData(BaseModel):
    """Fields decoded from an e-invoice QR code."""

    model_config = ConfigDict(frozen=True)

    invoice_number: str
    random_code: str
    invoice_date: date
    amount: Decimal = Field(..., ge=0)
    seller_tax_id: Optional[str] = None
    carrier_number: Optional[str] = None
    buyer_tax_id: Optional[str] = None
    sales_amount: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    donate_code: Optional[str] = None

    @property
    def calculated_tax_amount(self) -> Decimal:
        if self.sales_amount is not None:
            return self.amount - self.sales_amount
        return (self.amount / (1 + DEFAULT_VAT_RATE) * DEFAULT_VAT_RATE).quantize(
            _CENT, rounding=ROUND_HALF_UP
        )

    @property
    def calculated_sales_amount(self) -> Decimal:
        if self.sales_amount is not None:
            return self.sales_amount
        return (self.amount / (1 + DEFAULT_VAT_RATE)).quantize(
            _CENT, rounding=ROUND_HALF_UP
        )


def _cents(value: str) -> Optional[Decimal]:
    text = value.strip()
    if not _CENTS.match(text):
        return None
    return (Decimal(text) / 100).quantize(_CENT)


def _parse_date(value: str) -> Optional[date]:
    text = value.strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def _optional(value: str) -> Optional[str]:
    text = value.strip()
    if not text or text == "0":
        return None
    return text


def _optional_tax_id(value: str) -> Optional[str]:
    text = _optional(value)
    if text is None or not _TAX_ID.match(text):
        return None
    return text


def parse_invoice_qr(text: str) -> InvoiceQRData:
    """
    Parse a QR payload.

    Raises:
        InvalidQRFormatError: With the reason the payload was rejected
    """
    fields = [f.strip() for f in text.strip().split(FIELD_SEPARATOR)]
    if len(fields) < MIN_FIELDS:
        raise InvalidQRFormatError(
            f"expected at least {MIN_FIELDS} fields, got {len(fields)}"
        )

    invoice_number, random_code, date_text, amount_text = fields[:4]

    if not _INVOICE_NUMBER.match(invoice_number):
        raise InvalidQRFormatError(f"bad invoice number {invoice_number!r}")
    if not _RANDOM_CODE.match(random_code):
        raise InvalidQRFormatError(f"bad verification code {random_code!r}")

    invoice_date = _parse_date(date_text)
    if invoice_date is None:
        raise InvalidQRFormatError(f"bad date {date_text!r}")

    amount = _cents(amount_text)
    if amount is None or amount <= 0:
        raise InvalidQRFormatError(f"bad amount {amount_text!r}")

    seller_tax_id = carrier_number = donate_code = None
    sales_amount = tax_amount = None

    if len(fields) >= 6:
        layout = "standard"
        if len(fields) >= 7:
            sales, tax, total = _cents(fields[3]), _cents(fields[4]), _cents(fields[5])
            if None not in (sales, tax, total) and sales + tax == total:
                layout = "tax_inclusive"

        if layout == "tax_inclusive":
            sales_amount, tax_amount, amount = sales, tax, total
            seller_tax_id = _optional_tax_id(fields[6])
            if len(fields) > 7:
                carrier_number = _optional(fields[7])
            if len(fields) > 8:
                donate_code = _optional(fields[8])
        else:
            seller_tax_id = _optional_tax_id(fields[4])
            carrier_number = _optional(fields[5])
            if len(fields) > 6:
                donate_code = _optional(fields[6])

    data = InvoiceQRData(
        invoice_number=invoice_number,
        random_code=random_code,
        invoice_date=invoice_date,
        amount=amount,
        seller_tax_id=seller_tax_id,
        carrier_number=carrier_number,
        sales_amount=sales_amount,
        tax_amount=tax_amount,
        donate_code=donate_code,
    )
    logger.info(
        "invoice_qr_parsed",
        invoice_number=data.invoice_number,
        amount=str(data.amount),
    )
    return data


def try_parse_invoice_qr(text: str) -> Optional[InvoiceQRData]:
    """
    Lenient variant of parse_invoice_qr.

    Returns None instead of raising. Payloads that use a single "|" as
    separator are retried with "||".
    """
    try:
        return parse_invoice_qr(text)
    except InvalidQRFormatError as e:
        logger.warning("invoice_qr_parse_failed", reason=e.reason)
        cleaned = text.strip()

    if "|" in cleaned and FIELD_SEPARATOR not in cleaned:
        try:
            return parse_invoice_qr(cleaned.replace("|", FIELD_SEPARATOR))
        except InvalidQRFormatError as e:
            logger.warning("invoice_qr_parse_failed", reason=e.reason, separator="|")
    return None
