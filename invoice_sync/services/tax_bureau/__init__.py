"""
Tax Bureau Services Package

Client for the government e-invoice platform and the QR payload parser.
"""

from invoice_sync.services.tax_bureau.client import (
    HttpError,
    InvalidAPIKeyError,
    InvalidResponseError,
    InvalidURLError,
    InvoiceLookupResult,
    NetworkError,
    ParseError,
    TaxBureauClient,
    TaxBureauError,
)
from invoice_sync.services.tax_bureau.qr_code import (
    InvalidQRFormatError,
    InvoiceQRData,
    parse_invoice_qr,
    try_parse_invoice_qr,
)

__all__ = [
    # Client
    "TaxBureauClient",
    "InvoiceLookupResult",
    # Client errors
    "TaxBureauError",
    "HttpError",
    "InvalidAPIKeyError",
    "InvalidResponseError",
    "InvalidURLError",
    "NetworkError",
    "ParseError",
    # QR codes
    "InvoiceQRData",
    "InvalidQRFormatError",
    "parse_invoice_qr",
    "try_parse_invoice_qr",
]
