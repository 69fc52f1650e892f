"""
Tax Bureau E-Invoice Client

Queries the Ministry of Finance e-invoice platform and normalizes its
two response shapes into InvoiceInfo:

- List query (action=qryWinningInv): invoices collected by a carrier in a
  date range. One object per invoice under "invNum".
- Detail query (action=qryInvDetail): one invoice as a flat object plus an
  "invDetail" array of line items.

Every numeric and date field arrives as a string and is parsed defensively.
A list record that fails to parse is dropped (partial results are preferred);
a detail response that fails to parse aborts the call.

KNOWN APPROXIMATIONS (configurable, unverified against the platform):
- The list endpoint has no tax field; tax is amount * list_tax_rate.
- Detail totals are tax-inclusive; tax is total * rate / (1 + rate).
- The QR verification code is not checked; the platform does not return it.

Only transport failures are retried. HTTP status errors, API error codes and
parse errors propagate immediately.
"""

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel, ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from invoice_sync.clock import Clock, as_date, local_clock, subtract_months
from invoice_sync.config import TaxBureauSettings, get_settings
from invoice_sync.models.invoice import CarrierType, InvoiceInfo, InvoiceItem


logger = structlog.get_logger(__name__)

ACTION_LIST = "qryWinningInv"
ACTION_DETAIL = "qryInvDetail"
API_SUCCESS_CODE = "200"
UNKNOWN_SELLER = "未知商家"

_CENT = Decimal("0.01")
_DATE_FORMATS = ("%Y-%m-%d", "%Y%m%d", "%Y/%m/%d")


class TaxBureauError(Exception):
    """Base exception for e-invoice API errors."""

    default_message = "Tax bureau request failed"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message)


class InvalidURLError(TaxBureauError):
    """The request URL could not be built."""
    default_message = "Invalid tax bureau URL"


class InvalidResponseError(TaxBureauError):
    """The response was not the JSON object we expect."""
    default_message = "Invalid response from the tax bureau"


class HttpError(TaxBureauError):
    """Non-2xx HTTP status."""

    def __init__(self, status_code: int, message: Optional[str] = None):
        self.status_code = status_code
        super().__init__(message or f"HTTP error: {status_code}")


class InvalidAPIKeyError(TaxBureauError):
    """No API key is configured."""
    default_message = "Tax bureau API key is missing"


class ParseError(TaxBureauError):
    """API reported an error or the payload could not be parsed."""
    default_message = "Could not parse the tax bureau response"


class NetworkError(TaxBureauError):
    """Transport-level failure (connection, DNS, timeout)."""
    default_message = "Network error while contacting the tax bureau"


class InvoiceLookupResult(BaseModel):
    """
    Outcome of probing recent months for one invoice number.

    found=False means every candidate month was tried without a match.
    """

    found: bool
    invoice: Optional[InvoiceInfo] = None
    probed_dates: list[date]


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def _parse_decimal(value: Any) -> Optional[Decimal]:
    """Parse an API number (usually a string); None if unusable."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value).strip().replace(",", ""))
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite():
        return None
    return number


def _parse_date(value: Any) -> Optional[date]:
    if not isinstance(value, str):
        return None
    text = value.strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class TaxBureauClient:
    """
    Async client for the e-invoice platform.

    IMPORTANT BOUNDARIES:
    1. This client only fetches and normalizes - it never touches storage
    2. It raises TaxBureauError subclasses; callers decide what to show
    """

    def __init__(
        self,
        settings: Optional[TaxBureauSettings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
    ):
        self._settings = settings or get_settings().tax_bureau
        self._api_key = self._settings.api_key
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._clock = clock or local_clock(get_settings().sync.timezone)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def set_api_key(self, key: str) -> None:
        self._api_key = key.strip() if key else None

    def has_api_key(self) -> bool:
        return bool(self._api_key)

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._http_client is not None and self._owns_http_client:
            await self._http_client.aclose()
            self._http_client = None

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._settings.timeout_seconds),
            )
        return self._http_client

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _build_url(self, params: dict[str, str]) -> httpx.URL:
        try:
            url = httpx.URL(
                self._settings.base_url.rstrip("/") + self._settings.endpoint_path,
                params=params,
            )
        except (httpx.InvalidURL, TypeError, ValueError) as e:
            raise InvalidURLError(f"Invalid tax bureau URL: {e}") from e

        if url.scheme not in ("http", "https") or not url.host:
            raise InvalidURLError(
                f"Invalid tax bureau URL: {self._settings.base_url}"
            )
        return url

    async def _get(self, url: httpx.URL) -> httpx.Response:
        try:
            return await self._get_http_client().get(
                url,
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException as e:
            raise NetworkError(
                f"Tax bureau request timed out after {self._settings.timeout_seconds}s"
            ) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Network error while contacting the tax bureau: {e}") from e

    async def _request(self, params: dict[str, str]) -> dict[str, Any]:
        """
        Issue one GET and return the decoded JSON object.

        Raises:
            InvalidAPIKeyError, InvalidURLError, NetworkError, HttpError,
            ParseError, InvalidResponseError
        """
        if not self.has_api_key():
            raise InvalidAPIKeyError()

        url = self._build_url({
            "version": self._settings.api_version,
            "appID": self._api_key,
            **params,
        })

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._settings.max_attempts),
            wait=wait_exponential(
                multiplier=self._settings.retry_backoff_seconds, max=10
            ),
            retry=retry_if_exception_type(NetworkError),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                response = await self._get(url)

        if not 200 <= response.status_code < 300:
            raise HttpError(response.status_code)

        try:
            payload = response.json()
        except ValueError as e:
            raise ParseError("Tax bureau response is not valid JSON") from e

        if not isinstance(payload, dict):
            raise InvalidResponseError()

        return payload

    @staticmethod
    def _check_api_code(payload: dict[str, Any]) -> None:
        code = _text(payload.get("code"))
        if code != API_SUCCESS_CODE:
            message = _text(payload.get("msg")) or "unknown error"
            logger.error("tax_bureau_api_error", code=code, msg=message)
            raise ParseError(f"Tax bureau API error {code}: {message}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def fetch_invoices_by_carrier(
        self,
        carrier_number: str,
        start_date: date,
        end_date: date,
    ) -> list[InvoiceInfo]:
        """
        Fetch the invoices collected by a carrier between two dates.

        Records missing an invoice number, date or amount are skipped.
        """
        payload = await self._request({
            "action": ACTION_LIST,
            "carrierType": self._settings.carrier_type_code,
            "carrierId": carrier_number,
            "invDate": as_date(start_date).isoformat(),
            "invEndDate": as_date(end_date).isoformat(),
        })
        return self.parse_invoice_list(payload)

    async def fetch_invoice_by_number(
        self,
        invoice_number: str,
        invoice_date: date,
    ) -> InvoiceInfo:
        """Fetch a single invoice with its line items."""
        payload = await self._request({
            "action": ACTION_DETAIL,
            "invNum": invoice_number,
            "invDate": as_date(invoice_date).isoformat(),
        })
        return self.parse_invoice_detail(payload, invoice_number)

    async def lookup_recent_invoice(self, invoice_number: str) -> InvoiceLookupResult:
        """
        Probe the current month and the preceding ones for an invoice.

        The invoice number does not say which month it was issued, so each
        candidate date is tried in turn (most recent first). A failure for
        one month is expected and only logged.
        """
        today = as_date(self._clock())
        candidates = [
            subtract_months(today, offset)
            for offset in range(self._settings.qr_lookup_months)
        ]

        probed: list[date] = []
        for candidate in candidates:
            probed.append(candidate)
            try:
                invoice = await self.fetch_invoice_by_number(invoice_number, candidate)
            except TaxBureauError as e:
                logger.debug(
                    "invoice_month_probe_missed",
                    invoice_number=invoice_number,
                    probe_date=candidate.isoformat(),
                    error=str(e),
                )
                continue
            return InvoiceLookupResult(found=True, invoice=invoice, probed_dates=probed)

        return InvoiceLookupResult(found=False, probed_dates=probed)

    async def query_invoice_detail(
        self,
        invoice_number: str,
        random_code: str,
    ) -> InvoiceInfo:
        """
        Look up a QR-scanned invoice when only its number and code are known.

        random_code is NOT verified: the detail endpoint does not return it,
        so a number/month match is accepted as the invoice.

        Raises:
            ParseError: If no candidate month returned the invoice
        """
        logger.info(
            "qr_invoice_lookup",
            invoice_number=invoice_number,
            random_code_verified=False,
            random_code_length=len(random_code or ""),
        )
        result = await self.lookup_recent_invoice(invoice_number)
        if not result.found:
            raise ParseError(
                f"Invoice {invoice_number} not found in the last "
                f"{len(result.probed_dates)} months"
            )
        return result.invoice

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def parse_invoice_list(self, payload: dict[str, Any]) -> list[InvoiceInfo]:
        """Parse a list-query response. Malformed records are dropped."""
        self._check_api_code(payload)

        records = payload.get("invNum")
        if records is None:
            return []
        if not isinstance(records, list):
            raise ParseError("Tax bureau response 'invNum' is not a list")

        invoices = []
        for record in records:
            invoice = self._parse_list_record(record)
            if invoice is None:
                logger.warning(
                    "invoice_record_skipped",
                    invoice_number=(
                        _text(record.get("invNum")) if isinstance(record, dict) else None
                    ),
                )
                continue
            invoices.append(invoice)
        return invoices

    def _parse_list_record(self, record: Any) -> Optional[InvoiceInfo]:
        if not isinstance(record, dict):
            return None

        invoice_number = _text(record.get("invNum"))
        invoice_date = _parse_date(record.get("invDate"))
        amount = _parse_decimal(record.get("amount"))
        if invoice_number is None or invoice_date is None or amount is None or amount < 0:
            return None

        amount = _quantize(amount)
        rate = Decimal(str(self._settings.list_tax_rate))
        try:
            return InvoiceInfo(
                invoice_number=invoice_number,
                invoice_date=invoice_date,
                seller_name=_text(record.get("sellerName")) or UNKNOWN_SELLER,
                amount=amount,
                tax_amount=_quantize(amount * rate),
                carrier_type=CarrierType.MOBILE_BARCODE,
            )
        except ValidationError:
            return None

    def parse_invoice_detail(
        self,
        payload: dict[str, Any],
        requested_number: Optional[str] = None,
    ) -> InvoiceInfo:
        """Parse a detail-query response. Any missing core field aborts."""
        self._check_api_code(payload)

        invoice_number = _text(payload.get("invNum")) or _text(requested_number)
        invoice_date = _parse_date(payload.get("invDate"))
        total = _parse_decimal(payload.get("totalAmount"))
        if invoice_number is None or invoice_date is None or total is None or total < 0:
            raise ParseError("Invoice detail is missing its number, date or total")

        total = _quantize(total)
        rate = Decimal(str(self._settings.detail_tax_rate))
        tax_amount = _quantize(total * rate / (1 + rate))

        raw_items = payload.get("invDetail") or []
        if not isinstance(raw_items, list):
            raw_items = []
        items = tuple(
            item for item in (self._parse_detail_item(raw) for raw in raw_items)
            if item is not None
        )

        try:
            return InvoiceInfo(
                invoice_number=invoice_number,
                invoice_date=invoice_date,
                seller_name=_text(payload.get("sellerName")) or UNKNOWN_SELLER,
                seller_address=_text(payload.get("sellerAddress")),
                seller_tax_id=_text(payload.get("sellerBan")),
                buyer_name=_text(payload.get("buyerName")),
                buyer_tax_id=_text(payload.get("buyerBan")),
                amount=total,
                tax_amount=tax_amount,
                items=items,
                carrier_type=CarrierType.MOBILE_BARCODE,
            )
        except ValidationError as e:
            raise ParseError(f"Invoice detail failed validation: {e}") from e

    @staticmethod
    def _parse_detail_item(raw: Any) -> Optional[InvoiceItem]:
        if not isinstance(raw, dict):
            return None

        name = _text(raw.get("description"))
        quantity = _parse_decimal(raw.get("quantity"))
        amount = _parse_decimal(raw.get("amount"))
        if name is None or quantity is None or amount is None:
            return None

        unit_price = _parse_decimal(raw.get("unitPrice")) or Decimal("0")
        if unit_price <= 0:
            unit_price = amount / quantity if quantity else amount

        try:
            return InvoiceItem(
                name=name,
                quantity=quantity,
                unit=_text(raw.get("unit")),
                unit_price=_quantize(unit_price),
                amount=_quantize(amount),
            )
        except ValidationError:
            return None
