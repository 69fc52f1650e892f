"""
Core Data Models for Invoice Sync

These models define the strict schemas for all data flowing through the
invoice ingestion pipeline. They are designed to:
1. Enforce type safety at runtime
2. Keep money exact (Decimal, two places)
3. Be serializable for storage and logging
4. Support the audit trail

DESIGN DECISION: InvoiceInfo is frozen. It is produced fresh on every
fetch and never mutated; everything persisted is a Carrier or a
Transaction.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)

from invoice_sync.clock import utc_now


Money = Annotated[Decimal, Field(decimal_places=2)]


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class CarrierType(str, Enum):
    """Kinds of carrier a user can register with the tax authority."""
    MOBILE_BARCODE = "mobile_barcode"
    NATURAL_PERSON = "natural_person"
    MEMBERSHIP = "membership"

    @property
    def display_name(self) -> str:
        return {
            CarrierType.MOBILE_BARCODE: "Mobile barcode",
            CarrierType.NATURAL_PERSON: "Citizen digital certificate",
            CarrierType.MEMBERSHIP: "Membership card",
        }[self]


class TransactionType(str, Enum):
    """Ledger entry type."""
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"
    INVESTMENT = "investment"
    LOAN = "loan"
    INSURANCE = "insurance"
    DONATION = "donation"


class TransactionCategory(str, Enum):
    """
    Ledger categories.

    Only the expense categories are reachable from invoice auto-categorization.
    """
    # Income
    SALARY = "salary"
    BONUS = "bonus"
    INVESTMENT_RETURN = "investment_return"
    BUSINESS = "business"
    OTHER_INCOME = "other_income"

    # Expense
    FOOD = "food"
    TRANSPORT = "transport"
    HOUSING = "housing"
    UTILITIES = "utilities"
    HEALTHCARE = "healthcare"
    EDUCATION = "education"
    ENTERTAINMENT = "entertainment"
    SHOPPING = "shopping"
    INSURANCE = "insurance"
    LOAN_PAYMENT = "loan_payment"
    INVESTMENT = "investment"
    DONATION = "donation"
    OTHER_EXPENSE = "other_expense"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class InputMethod(str, Enum):
    """How a transaction entered the ledger."""
    MANUAL = "manual"
    TEXT = "text"
    VOICE = "voice"
    IMAGE = "image"
    INVOICE_SYNC = "invoice_sync"


class SyncErrorCode(str, Enum):
    """Why a sync cycle did not complete."""
    NO_CARRIER = "no_carrier"
    SYNC_IN_PROGRESS = "sync_in_progress"
    FETCH_FAILED = "fetch_failed"
    SAVE_FAILED = "save_failed"
    CARRIER_UPDATE_FAILED = "carrier_update_failed"


# =============================================================================
# PEOPLE & CARRIERS
# =============================================================================

class User(BaseModel):
    """The account owner carriers are attached to."""

    id: UUID = Field(default_factory=uuid4)
    display_name: str = Field(default="", max_length=200)


class Carrier(BaseModel):
    """
    An identity registered with the tax authority for collecting e-invoices.

    INVARIANT: at most one carrier per user has is_default=True.
    The CarrierStore clears every other flag whenever one is set.
    """
    model_config = ConfigDict(str_strip_whitespace=True, validate_assignment=True)

    id: UUID = Field(default_factory=uuid4)
    carrier_type: CarrierType = CarrierType.MOBILE_BARCODE
    carrier_number: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="External carrier identifier, e.g. '/ABC1234'"
    )
    carrier_name: str = Field(
        default="",
        max_length=100,
        description="User-chosen alias"
    )
    is_default: bool = False
    is_active: bool = True
    last_sync_date: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    user_id: Optional[UUID] = None

    def same_identity(self, carrier_type: CarrierType, carrier_number: str) -> bool:
        """True if this carrier has the given (type, number) pair."""
        return (
            self.carrier_type == carrier_type
            and self.carrier_number == carrier_number.strip()
        )


# =============================================================================
# INVOICES (transient)
# =============================================================================

class InvoiceItem(BaseModel):
    """One line on an e-invoice."""
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    name: str = Field(..., min_length=1)
    quantity: Decimal
    unit: Optional[str] = None
    unit_price: Money
    amount: Money
    tax_rate: Optional[Decimal] = None


class InvoiceInfo(BaseModel):
    """
    Normalized representation of one government invoice record.

    invoice_number is the unique key within a reconciliation run.
    """
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    invoice_number: str = Field(..., min_length=1, max_length=20)
    invoice_date: date
    seller_name: str
    seller_address: Optional[str] = None
    seller_tax_id: Optional[str] = None
    buyer_name: Optional[str] = None
    buyer_tax_id: Optional[str] = None
    amount: Money
    tax_amount: Money
    items: tuple[InvoiceItem, ...] = ()
    payment_method: Optional[str] = None
    carrier_type: Optional[CarrierType] = None
    carrier_number: Optional[str] = None


# =============================================================================
# LEDGER
# =============================================================================

class Transaction(BaseModel):
    """
    A financial ledger entry.

    Invoice-derived rows carry the invoice linkage fields and are never
    updated by the sync pipeline once created.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    amount: Money
    transaction_type: TransactionType
    category: TransactionCategory
    description: str = Field(default="", max_length=500)
    date: date
    status: TransactionStatus = TransactionStatus.CONFIRMED

    input_method: InputMethod = InputMethod.MANUAL
    is_auto_categorized: bool = False

    notes: Optional[str] = Field(default=None, max_length=2000)
    tags: list[str] = Field(default_factory=list)

    # Invoice linkage
    invoice_number: Optional[str] = None
    invoice_date: Optional[date] = None
    merchant_name: Optional[str] = None
    tax_amount: Optional[Money] = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    user_id: Optional[UUID] = None

    @field_validator('amount')
    @classmethod
    def amount_not_negative(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("Transaction amount cannot be negative")
        return v


# =============================================================================
# SYNC RESULTS
# =============================================================================

class SyncSummary(BaseModel):
    """What one reconciliation cycle did."""

    carrier_id: UUID
    start_date: date
    end_date: date
    fetched_count: int = Field(default=0, ge=0)
    created_count: int = Field(default=0, ge=0)
    duplicate_count: int = Field(default=0, ge=0)
    synced_at: Optional[datetime] = None


class SyncResult(BaseModel):
    """
    Explicit outcome of a sync call.

    On failure error_code says which step stopped the cycle; summary is
    present whenever the cycle got as far as resolving a carrier and range.
    """

    success: bool
    error_code: Optional[SyncErrorCode] = None
    error_message: Optional[str] = None
    summary: Optional[SyncSummary] = None

    @classmethod
    def ok(cls, summary: SyncSummary) -> "SyncResult":
        return cls(success=True, summary=summary)

    @classmethod
    def failed(
        cls,
        error_code: SyncErrorCode,
        error_message: str,
        summary: Optional[SyncSummary] = None,
    ) -> "SyncResult":
        return cls(
            success=False,
            error_code=error_code,
            error_message=error_message,
            summary=summary,
        )
