"""
Configuration Management for Invoice Sync

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
This makes it easy to see what external dependencies exist and
ensures all required configuration is validated at startup.

The tax rates and QR probe window are kept as settings because the
e-invoice list endpoint does not return a tax amount and the QR lookup
cannot tell which month an invoice belongs to. Both values are
approximations, not verified against the upstream API.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TaxBureauSettings(BaseSettings):
    """Government e-invoice API configuration."""

    model_config = SettingsConfigDict(
        env_prefix="TAX_BUREAU_",
        extra="ignore"
    )

    api_key: Optional[str] = Field(
        default=None,
        description="appID issued by the e-invoice platform (can also be set at runtime)"
    )
    base_url: str = Field(
        default="https://api.einvoice.nat.gov.tw",
        description="E-invoice API host"
    )
    endpoint_path: str = Field(
        default="/PB2CAPIVAN/invapp/InvApp",
        description="Path of the invoice query endpoint"
    )
    api_version: str = Field(
        default="0.5",
        description="Value sent as the 'version' query parameter"
    )
    carrier_type_code: str = Field(
        default="1",
        description="carrierType code sent for mobile barcode carriers"
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=300,
        description="Deadline for a single outbound request"
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per request when the transport fails"
    )
    retry_backoff_seconds: float = Field(
        default=1.0,
        ge=0.0,
        le=60.0,
        description="Multiplier for exponential backoff between attempts"
    )

    # Unverified approximations (see module docstring)
    list_tax_rate: float = Field(
        default=0.05,
        ge=0.0,
        le=1.0,
        description="Flat VAT rate applied to list-query amounts"
    )
    detail_tax_rate: float = Field(
        default=0.05,
        ge=0.0,
        le=1.0,
        description="VAT rate used to back-compute tax from a tax-inclusive total"
    )
    qr_lookup_months: int = Field(
        default=3,
        ge=1,
        le=12,
        description="How many months (current first) to probe for a QR-scanned invoice"
    )


class SyncSettings(BaseSettings):
    """Reconciliation and auto-sync configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SYNC_",
        extra="ignore"
    )

    default_lookback_months: int = Field(
        default=1,
        ge=1,
        le=12,
        description="Calendar months fetched when no start date is given"
    )
    auto_sync_interval_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="Delay between unattended sync cycles"
    )
    max_backoff_seconds: float = Field(
        default=6 * 3600.0,
        gt=0,
        description="Upper bound for the delay after failed cycles"
    )
    circuit_breaker_threshold: int = Field(
        default=5,
        ge=1,
        description="Consecutive failed cycles before auto-sync pauses"
    )
    circuit_cooldown_seconds: float = Field(
        default=12 * 3600.0,
        gt=0,
        description="Pause length once the circuit is open"
    )
    timezone: str = Field(
        default="Asia/Taipei",
        description="Timezone used to turn 'now' into invoice dates"
    )


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets storage configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        extra="ignore"
    )

    credentials_path: str = Field(
        ...,
        description="Path to Google service account credentials JSON"
    )
    spreadsheet_id: str = Field(
        ...,
        description="ID of the Google Sheets spreadsheet to use"
    )

    # Sheet names within the spreadsheet
    carriers_sheet_name: str = Field(
        default="Carriers",
        description="Name of the sheet for invoice carriers"
    )
    transactions_sheet_name: str = Field(
        default="Transactions",
        description="Name of the sheet for ledger transactions"
    )
    users_sheet_name: str = Field(
        default="Users",
        description="Name of the sheet holding the account owner"
    )
    audit_sheet_name: str = Field(
        default="AuditLog",
        description="Name of the sheet for audit logs"
    )

    @field_validator('credentials_path')
    @classmethod
    def validate_credentials_path(cls, v: str) -> str:
        """Warn if credentials file doesn't exist (but don't fail - might be mounted later)."""
        if not Path(v).exists():
            import warnings
            warnings.warn(
                f"Google credentials file not found at {v}. "
                "Make sure it exists before running the application."
            )
        return v


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    auto_sync_enabled: bool = Field(
        default=False,
        description="Start the auto-sync scheduler with the application"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Sub-settings are loaded lazily to allow partial configuration

    @property
    def tax_bureau(self) -> TaxBureauSettings:
        return TaxBureauSettings()

    @property
    def sync(self) -> SyncSettings:
        return SyncSettings()

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("tax_bureau", "sync", "google_sheets", "app"):
        try:
            _ = getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    # A missing API key is not a config error (it can be set at runtime),
    # but startup checks should surface it.
    if results.get("tax_bureau"):
        results["tax_bureau_api_key"] = bool(settings.tax_bureau.api_key)

    return results
