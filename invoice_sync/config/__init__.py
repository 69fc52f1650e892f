"""Configuration package."""

from invoice_sync.config.settings import (
    AppSettings,
    GoogleSheetsSettings,
    Settings,
    SyncSettings,
    TaxBureauSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "GoogleSheetsSettings",
    "Settings",
    "SyncSettings",
    "TaxBureauSettings",
    "get_settings",
    "validate_all_settings",
]
