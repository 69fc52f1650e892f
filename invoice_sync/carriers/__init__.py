"""Invoice carrier management."""

from invoice_sync.carriers.store import CarrierStore, sort_carriers

__all__ = ["CarrierStore", "sort_carriers"]
