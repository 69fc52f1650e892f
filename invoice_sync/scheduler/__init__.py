"""Unattended invoice sync."""

from invoice_sync.scheduler.auto_sync import AutoSyncScheduler, next_delay

__all__ = ["AutoSyncScheduler", "next_delay"]
