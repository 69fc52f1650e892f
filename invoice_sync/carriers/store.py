"""
Invoice Carrier Store

Owns the user's registered carriers and the "default carrier" used by
syncs that do not name one.

INVARIANT: at most one carrier per user has is_default=True. Whenever a
carrier is flagged, every other flagged carrier is cleared and all changed
rows are written in the same save_carriers call.

The effective default (default_carrier) is the flagged carrier, or the
first carrier in display order when none is flagged. That fallback is
never written back to storage.

Mutations report failure through a False return plus error_message, which
holds a short user-facing sentence. Storage errors while loading propagate.
"""

import asyncio
from datetime import datetime
from typing import Optional

import structlog
from pydantic import ValidationError

from invoice_sync.audit import AuditLogger
from invoice_sync.clock import Clock, utc_now
from invoice_sync.models.invoice import Carrier, CarrierType, User
from invoice_sync.services.storage import (
    CarrierStorageInterface,
    NotFoundError,
    StorageError,
    UserStorageInterface,
)


logger = structlog.get_logger(__name__)

MSG_DUPLICATE = "This carrier already exists"
MSG_NUMBER_REQUIRED = "Carrier number is required"
MSG_NOT_FOUND = "Carrier not found"
MSG_INVALID = "Invalid carrier details"


def sort_carriers(carriers: list[Carrier]) -> list[Carrier]:
    """Default carrier first, then newest first."""
    newest_first = sorted(carriers, key=lambda c: c.created_at, reverse=True)
    return sorted(newest_first, key=lambda c: not c.is_default)


class CarrierStore:
    """CRUD over persisted carriers with a single designated default."""

    def __init__(
        self,
        storage: CarrierStorageInterface,
        user_storage: Optional[UserStorageInterface] = None,
        audit_logger: Optional[AuditLogger] = None,
        clock: Optional[Clock] = None,
    ):
        self._storage = storage
        self._user_storage = user_storage
        self._audit = audit_logger or AuditLogger()
        self._clock = clock or utc_now
        self._lock = asyncio.Lock()

        self._current_user: Optional[User] = None
        self._user_resolved = False

        self.carriers: list[Carrier] = []
        self.default_carrier: Optional[Carrier] = None
        self.error_message: Optional[str] = None

    # ------------------------------------------------------------------
    # Current user
    # ------------------------------------------------------------------

    async def get_current_user(self) -> Optional[User]:
        """
        Resolve the account owner once and cache it.

        Resolution failures are logged and leave carriers unowned, so a
        missing user never blocks carrier management.
        """
        if self._user_resolved or self._user_storage is None:
            return self._current_user

        try:
            self._current_user = await self._user_storage.get_current_user()
            self._user_resolved = True
        except StorageError as e:
            logger.error("current_user_lookup_failed", error=str(e))
        return self._current_user

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _fetch_user_carriers(self) -> list[Carrier]:
        user = await self.get_current_user()
        return await self._storage.list_carriers(user.id if user else None)

    async def load_carriers(self) -> list[Carrier]:
        """
        Refresh carriers and default_carrier from storage.

        Raises:
            StorageError: If storage cannot be read (error_message is set too)
        """
        try:
            carriers = sort_carriers(await self._fetch_user_carriers())
        except StorageError as e:
            self.error_message = f"Failed to load carriers: {e}"
            raise

        self.carriers = carriers
        self.default_carrier = next(
            (c for c in carriers if c.is_default),
            carriers[0] if carriers else None,
        )
        return carriers

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def add_carrier(
        self,
        carrier_type: CarrierType,
        number: str,
        name: str,
        is_default: bool = False,
    ) -> bool:
        """
        Register a new carrier for the current user.

        Returns False (with error_message set) if the (type, number) pair is
        already registered, a field is out of bounds, or the save fails.
        """
        number = (number or "").strip()
        if not number:
            self.error_message = MSG_NUMBER_REQUIRED
            return False

        async with self._lock:
            try:
                existing = await self._fetch_user_carriers()
            except StorageError as e:
                self.error_message = f"Failed to save carrier: {e}"
                return False

            if any(c.same_identity(carrier_type, number) for c in existing):
                self.error_message = MSG_DUPLICATE
                logger.warning("duplicate_carrier_rejected", carrier_number=number)
                await self._audit.log_carrier_rejected(number, MSG_DUPLICATE)
                return False

            now = self._clock()
            changed = self._clear_default_flags(existing, now) if is_default else []

            user = await self.get_current_user()
            try:
                carrier = Carrier(
                    carrier_type=carrier_type,
                    carrier_number=number,
                    carrier_name=name or "",
                    is_default=is_default,
                    created_at=now,
                    updated_at=now,
                    user_id=user.id if user else None,
                )
            except ValidationError as e:
                self.error_message = f"{MSG_INVALID}: {e.errors()[0]['msg']}"
                logger.warning("invalid_carrier_rejected", carrier_number=number[:64])
                await self._audit.log_carrier_rejected(number[:64], MSG_INVALID)
                return False

            try:
                await self._storage.save_carriers(changed + [carrier])
            except StorageError as e:
                self.error_message = f"Failed to save carrier: {e}"
                logger.error("carrier_save_failed", carrier_number=number, error=str(e))
                return False

        self.error_message = None
        await self._audit.log_carrier_added(
            carrier_id=carrier.id,
            carrier_number=carrier.carrier_number,
            carrier_name=carrier.carrier_name,
            is_default=is_default,
        )
        await self._reload_quietly()
        return True

    async def set_default_carrier(self, carrier: Carrier) -> bool:
        """Flag one carrier as default and clear every other flag in one save."""
        async with self._lock:
            try:
                existing = await self._fetch_user_carriers()
            except StorageError as e:
                self.error_message = f"Failed to set default carrier: {e}"
                return False

            now = self._clock()
            previous = next(
                (c for c in existing if c.is_default and c.id != carrier.id), None
            )
            changed = self._clear_default_flags(
                [c for c in existing if c.id != carrier.id], now
            )

            target = next((c for c in existing if c.id == carrier.id), None)
            if target is None:
                self.error_message = MSG_NOT_FOUND
                return False
            target = target.model_copy(deep=True)
            target.is_default = True
            target.updated_at = now

            try:
                await self._storage.save_carriers(changed + [target])
            except StorageError as e:
                self.error_message = f"Failed to set default carrier: {e}"
                return False

        self.error_message = None
        self.default_carrier = target
        await self._audit.log_default_carrier_changed(
            carrier_id=target.id,
            carrier_number=target.carrier_number,
            previous_default_id=previous.id if previous else None,
        )
        await self._reload_quietly()
        return True

    async def remove_carrier(self, carrier: Carrier) -> bool:
        """
        Delete a carrier.

        If it was the effective default, the first remaining carrier becomes
        the effective default. No other carrier is re-flagged.
        """
        async with self._lock:
            try:
                await self._storage.delete_carrier(carrier.id)
            except NotFoundError:
                self.error_message = MSG_NOT_FOUND
                return False
            except StorageError as e:
                self.error_message = f"Failed to remove carrier: {e}"
                return False

        was_default = self.default_carrier is not None and self.default_carrier.id == carrier.id
        self.carriers = [c for c in self.carriers if c.id != carrier.id]
        if was_default:
            self.default_carrier = self.carriers[0] if self.carriers else None

        self.error_message = None
        await self._audit.log_carrier_removed(
            carrier_id=carrier.id,
            carrier_number=carrier.carrier_number,
            was_default=carrier.is_default,
        )
        return True

    async def record_sync(self, carrier: Carrier, synced_at: datetime) -> Optional[Carrier]:
        """
        Persist a carrier's last sync time.

        Only the timestamps change; every other field comes from the stored
        row, so a stale caller copy cannot undo a concurrent default change.

        Returns:
            The updated carrier, or None if it was removed in the meantime

        Raises:
            StorageError: If the carrier cannot be read or saved
        """
        async with self._lock:
            stored = await self._storage.get_carrier(carrier.id)
            if stored is None:
                logger.warning("sync_recorded_for_removed_carrier", carrier_id=str(carrier.id))
                return None
            updated = stored.model_copy(deep=True)
            updated.last_sync_date = synced_at
            updated.updated_at = synced_at
            await self._storage.save_carriers([updated])

        self.carriers = [updated if c.id == updated.id else c for c in self.carriers]
        if self.default_carrier is not None and self.default_carrier.id == updated.id:
            self.default_carrier = updated
        return updated

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _clear_default_flags(carriers: list[Carrier], now: datetime) -> list[Carrier]:
        """Copies of the flagged carriers with the flag cleared."""
        cleared = []
        for carrier in carriers:
            if carrier.is_default:
                copy = carrier.model_copy(deep=True)
                copy.is_default = False
                copy.updated_at = now
                cleared.append(copy)
        return cleared

    async def _reload_quietly(self) -> None:
        """Refresh the cached list after a successful write."""
        try:
            await self.load_carriers()
        except StorageError as e:
            logger.warning("carrier_reload_failed", error=str(e))
