"""
In-Memory Storage Implementation

Used by tests and by storage-less runs (see create_app_components).

Models are deep-copied on the way in and out, so callers mutating a
Carrier they loaded do not change what is stored until they save it.
Batch writes are validated in full before anything is committed.
"""

from datetime import date
from typing import Optional
from uuid import UUID

from invoice_sync.models.audit import AuditEvent
from invoice_sync.models.invoice import Carrier, Transaction, User
from invoice_sync.services.storage.interface import (
    AuditStorageInterface,
    CarrierStorageInterface,
    DuplicateError,
    NotFoundError,
    TransactionStorageInterface,
    UserStorageInterface,
    duplicate_invoice_numbers,
)


class InMemoryCarrierStorage(CarrierStorageInterface):
    """Dict-backed carrier storage keyed by carrier ID."""

    def __init__(self, carriers: Optional[list[Carrier]] = None):
        self._carriers: dict[UUID, Carrier] = {}
        for carrier in carriers or []:
            self._carriers[carrier.id] = carrier.model_copy(deep=True)

    async def list_carriers(self, user_id: Optional[UUID] = None) -> list[Carrier]:
        return [
            carrier.model_copy(deep=True)
            for carrier in self._carriers.values()
            if user_id is None or carrier.user_id == user_id
        ]

    async def get_carrier(self, carrier_id: UUID) -> Optional[Carrier]:
        carrier = self._carriers.get(carrier_id)
        return carrier.model_copy(deep=True) if carrier else None

    async def save_carriers(self, carriers: list[Carrier]) -> bool:
        staged = dict(self._carriers)
        for carrier in carriers:
            staged[carrier.id] = carrier.model_copy(deep=True)
        self._carriers = staged
        return True

    async def delete_carrier(self, carrier_id: UUID) -> bool:
        if self._carriers.pop(carrier_id, None) is None:
            raise NotFoundError(f"Carrier not found: {carrier_id}")
        return True


class InMemoryTransactionStorage(TransactionStorageInterface):
    """List-backed ledger."""

    def __init__(self, transactions: Optional[list[Transaction]] = None):
        self._transactions: list[Transaction] = [
            t.model_copy(deep=True) for t in transactions or []
        ]

    async def save_transactions(self, transactions: list[Transaction]) -> int:
        existing = {t.invoice_number for t in self._transactions if t.invoice_number}
        duplicates = duplicate_invoice_numbers(existing, transactions)
        if duplicates:
            raise DuplicateError(
                f"Invoice numbers already recorded: {', '.join(duplicates)}"
            )
        self._transactions = self._transactions + [
            t.model_copy(deep=True) for t in transactions
        ]
        return len(transactions)

    async def list_invoice_numbers(self) -> set[str]:
        return {t.invoice_number for t in self._transactions if t.invoice_number}

    async def list_transactions(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Transaction]:
        matches = [
            t.model_copy(deep=True)
            for t in self._transactions
            if (date_from is None or t.date >= date_from)
            and (date_to is None or t.date <= date_to)
        ]
        matches.sort(key=lambda t: t.date, reverse=True)
        return matches[offset:offset + limit]


class InMemoryUserStorage(UserStorageInterface):
    """Holds at most one user."""

    def __init__(self, user: Optional[User] = None):
        self._user = user

    async def get_current_user(self) -> Optional[User]:
        return self._user


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only list of audit events."""

    def __init__(self):
        self._events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = [e for e in self._events if e.correlation_id == correlation_id]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = sorted(self._events, key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
