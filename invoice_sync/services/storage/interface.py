"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Swap Google Sheets for a real database later
2. Use in-memory storage for testing
3. Keep the reconciliation engine decoupled from the backend

The interface is intentionally simple - we're not building a full ORM.
Just the operations the carrier store and the sync engine need.

ATOMICITY: every write method takes the complete batch it should persist.
Implementations must write the batch in one operation, so a failure
leaves none of it visible.
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import Optional
from uuid import UUID

from invoice_sync.models.audit import AuditEvent
from invoice_sync.models.invoice import Carrier, Transaction, User


class CarrierStorageInterface(ABC):
    """Persistence for invoice carriers."""

    @abstractmethod
    async def list_carriers(self, user_id: Optional[UUID] = None) -> list[Carrier]:
        """
        List carriers.

        Args:
            user_id: Only carriers owned by this user. None returns all.

        Returns:
            Carriers in storage order (callers sort)
        """
        pass

    @abstractmethod
    async def get_carrier(self, carrier_id: UUID) -> Optional[Carrier]:
        """Retrieve a carrier by ID, or None."""
        pass

    @abstractmethod
    async def save_carriers(self, carriers: list[Carrier]) -> bool:
        """
        Insert or update carriers in a single write.

        Used for every carrier mutation so that clearing the previous
        default and setting the new one land together.

        Raises:
            StorageError: If the write fails (nothing is persisted)
        """
        pass

    @abstractmethod
    async def delete_carrier(self, carrier_id: UUID) -> bool:
        """
        Delete a carrier.

        Raises:
            NotFoundError: If no carrier has this ID
        """
        pass


class TransactionStorageInterface(ABC):
    """Persistence for ledger transactions."""

    @abstractmethod
    async def save_transactions(self, transactions: list[Transaction]) -> int:
        """
        Insert a batch of transactions atomically.

        Args:
            transactions: New transactions to insert

        Returns:
            Number of transactions inserted

        Raises:
            DuplicateError: If any invoice number is already stored or
                repeats within the batch (nothing is persisted)
            StorageError: If the write fails (nothing is persisted)
        """
        pass

    @abstractmethod
    async def list_invoice_numbers(self) -> set[str]:
        """Invoice numbers of every stored transaction that has one."""
        pass

    @abstractmethod
    async def list_transactions(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Transaction]:
        """
        List transactions, newest first.

        Args:
            date_from: Only transactions on or after this date
            date_to: Only transactions on or before this date
            limit: Maximum number of results
            offset: Number of results to skip
        """
        pass


class UserStorageInterface(ABC):
    """Resolves the account owner."""

    @abstractmethod
    async def get_current_user(self) -> Optional[User]:
        """Return the current user, or None if none is set up yet."""
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (e.g., one sync cycle).

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Returns:
            List of recent events (newest first)
        """
        pass


def duplicate_invoice_numbers(
    existing: set[str],
    batch: list[Transaction],
) -> list[str]:
    """
    Invoice numbers in the batch that are already stored or repeat.

    Shared by every backend so they reject the same batches.
    """
    seen = set(existing)
    duplicates = []
    for transaction in batch:
        number = transaction.invoice_number
        if not number:
            continue
        if number in seen:
            duplicates.append(number)
        seen.add(number)
    return duplicates


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class ConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass
