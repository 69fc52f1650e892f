"""
Tests for categorization and the reconciliation engine.

Every engine test runs against in-memory storage, a mocked tax bureau
and the fixed clock (2024-03-31 10:30 Asia/Taipei).
"""

import asyncio
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock
from uuid import uuid4

import httpx

from invoice_sync.models import (
    AuditEventType,
    CarrierType,
    InputMethod,
    InvoiceInfo,
    InvoiceItem,
    SyncErrorCode,
    Transaction,
    TransactionCategory,
    TransactionType,
)
from invoice_sync.reconciliation import (
    build_transaction_notes,
    classify_invoice,
    invoice_to_transaction,
)
from invoice_sync.services.storage import InMemoryTransactionStorage, StorageError

from tests.conftest import (
    FIXED_NOW,
    THREE_INVOICES,
    FakeTaxBureau,
    list_record,
    list_response,
)


def make_invoice(**overrides) -> InvoiceInfo:
    fields = {
        "invoice_number": "AB12345678",
        "invoice_date": date(2024, 3, 10),
        "seller_name": "好咖啡",
        "amount": Decimal("105.00"),
        "tax_amount": Decimal("5.00"),
    }
    fields.update(overrides)
    return InvoiceInfo(**fields)


async def add_default_carrier(carrier_store, number="/ABC1234"):
    assert await carrier_store.add_carrier(
        CarrierType.MOBILE_BARCODE, number, "Phone", is_default=True
    )
    return carrier_store.default_carrier


class TestClassification:
    """Tests for seller-name keyword categorization."""

    def test_convenience_store_is_food(self):
        assert classify_invoice("統一超商 7-11 信義門市") == TransactionCategory.FOOD
        assert classify_invoice("全家便利商店") == TransactionCategory.FOOD

    def test_fuel_station_is_transport(self):
        assert classify_invoice("台灣中油股份有限公司") == TransactionCategory.TRANSPORT

    def test_medical_and_education(self):
        assert classify_invoice("大安藥局") == TransactionCategory.HEALTHCARE
        assert classify_invoice("補習教育中心") == TransactionCategory.EDUCATION

    def test_match_is_case_insensitive(self):
        assert classify_invoice("OK MART 民生店") == TransactionCategory.FOOD

    def test_unmatched_is_shopping(self):
        assert classify_invoice("誠品書店") == TransactionCategory.SHOPPING
        assert classify_invoice("") == TransactionCategory.SHOPPING

    def test_ok_inside_other_words_does_not_match(self):
        assert classify_invoice("Bookstore Taipei") == TransactionCategory.SHOPPING


class TestTransactionBuilding:
    """Tests for turning an invoice into a ledger row."""

    def test_notes_list_items_and_tax(self):
        invoice = make_invoice(items=(
            InvoiceItem(name="拿鐵", quantity=Decimal("2"), unit_price=Decimal("50"), amount=Decimal("100")),
            InvoiceItem(name="糖", quantity=Decimal("1.5"), unit_price=Decimal("2"), amount=Decimal("3")),
        ))

        notes = build_transaction_notes(invoice)

        assert notes == "Invoice: AB12345678\nItems: 拿鐵 x2, 糖 x1.5\nTax: 5.00"

    def test_notes_truncate_long_item_lists(self):
        items = tuple(
            InvoiceItem(name=f"item{i}", quantity=Decimal("1"), unit_price=Decimal("1"), amount=Decimal("1"))
            for i in range(7)
        )

        notes = build_transaction_notes(make_invoice(items=items))

        assert "item4 x1" in notes
        assert "item5" not in notes
        assert "(7 items total)" in notes

    def test_notes_without_items_or_tax(self):
        notes = build_transaction_notes(make_invoice(tax_amount=Decimal("0")))
        assert notes == "Invoice: AB12345678"

    def test_transaction_fields(self, owner):
        invoice = make_invoice(seller_name="全家便利商店")

        transaction = invoice_to_transaction(invoice, FIXED_NOW, user_id=owner.id)

        assert transaction.amount == Decimal("105.00")
        assert transaction.transaction_type == TransactionType.EXPENSE
        assert transaction.category == TransactionCategory.FOOD
        assert transaction.description == "全家便利商店"
        assert transaction.date == date(2024, 3, 10)
        assert transaction.invoice_number == "AB12345678"
        assert transaction.invoice_date == date(2024, 3, 10)
        assert transaction.merchant_name == "全家便利商店"
        assert transaction.tax_amount == Decimal("5.00")
        assert transaction.input_method == InputMethod.INVOICE_SYNC
        assert transaction.is_auto_categorized
        assert transaction.user_id == owner.id

    def test_long_seller_name_is_cut_to_fit(self):
        invoice = make_invoice(seller_name="店" * 501)

        transaction = invoice_to_transaction(invoice, FIXED_NOW)

        assert transaction.description == "店" * 500
        assert transaction.merchant_name == "店" * 501

    def test_long_item_names_keep_notes_in_bounds(self):
        items = tuple(
            InvoiceItem(name="品" * 600, quantity=Decimal("1"), unit_price=Decimal("1"), amount=Decimal("1"))
            for _ in range(5)
        )

        notes = build_transaction_notes(make_invoice(items=items))

        assert len(notes) == 2000
        assert notes.startswith("Invoice: AB12345678")


class TestSyncCycle:
    """Tests for a full reconciliation cycle."""

    async def test_creates_transactions(self, make_engine, fake_bureau, carrier_store, transaction_storage):
        carrier = await add_default_carrier(carrier_store)
        engine = make_engine(fake_bureau)

        result = await engine.sync_invoices_from_tax_bureau()

        assert result.success
        assert result.summary.carrier_id == carrier.id
        assert result.summary.fetched_count == 3
        assert result.summary.created_count == 3
        assert result.summary.duplicate_count == 0

        stored = await transaction_storage.list_transactions()
        categories = {t.invoice_number: t.category for t in stored}
        assert categories == {
            "AB10000001": TransactionCategory.FOOD,
            "AB10000002": TransactionCategory.TRANSPORT,
            "AB10000003": TransactionCategory.SHOPPING,
        }
        assert all(t.user_id == carrier.user_id for t in stored)

    async def test_second_run_is_idempotent(self, make_engine, fake_bureau, carrier_store, transaction_storage):
        await add_default_carrier(carrier_store)
        engine = make_engine(fake_bureau)

        first = await engine.sync_invoices_from_tax_bureau()
        second = await engine.sync_invoices_from_tax_bureau()

        assert first.summary.created_count == 3
        assert second.success
        assert second.summary.created_count == 0
        assert second.summary.duplicate_count == 3
        assert len(await transaction_storage.list_transactions()) == 3

    async def test_duplicates_within_one_response(self, make_engine, carrier_store, transaction_storage):
        await add_default_carrier(carrier_store)
        records = [list_record("AB10000001", "7-11", "50"), list_record("AB10000001", "7-11", "50")]
        engine = make_engine(FakeTaxBureau(list_response(records)))

        result = await engine.sync_invoices_from_tax_bureau()

        assert result.summary.created_count == 1
        assert result.summary.duplicate_count == 1
        assert len(await transaction_storage.list_transactions()) == 1

    async def test_default_date_range_from_clock(self, make_engine, fake_bureau, carrier_store):
        await add_default_carrier(carrier_store)
        engine = make_engine(fake_bureau)

        result = await engine.sync_invoices_from_tax_bureau()

        params = fake_bureau.requests[0].url.params
        # 31 March minus one calendar month clamps to 29 February (leap year)
        assert params["invDate"] == "2024-02-29"
        assert params["invEndDate"] == "2024-03-31"
        assert result.summary.start_date == date(2024, 2, 29)
        assert result.summary.end_date == date(2024, 3, 31)

    async def test_explicit_dates_and_carrier(self, make_engine, fake_bureau, carrier_store):
        await add_default_carrier(carrier_store, "/DEF0001")
        assert await carrier_store.add_carrier(CarrierType.MOBILE_BARCODE, "/OTH0001", "Other")
        other = next(c for c in carrier_store.carriers if c.carrier_number == "/OTH0001")
        engine = make_engine(fake_bureau)

        await engine.sync_invoices_from_tax_bureau(
            carrier=other, start_date=date(2024, 1, 1), end_date=date(2024, 1, 31)
        )

        params = fake_bureau.requests[0].url.params
        assert params["carrierId"] == "/OTH0001"
        assert params["invDate"] == "2024-01-01"
        assert params["invEndDate"] == "2024-01-31"

    async def test_success_records_sync_time(self, make_engine, fake_bureau, carrier_store, carrier_storage):
        carrier = await add_default_carrier(carrier_store)
        engine = make_engine(fake_bureau)

        result = await engine.sync_invoices_from_tax_bureau()

        assert result.summary.synced_at == FIXED_NOW
        assert engine.last_sync_date == FIXED_NOW
        assert engine.error_message is None
        assert not engine.is_syncing
        stored = await carrier_storage.get_carrier(carrier.id)
        assert stored.last_sync_date == FIXED_NOW

    async def test_audit_trail_shares_correlation_id(self, make_engine, fake_bureau, carrier_store, audit_storage):
        await add_default_carrier(carrier_store)
        engine = make_engine(fake_bureau)

        correlation_id = uuid4()

        await engine.sync_invoices_from_tax_bureau(correlation_id=correlation_id)

        sync_events = await audit_storage.get_events_by_correlation_id(correlation_id)
        assert [e.event_type for e in sync_events] == [
            AuditEventType.SYNC_STARTED,
            AuditEventType.INVOICES_FETCHED,
            AuditEventType.TRANSACTIONS_SAVED,
            AuditEventType.SYNC_COMPLETED,
        ]

    async def test_long_seller_name_does_not_abort_cycle(self, make_engine, carrier_store, transaction_storage):
        await add_default_carrier(carrier_store)
        bureau = FakeTaxBureau(list_response([list_record("AB10000009", "店" * 501, "100")]))
        engine = make_engine(bureau)

        result = await engine.sync_invoices_from_tax_bureau()

        assert result.success
        assert result.summary.created_count == 1
        stored = await transaction_storage.list_transactions()
        assert len(stored[0].description) == 500

    async def test_unbuildable_record_is_dropped(self, make_engine, fake_bureau, carrier_store, monkeypatch):
        await add_default_carrier(carrier_store)

        def build(invoice, created_at, user_id=None):
            if invoice.invoice_number == "AB10000002":
                # Negative amounts fail Transaction validation
                return invoice_to_transaction(
                    invoice.model_copy(update={"amount": Decimal("-1")}), created_at, user_id
                )
            return invoice_to_transaction(invoice, created_at, user_id=user_id)

        monkeypatch.setattr("invoice_sync.reconciliation.engine.invoice_to_transaction", build)
        engine = make_engine(fake_bureau)

        result = await engine.sync_invoices_from_tax_bureau()

        assert result.success
        assert result.summary.fetched_count == 3
        assert result.summary.created_count == 2


class TestSyncFailures:
    """Tests for cycles that stop early."""

    async def test_no_carrier(self, make_engine, fake_bureau):
        engine = make_engine(fake_bureau)

        result = await engine.sync_invoices_from_tax_bureau()

        assert not result.success
        assert result.error_code == SyncErrorCode.NO_CARRIER
        assert result.error_message == "Please set up an invoice carrier first"
        assert engine.error_message == result.error_message
        assert fake_bureau.requests == []

    async def test_fetch_failure_writes_nothing(self, make_engine, carrier_store, transaction_storage):
        carrier = await add_default_carrier(carrier_store)
        engine = make_engine(FakeTaxBureau(status_code=500))

        result = await engine.sync_invoices_from_tax_bureau()

        assert result.error_code == SyncErrorCode.FETCH_FAILED
        assert "500" in result.error_message
        assert engine.error_message == result.error_message
        assert await transaction_storage.list_transactions() == []
        assert carrier_store.default_carrier.last_sync_date is None
        assert engine.last_sync_date is None
        assert result.summary.carrier_id == carrier.id

    async def test_error_message_cleared_by_next_success(self, make_engine, carrier_store):
        await add_default_carrier(carrier_store)
        responses = iter([
            httpx.Response(500),
            httpx.Response(200, json=list_response(THREE_INVOICES)),
        ])
        engine = make_engine(FakeTaxBureau(responder=lambda request: next(responses)))

        failed = await engine.sync_invoices_from_tax_bureau()
        assert engine.error_message == failed.error_message

        ok = await engine.sync_invoices_from_tax_bureau()
        assert ok.success
        assert engine.error_message is None

    async def test_save_failure_is_atomic(self, make_engine, fake_bureau, carrier_store):
        await add_default_carrier(carrier_store)
        # Another writer already recorded the third invoice, but the
        # dedupe read does not see it yet
        existing = Transaction(
            amount=Decimal("450"),
            transaction_type=TransactionType.EXPENSE,
            category=TransactionCategory.SHOPPING,
            date=date(2024, 3, 15),
            invoice_number="AB10000003",
        )
        storage = InMemoryTransactionStorage([existing])
        storage.list_invoice_numbers = AsyncMock(return_value=set())
        engine = make_engine(fake_bureau, transactions=storage)

        result = await engine.sync_invoices_from_tax_bureau()

        assert result.error_code == SyncErrorCode.SAVE_FAILED
        stored = await storage.list_transactions()
        assert [t.invoice_number for t in stored] == ["AB10000003"]

    async def test_storage_error_on_save(self, make_engine, fake_bureau, carrier_store):
        await add_default_carrier(carrier_store)
        storage = InMemoryTransactionStorage()
        storage.save_transactions = AsyncMock(side_effect=StorageError("sheet locked"))
        engine = make_engine(fake_bureau, transactions=storage)

        result = await engine.sync_invoices_from_tax_bureau()

        assert result.error_code == SyncErrorCode.SAVE_FAILED
        assert "sheet locked" in result.error_message
        assert result.summary.created_count == 0
        assert await storage.list_transactions() == []

    async def test_carrier_update_failure_keeps_counts(
        self, make_engine, fake_bureau, carrier_store, carrier_storage, transaction_storage
    ):
        await add_default_carrier(carrier_store)
        carrier_storage.save_carriers = AsyncMock(side_effect=StorageError("sheet locked"))
        engine = make_engine(fake_bureau)

        result = await engine.sync_invoices_from_tax_bureau()

        assert result.error_code == SyncErrorCode.CARRIER_UPDATE_FAILED
        assert result.summary.created_count == 3
        assert len(await transaction_storage.list_transactions()) == 3
        assert engine.last_sync_date is None


class TestSyncSerialization:
    """Overlapping syncs for one carrier are rejected."""

    async def test_overlapping_sync_rejected(self, make_engine, carrier_store):
        await add_default_carrier(carrier_store)
        entered = asyncio.Event()
        release = asyncio.Event()

        async def gated(request):
            entered.set()
            await release.wait()
            return httpx.Response(200, json=list_response(THREE_INVOICES))

        engine = make_engine(gated)

        first = asyncio.create_task(engine.sync_invoices_from_tax_bureau())
        await entered.wait()
        assert engine.is_syncing
        assert engine.is_carrier_syncing(carrier_store.default_carrier.id)

        second = await engine.sync_invoices_from_tax_bureau()
        assert not second.success
        assert second.error_code == SyncErrorCode.SYNC_IN_PROGRESS

        release.set()
        result = await first
        assert result.success
        assert result.summary.created_count == 3
        assert not engine.is_syncing

    async def test_different_carriers_run_concurrently(self, make_engine, carrier_store):
        await add_default_carrier(carrier_store, "/AAA1111")
        assert await carrier_store.add_carrier(CarrierType.MOBILE_BARCODE, "/BBB2222", "B")
        carrier_a, carrier_b = sorted(carrier_store.carriers, key=lambda c: c.carrier_number)
        in_flight = []
        release = asyncio.Event()

        async def gated(request):
            in_flight.append(request.url.params["carrierId"])
            await release.wait()
            return httpx.Response(200, json=list_response([]))

        engine = make_engine(gated)

        task_a = asyncio.create_task(engine.sync_invoices_from_tax_bureau(carrier=carrier_a))
        task_b = asyncio.create_task(engine.sync_invoices_from_tax_bureau(carrier=carrier_b))
        while len(in_flight) < 2:
            await asyncio.sleep(0)
        release.set()

        results = await asyncio.gather(task_a, task_b)
        assert all(r.success for r in results)
        assert sorted(in_flight) == ["/AAA1111", "/BBB2222"]


class TestStaleCarrierCopies:
    """A sync started from an old carrier copy only touches sync timestamps."""

    async def test_old_default_copy_does_not_reflag(self, make_engine, fake_bureau, carrier_store, carrier_storage):
        held = await add_default_carrier(carrier_store, "/AAA1111")
        assert await carrier_store.add_carrier(CarrierType.MOBILE_BARCODE, "/BBB2222", "Card")
        other = next(c for c in carrier_store.carriers if c.carrier_number == "/BBB2222")
        assert await carrier_store.set_default_carrier(other)
        engine = make_engine(fake_bureau)

        result = await engine.sync_invoices_from_tax_bureau(carrier=held)

        assert result.success
        stored = await carrier_storage.list_carriers()
        assert [c.carrier_number for c in stored if c.is_default] == ["/BBB2222"]
        synced = await carrier_storage.get_carrier(held.id)
        assert synced.last_sync_date == FIXED_NOW
        assert carrier_store.default_carrier.carrier_number == "/BBB2222"

    async def test_removed_carrier_is_not_restored(self, make_engine, fake_bureau, carrier_store, carrier_storage):
        held = await add_default_carrier(carrier_store, "/AAA1111")
        assert await carrier_store.remove_carrier(held)
        engine = make_engine(fake_bureau)

        await engine.sync_invoices_from_tax_bureau(carrier=held)

        assert await carrier_storage.list_carriers() == []
        assert carrier_store.carriers == []
