"""
Shared fixtures.

No test talks to the network or Google: the tax bureau is an
httpx.MockTransport and storage is the in-memory backend.
"""

import json
from datetime import datetime
from zoneinfo import ZoneInfo

import httpx
import pytest

from invoice_sync.audit import AuditLogger
from invoice_sync.carriers import CarrierStore
from invoice_sync.config import SyncSettings, TaxBureauSettings
from invoice_sync.models import User
from invoice_sync.reconciliation import ReconciliationEngine
from invoice_sync.services.storage import (
    InMemoryAuditStorage,
    InMemoryCarrierStorage,
    InMemoryTransactionStorage,
    InMemoryUserStorage,
)
from invoice_sync.services.tax_bureau import TaxBureauClient


TAIPEI = ZoneInfo("Asia/Taipei")
FIXED_NOW = datetime(2024, 3, 31, 10, 30, tzinfo=TAIPEI)


def list_response(records: list[dict], code: str = "200") -> dict:
    return {"v": "0.5", "code": code, "msg": "執行成功", "invNum": records}


def list_record(number: str, seller: str, amount: str, inv_date: str = "2024-03-15") -> dict:
    return {"invNum": number, "invDate": inv_date, "sellerName": seller, "amount": amount}


THREE_INVOICES = [
    list_record("AB10000001", "統一超商 7-11 信義門市", "85"),
    list_record("AB10000002", "台灣中油 民生加油站", "1200"),
    list_record("AB10000003", "誠品書店", "450"),
]


class FakeTaxBureau:
    """
    Callable handler for httpx.MockTransport.

    Responds from a fixed payload (or a function of the request) and
    records every request it saw.
    """

    def __init__(self, payload=None, status_code: int = 200, responder=None):
        self.payload = payload if payload is not None else list_response([])
        self.status_code = status_code
        self.responder = responder
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responder is not None:
            return self.responder(request)
        return httpx.Response(
            self.status_code,
            content=json.dumps(self.payload, ensure_ascii=False).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW


@pytest.fixture
def tax_settings():
    return TaxBureauSettings(api_key="test-app-id", retry_backoff_seconds=0)


@pytest.fixture
def sync_settings():
    return SyncSettings(
        auto_sync_interval_seconds=60,
        max_backoff_seconds=600,
        circuit_breaker_threshold=3,
        circuit_cooldown_seconds=3600,
    )


@pytest.fixture
def fake_bureau():
    return FakeTaxBureau(list_response(THREE_INVOICES))


@pytest.fixture
def make_client(tax_settings, fixed_clock):
    def _make(handler, settings=None) -> TaxBureauClient:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return TaxBureauClient(
            settings=settings or tax_settings,
            http_client=http_client,
            clock=fixed_clock,
        )
    return _make


@pytest.fixture
def owner():
    return User(display_name="Test Owner")


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
def audit_logger(audit_storage):
    return AuditLogger(audit_storage)


@pytest.fixture
def carrier_storage():
    return InMemoryCarrierStorage()


@pytest.fixture
def transaction_storage():
    return InMemoryTransactionStorage()


@pytest.fixture
def carrier_store(carrier_storage, owner, audit_logger, fixed_clock):
    return CarrierStore(
        carrier_storage,
        user_storage=InMemoryUserStorage(owner),
        audit_logger=audit_logger,
        clock=fixed_clock,
    )


@pytest.fixture
def make_engine(make_client, carrier_store, transaction_storage, audit_logger, sync_settings, fixed_clock):
    def _make(handler, transactions=None) -> ReconciliationEngine:
        return ReconciliationEngine(
            client=make_client(handler),
            carrier_store=carrier_store,
            transaction_storage=transactions or transaction_storage,
            audit_logger=audit_logger,
            settings=sync_settings,
            clock=fixed_clock,
        )
    return _make
