"""Shared test fixtures and configuration."""

import json
import os
from datetime import datetime
from typing import Any, Dict, List, Optional, Set
from unittest.mock import patch

import httpx
import pytest

# Set up test environment variables before importing modules
os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("TENANT_PAYMENTS_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("TENANT_PAYMENTS_TENANT_ID", "7")

from tenant_payments.backend import BackendClient
from tenant_payments.config import Settings
from tenant_payments.models import Invoice, PaymentIntent, PaymentMethod
from tenant_payments.window import WindowHandle

API_BASE_URL = "http://portal.test/api"
TENANT_ID = 7


class FakePortal:
    """In-memory portal backend served through ``httpx.MockTransport``."""

    def __init__(self):
        self.invoices: Dict[int, Dict[str, Any]] = {}
        self.payments: List[Dict[str, Any]] = []
        self.gateway_statuses: Dict[str, List[str]] = {}
        self.requests: List[httpx.Request] = []
        self.manual_submissions: List[Dict[str, Any]] = []
        self.unavailable: Set[str] = set()  # "invoice", "tenant_payments", "status", "generate", "manual"
        self.status_body_as_list = False
        self.reject_generate: Optional[str] = None
        self.reject_manual: Optional[str] = None
        self._orders = 0

    def add_invoice(self, invoice_id: int, amount: int, amount_paid: int = 0, booking_id: Optional[int] = None) -> None:
        self.invoices[invoice_id] = {
            "invoiceId": invoice_id,
            "bookingId": booking_id,
            "amount": amount,
            "amountPaid": amount_paid,
            "status": "unpaid",
            "dueDate": "2024-06-30",
        }

    def add_payment(
        self,
        invoice_id: Any,
        status: str,
        method: str = "manual",
        payment_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        updated_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        payment = {
            "paymentId": payment_id or f"pay-{len(self.payments) + 1}",
            "invoiceId": invoice_id,
            "tenantId": TENANT_ID,
            "amount": 150000,
            "status": status,
            "paymentMethod": method,
            "transactionId": transaction_id,
            "updatedAt": (updated_at or datetime.utcnow()).isoformat(),
        }
        self.payments.append(payment)
        return payment

    def paths(self, method: Optional[str] = None) -> List[str]:
        return [r.url.path for r in self.requests if method is None or r.method == method]

    def _down(self, route: str) -> Optional[httpx.Response]:
        if route in self.unavailable:
            return httpx.Response(503, json={"message": f"{route} unavailable"})
        return None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path[len("/api"):]
        parts = path.strip("/").split("/")

        if request.method == "GET" and parts[0] == "invoices" and len(parts) == 2:
            return self._down("invoice") or self._get_invoice(int(parts[1]))
        if request.method == "GET" and parts[0] == "tenants" and parts[-1] == "payments":
            return self._down("tenant_payments") or httpx.Response(
                200, json={"payments": [p for p in self.payments if str(p["tenantId"]) == parts[1]]}
            )
        if request.method == "GET" and parts[:2] == ["payments", "gateway"] and parts[-1] == "status":
            return self._down("status") or self._get_status(parts[2])
        if request.method == "POST" and path == "/invoices/generate":
            return self._down("generate") or self._generate(json.loads(request.content))
        if request.method == "POST" and path == "/payments/manual":
            return self._down("manual") or self._create_manual(json.loads(request.content))
        return httpx.Response(404, json={"message": "not found"})

    def _get_invoice(self, invoice_id: int) -> httpx.Response:
        invoice = self.invoices.get(invoice_id)
        if invoice is None:
            return httpx.Response(404, json={"message": "invoice not found"})
        body = dict(invoice)
        body["payments"] = [p for p in self.payments if str(p["invoiceId"]) == str(invoice_id)]
        return httpx.Response(200, json={"invoice": body})

    def _get_status(self, reference: str) -> httpx.Response:
        statuses = self.gateway_statuses.get(reference)
        if not statuses:
            return httpx.Response(404, json={"message": "order not found"})
        status = statuses.pop(0) if len(statuses) > 1 else statuses[0]
        if self.status_body_as_list:
            return httpx.Response(200, json=[{"status": status}])
        return httpx.Response(200, json={"status": status, "amount": "150000.00", "paymentType": "bank_transfer"})

    def _generate(self, body: Dict[str, Any]) -> httpx.Response:
        if self.reject_generate:
            return httpx.Response(400, json={"message": self.reject_generate})
        self._orders += 1
        reference = f"INV-{body.get('invoiceId')}-{self._orders}"
        self.gateway_statuses.setdefault(reference, ["pending"])
        invoice = self.invoices.get(body.get("invoiceId"))
        return httpx.Response(200, json={
            "invoice": dict(invoice, payments=[]) if invoice else None,
            "redirectUrl": f"https://gateway.test/pay/{reference}",
            "externalReference": reference,
        })

    def _create_manual(self, body: Dict[str, Any]) -> httpx.Response:
        if self.reject_manual:
            return httpx.Response(409, json={"message": self.reject_manual})
        self.manual_submissions.append(body)
        payment = self.add_payment(body["invoiceId"], "pending", method="manual")
        return httpx.Response(201, json={"paymentId": payment["paymentId"], "status": "pending"})


class FakeWindow(WindowHandle):
    """Window handle whose closed-state the test controls."""

    def __init__(self, url: str):
        self.url = url
        self._closed = False
        self.close_calls = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self.close_calls += 1
        self._closed = True


class FakeOpener:
    """Window opener recording every call; ``block`` simulates a popup blocker."""

    def __init__(self, block: bool = False):
        self.block = block
        self.calls: List[Any] = []
        self.windows: List[FakeWindow] = []

    def __call__(self, url, name, features):
        self.calls.append((url, name, features))
        if self.block:
            return None
        window = FakeWindow(url)
        self.windows.append(window)
        return window


@pytest.fixture
def portal() -> FakePortal:
    """A portal with invoice #42 for 150000 outstanding."""
    fake = FakePortal()
    fake.add_invoice(42, 150000, booking_id=9)
    return fake


@pytest.fixture
def settings() -> Settings:
    """Settings with fast timers."""
    return Settings(
        api_base_url=API_BASE_URL,
        api_token="tenant-token",
        tenant_id=TENANT_ID,
        poll_interval_seconds=0.01,
        countdown_seconds=300,
        countdown_tick_seconds=0.01,
        window_watch_interval_seconds=0.01,
        network_failure_threshold=3,
        database_url="sqlite+aiosqlite:///:memory:",
    )


@pytest.fixture
def backend(portal, settings) -> BackendClient:
    return BackendClient.from_settings(settings, transport=httpx.MockTransport(portal.handler))


@pytest.fixture
def opener() -> FakeOpener:
    return FakeOpener()


@pytest.fixture
def invoice() -> Invoice:
    return Invoice(invoice_id=42, booking_id=9, amount=150000)


@pytest.fixture
def online_intent(invoice) -> PaymentIntent:
    return PaymentIntent.for_invoice(invoice, TENANT_ID, PaymentMethod.ONLINE)


@pytest.fixture
def manual_intent(invoice) -> PaymentIntent:
    return PaymentIntent.for_invoice(invoice, TENANT_ID, PaymentMethod.MANUAL)


@pytest.fixture
def mock_api_key():
    """Set up mock API key for authentication."""
    with patch.dict(os.environ, {"API_KEY": "test_api_key_12345"}):
        yield "test_api_key_12345"


@pytest.fixture
def auth_headers(mock_api_key):
    """Return headers with authentication."""
    return {"Authorization": f"Bearer {mock_api_key}"}


# Database fixtures
@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite database for testing."""
    from tenant_payments.database import Base, create_async_engine

    engine = create_async_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(db_engine):
    """Create a database session for testing."""
    from tenant_payments.database import get_async_session_factory

    session_factory = get_async_session_factory(db_engine)
    async with session_factory() as session:
        yield session


@pytest.fixture
def blocking_opener() -> FakeOpener:
    return FakeOpener(block=True)
