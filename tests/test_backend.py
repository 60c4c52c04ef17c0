"""Tests for the portal backend client."""

import json

import httpx
import pytest

from tenant_payments.backend import BackendClient
from tenant_payments.errors import BackendRejected, NetworkError, NotFound


def client_for(handler) -> BackendClient:
    return BackendClient("http://portal.test/api/", token="secret", transport=httpx.MockTransport(handler))


class TestErrorMapping:
    """Test translation of HTTP failures into payment errors."""

    async def test_timeout_is_network_error(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        async with client_for(handler) as client:
            with pytest.raises(NetworkError, match="timed out"):
                await client.get_invoice(42)

    async def test_connection_failure_is_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with client_for(handler) as client:
            with pytest.raises(NetworkError) as exc_info:
                await client.get_tenant_payments(7)
        assert exc_info.value.recoverable

    async def test_server_error_is_network_error(self):
        async with client_for(lambda request: httpx.Response(502, text="bad gateway")) as client:
            with pytest.raises(NetworkError) as exc_info:
                await client.get_gateway_status("INV-42-1")
        assert exc_info.value.status_code == 502

    async def test_404_is_not_found(self):
        async with client_for(lambda request: httpx.Response(404, json={"message": "nope"})) as client:
            with pytest.raises(NotFound):
                await client.get_invoice(404)

    @pytest.mark.parametrize("key", ["message", "detail", "error"])
    async def test_4xx_is_rejected_with_message(self, key):
        response = httpx.Response(409, json={key: "Duplicate payment"})
        async with client_for(lambda request: response) as client:
            with pytest.raises(BackendRejected) as exc_info:
                await client.create_manual_payment({"invoiceId": 42})
        assert exc_info.value.message == "Duplicate payment"
        assert exc_info.value.status_code == 409

    async def test_4xx_without_body(self):
        async with client_for(lambda request: httpx.Response(400)) as client:
            with pytest.raises(BackendRejected, match="400"):
                await client.create_manual_payment({})

    async def test_malformed_success_body(self):
        async with client_for(lambda request: httpx.Response(200, text="<html>")) as client:
            with pytest.raises(NetworkError, match="Malformed"):
                await client.get_gateway_status("INV-42-1")

    @pytest.mark.parametrize("body", [["settlement"], "settlement", 3])
    async def test_non_object_status_body(self, body):
        async with client_for(lambda request: httpx.Response(200, json=body)) as client:
            with pytest.raises(NetworkError, match="Expected a JSON object"):
                await client.get_gateway_status("INV-42-1")

    async def test_non_object_generate_and_manual_bodies(self):
        async with client_for(lambda request: httpx.Response(200, json=[])) as client:
            with pytest.raises(NetworkError):
                await client.generate_invoice(invoice_id=42)
            with pytest.raises(NetworkError):
                await client.create_manual_payment({"invoiceId": 42})


class TestRequests:
    """Test request shapes and response parsing."""

    async def test_headers_and_base_url(self, portal):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"invoiceId": 42, "amount": 150000})

        async with client_for(handler) as client:
            invoice = await client.get_invoice(42)

        assert invoice.invoice_id == 42
        assert seen[0].url.path == "/api/invoices/42"
        assert seen[0].headers["Authorization"] == "Bearer secret"
        assert seen[0].headers["Accept"] == "application/json"

    async def test_get_invoice_unwraps_payments(self, backend, portal):
        portal.add_payment(42, "pending")
        invoice = await backend.get_invoice(42)
        assert invoice.outstanding_amount == 150000
        assert len(invoice.payments) == 1
        assert invoice.payments[0].is_manual
        assert invoice.payments[0].is_pending

    async def test_tenant_payments_accepts_bare_list(self):
        body = [{"paymentId": 5, "invoiceId": "42", "status": "verified"}]
        async with client_for(lambda request: httpx.Response(200, json=body)) as client:
            payments = await client.get_tenant_payments(7)
        assert payments[0].payment_id == "5"
        assert payments[0].belongs_to(42)

    async def test_generate_invoice_body(self, backend, portal):
        result = await backend.generate_invoice(invoice_id=42, items=[{"description": "Rent", "amount": 1}])
        body = json.loads(portal.requests[-1].content)
        assert body == {"items": [{"description": "Rent", "amount": 1}], "enableGateway": True, "invoiceId": 42}
        assert result["externalReference"] == "INV-42-1"

    async def test_generate_invoice_requires_identifier(self, backend):
        with pytest.raises(ValueError):
            await backend.generate_invoice()
