"""HTTP client for the tenant portal REST backend."""

import logging
from datetime import date
from typing import Any, Dict, List, Optional, Union

import httpx

from .config import Settings
from .errors import BackendRejected, NetworkError, NotFound
from .models import Invoice, PaymentRecord

logger = logging.getLogger(__name__)


class BackendClient:
    """Thin async wrapper over the portal API.

    Transport failures and 5xx responses become ``NetworkError``, 404 becomes
    ``NotFound`` and other 4xx responses become ``BackendRejected``; callers
    translate the latter into their own business error.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            base_url: API base URL, e.g. ``https://portal.example/api``.
            token: Optional bearer token.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (used by tests).
        """
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "BackendClient":
        return cls(
            base_url=settings.api_base_url,
            token=settings.api_token,
            timeout=settings.request_timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        try:
            resp = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            logger.warning(f"{method} {path} timed out")
            raise NetworkError(f"Request to {path} timed out") from e
        except httpx.TransportError as e:
            logger.warning(f"{method} {path} failed: {type(e).__name__}")
            raise NetworkError(f"Failed to reach backend for {path}") from e

        if resp.status_code == 404:
            raise NotFound(f"{path} not found", {"status_code": 404})
        if resp.status_code >= 500:
            logger.warning(f"{method} {path} returned {resp.status_code}")
            raise NetworkError(f"Backend error {resp.status_code} for {path}", status_code=resp.status_code)

        payload = _json_or_none(resp)
        if resp.status_code >= 400:
            message = _error_message(payload) or f"Request rejected with {resp.status_code}"
            raise BackendRejected(message, resp.status_code, payload if isinstance(payload, dict) else None)
        if payload is None:
            raise NetworkError(f"Malformed response body from {path}", status_code=resp.status_code)
        return payload

    async def generate_invoice(
        self,
        booking_id: Optional[int] = None,
        invoice_id: Optional[int] = None,
        items: Optional[List[Dict[str, Any]]] = None,
        due_date: Optional[date] = None,
        enable_gateway: bool = True,
    ) -> Dict[str, Any]:
        """``POST /invoices/generate``; returns ``{invoice, redirectUrl, externalReference}``."""
        if booking_id is None and invoice_id is None:
            raise ValueError("Either booking_id or invoice_id is required")
        body: Dict[str, Any] = {
            "items": items or [],
            "enableGateway": enable_gateway,
        }
        if booking_id is not None:
            body["bookingId"] = booking_id
        if invoice_id is not None:
            body["invoiceId"] = invoice_id
        if due_date is not None:
            body["dueDate"] = due_date.isoformat()
        return _object(await self._request("POST", "/invoices/generate", json=body), "/invoices/generate")

    async def get_gateway_status(self, external_reference: str) -> Dict[str, Any]:
        """``GET /payments/gateway/{ref}/status``."""
        path = f"/payments/gateway/{external_reference}/status"
        return _object(await self._request("GET", path), path)

    async def create_manual_payment(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """``POST /payments/manual``; returns ``{paymentId, status}``."""
        return _object(await self._request("POST", "/payments/manual", json=body), "/payments/manual")

    async def get_invoice(self, invoice_id: int) -> Invoice:
        """``GET /invoices/{id}``; accepts both wrapped and bare invoice bodies."""
        payload = await self._request("GET", f"/invoices/{invoice_id}")
        if isinstance(payload, dict) and isinstance(payload.get("invoice"), dict):
            payload = payload["invoice"]
        return Invoice.model_validate(payload)

    async def get_tenant_payments(self, tenant_id: int) -> List[PaymentRecord]:
        """``GET /tenants/{id}/payments``."""
        payload = await self._request("GET", f"/tenants/{tenant_id}/payments")
        return [PaymentRecord.model_validate(p) for p in _unwrap_list(payload, "payments")]


def _json_or_none(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return None


def _error_message(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    for key in ("message", "detail", "error"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _unwrap_list(payload: Union[Dict[str, Any], List[Any]], key: str) -> List[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        value = payload.get(key)
        if isinstance(value, list):
            return value
    return []


def _object(payload: Any, path: str) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise NetworkError(f"Expected a JSON object from {path}, got {type(payload).__name__}")
    return payload
