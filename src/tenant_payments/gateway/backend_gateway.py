"""Gateway client that goes through the portal backend."""

import logging
from typing import Dict, Optional

from ..backend import BackendClient
from ..errors import BackendRejected, GatewayRejected, NetworkError
from ..models import GatewayNotification, GatewayStatus, Invoice, PaymentIntent, RedirectSession
from .base import GatewayClientBase, parse_gateway_notification

logger = logging.getLogger(__name__)


class BackendGatewayClient(GatewayClientBase):
    """The backend holds the gateway credentials; this client only speaks to it."""

    def __init__(self, backend: BackendClient, server_key: Optional[str] = None):
        self.backend = backend
        self.server_key = server_key

    async def check_status(self, external_reference: str) -> GatewayStatus:
        payload = await self.backend.get_gateway_status(external_reference)
        status = payload.get("status") or payload.get("transactionStatus")
        if not status:
            raise NetworkError(f"Status response for {external_reference} has no status")
        return GatewayStatus(
            status=str(status),
            amount=_whole_amount(payload.get("amount") or payload.get("grossAmount")),
            payment_type=payload.get("paymentType"),
        )

    async def create_redirect(self, intent: PaymentIntent) -> RedirectSession:
        try:
            payload = await self.backend.generate_invoice(
                booking_id=intent.booking_id,
                invoice_id=intent.invoice_id,
                items=[{"description": f"Invoice {intent.invoice_id}", "amount": intent.amount}],
                enable_gateway=True,
            )
        except BackendRejected as e:
            logger.warning(f"Gateway rejected invoice {intent.invoice_id}: {e.message}")
            raise GatewayRejected(e.message, e.detail) from e

        redirect_url = payload.get("redirectUrl")
        external_reference = payload.get("externalReference")
        if not redirect_url or not external_reference:
            raise GatewayRejected(
                f"Gateway did not return a redirect for invoice {intent.invoice_id}",
                {"invoice_id": intent.invoice_id},
            )

        invoice = None
        if isinstance(payload.get("invoice"), dict):
            invoice = Invoice.model_validate(payload["invoice"])
            if invoice.outstanding_amount != intent.amount:
                logger.warning(
                    f"Invoice {intent.invoice_id} outstanding amount changed from "
                    f"{intent.amount} to {invoice.outstanding_amount}"
                )

        logger.info(f"Created gateway transaction {external_reference} for invoice {intent.invoice_id}")
        return RedirectSession(
            redirect_url=redirect_url,
            external_reference=str(external_reference),
            invoice=invoice,
        )

    def parse_notification(self, headers: Dict[str, str], body: bytes) -> GatewayNotification:
        return parse_gateway_notification(body, self.server_key)

    async def aclose(self) -> None:
        await self.backend.aclose()

    def health_check(self):
        return {"ok": True, "provider": "backend", "base_url": self.backend.base_url}


def _whole_amount(value) -> Optional[int]:
    """Gateways report amounts like ``"150000.00"``."""
    if value is None:
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None
