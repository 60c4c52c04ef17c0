import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from ..models import GatewayNotification, GatewayStatus, PaymentIntent, RedirectSession


class GatewayClientBase(ABC):
    """
    Minimal gateway interface. ``check_status`` and ``create_redirect`` suspend on
    the network; ``parse_notification`` is pure.
    """

    @abstractmethod
    async def check_status(self, external_reference: str) -> GatewayStatus:
        """
        Fetch the current gateway status for an order. ``pending`` is a normal
        response; raises NetworkError or NotFound.
        """
        raise NotImplementedError

    @abstractmethod
    async def create_redirect(self, intent: PaymentIntent) -> RedirectSession:
        """
        Ask the gateway for a transaction covering the intent's amount.
        Raises GatewayRejected when the gateway declines.
        """
        raise NotImplementedError

    @abstractmethod
    def parse_notification(self, headers: Dict[str, str], body: bytes) -> GatewayNotification:
        """
        Validate and canonicalize a gateway webhook payload.
        """
        raise NotImplementedError

    async def aclose(self) -> None:
        return None

    def health_check(self) -> Dict[str, Any]:
        return {"ok": True}


def compute_signature(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    """SHA-512 hex digest the gateway attaches to notifications as ``signature_key``."""
    raw = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(raw.encode("utf-8")).hexdigest()


def parse_gateway_notification(body: bytes, server_key: Optional[str] = None) -> GatewayNotification:
    """Decode a gateway webhook body, verifying its signature when a key is set.

    Raises:
        ValueError: On malformed JSON, missing fields or a bad signature.
    """
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValueError("Invalid webhook payload")
    if not isinstance(payload, dict):
        raise ValueError("Invalid webhook payload")

    order_id = payload.get("order_id")
    status = payload.get("transaction_status")
    if not order_id or not status:
        raise ValueError("Webhook payload is missing order_id or transaction_status")

    status_code = _as_text(payload.get("status_code"))
    gross_amount = _as_text(payload.get("gross_amount"))

    if server_key:
        expected = compute_signature(str(order_id), status_code or "", gross_amount or "", server_key)
        if not hmac.compare_digest(expected, str(payload.get("signature_key", ""))):
            raise ValueError("Invalid webhook signature")

    return GatewayNotification(
        external_reference=str(order_id),
        status=str(status),
        status_code=status_code,
        gross_amount=gross_amount,
        payment_type=payload.get("payment_type"),
        raw=payload,
    )


def _as_text(value: Any) -> Optional[str]:
    return None if value is None else str(value)
