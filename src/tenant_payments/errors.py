"""Error taxonomy for payment reconciliation.

Recoverable errors (``PopupBlocked``, ``NetworkError``, ``NotFound``) never
change the state of a payment intent. Business-terminal errors
(``GatewayRejected``, ``SubmissionRejected``) move the intent to ``FAILED``.
``InvalidState`` signals a programming error.
"""

from typing import Any, Dict, List, Optional


class PaymentError(Exception):
    """Base class for all payment reconciliation errors."""

    recoverable: bool = False

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class PopupBlocked(PaymentError):
    """The browser refused to open the gateway window."""

    recoverable = True

    def __init__(self, url: str):
        super().__init__(f"Payment window was blocked for {url}", {"url": url})
        self.url = url


class NetworkError(PaymentError):
    """Transport failure or server-side error talking to the backend."""

    recoverable = True

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, {"status_code": status_code} if status_code else None)
        self.status_code = status_code


class NotFound(PaymentError):
    """The requested resource does not exist (yet) on the backend."""

    recoverable = True


class BackendRejected(PaymentError):
    """The backend refused a request with a 4xx response."""

    def __init__(self, message: str, status_code: int, payload: Optional[Dict[str, Any]] = None):
        super().__init__(message, payload)
        self.status_code = status_code


class GatewayRejected(PaymentError):
    """The gateway declined to create a transaction for the invoice."""


class SubmissionRejected(PaymentError):
    """The backend refused a manual payment submission (e.g. a duplicate)."""


class InvalidState(PaymentError):
    """An operation was invoked on an intent in a state that forbids it."""


class PendingPaymentExists(PaymentError):
    """A non-terminal payment already exists for the invoice."""

    def __init__(self, invoice_id: int, existing: Optional[List[Any]] = None):
        super().__init__(
            f"Invoice {invoice_id} already has a payment awaiting verification",
            {"invoice_id": invoice_id},
        )
        self.invoice_id = invoice_id
        self.existing = existing or []


class ProofValidationError(PaymentError):
    """A manual payment proof failed validation; carries the violations."""

    recoverable = True

    def __init__(self, violations: List[Any]):
        messages = ", ".join(v.message for v in violations)
        super().__init__(f"Payment proof is invalid: {messages}")
        self.violations = violations
