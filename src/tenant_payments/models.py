"""Domain models for payment reconciliation."""

import enum
import uuid
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class PaymentMethod(str, enum.Enum):
    """How the tenant pays an invoice."""
    ONLINE = "online"
    MANUAL = "manual"


class IntentState(str, enum.Enum):
    """States of a payment intent."""
    CREATED = "created"
    ONLINE_AWAITING_REDIRECT = "online_awaiting_redirect"
    MANUAL_AWAITING_PROOF = "manual_awaiting_proof"
    ONLINE_POLLING = "online_polling"
    MANUAL_AWAITING_VERIFICATION = "manual_awaiting_verification"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXPIRED = "expired"


TERMINAL_STATES = frozenset({
    IntentState.SUCCEEDED,
    IntentState.FAILED,
    IntentState.EXPIRED,
})


class WireModel(BaseModel):
    """Base for models exchanged with the portal backend (camelCase JSON)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
        extra="ignore",
    )


class PaymentRecord(WireModel):
    """Server-owned payment record. Read-only from the client's perspective."""
    payment_id: Optional[str] = Field(None, description="Backend payment ID")
    invoice_id: Optional[int] = Field(None, description="Invoice this payment settles")
    tenant_id: Optional[int] = None
    amount: Optional[int] = None
    status: str = Field(..., description="pending, verified, success, failed or expired")
    payment_method: Optional[str] = Field(None, description="manual or the gateway name")
    transaction_id: Optional[str] = Field(None, description="Gateway order ID for online payments")
    updated_at: Optional[datetime] = None

    @property
    def is_manual(self) -> bool:
        return (self.payment_method or "").lower() == PaymentMethod.MANUAL.value

    @property
    def is_pending(self) -> bool:
        return self.status.lower() == "pending"

    def belongs_to(self, invoice_id: Any) -> bool:
        """Compare invoice IDs regardless of whether they arrived as str or int."""
        return self.invoice_id is not None and str(self.invoice_id) == str(invoice_id)


class Invoice(WireModel):
    """Invoice as returned by the portal backend."""
    invoice_id: int
    booking_id: Optional[int] = None
    amount: int = Field(..., description="Invoice total in whole currency units")
    amount_paid: int = 0
    status: str = "unpaid"
    due_date: Optional[date] = None
    payments: List[PaymentRecord] = Field(default_factory=list)

    @property
    def outstanding_amount(self) -> int:
        return max(self.amount - self.amount_paid, 0)


class PaymentIntent(WireModel):
    """One payment attempt for one invoice.

    Only ``ReconciliationEngine`` writes ``state`` and the counters; everyone
    else receives copies.
    """
    intent_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    invoice_id: int
    booking_id: Optional[int] = None
    tenant_id: int
    amount: int = Field(..., gt=0, description="Outstanding amount at creation time")
    method: PaymentMethod
    external_reference: Optional[str] = Field(None, description="Gateway order ID, online only")
    state: IntentState = IntentState.CREATED
    last_checked_at: Optional[datetime] = None
    check_attempts: int = 0
    manual_payment_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @classmethod
    def for_invoice(cls, invoice: Invoice, tenant_id: int, method: PaymentMethod) -> "PaymentIntent":
        """Create an intent for the invoice's current outstanding amount.

        Raises:
            ValueError: If the invoice has nothing left to pay.
        """
        if invoice.outstanding_amount <= 0:
            raise ValueError(f"Invoice {invoice.invoice_id} has no outstanding amount")
        return cls(
            invoice_id=invoice.invoice_id,
            booking_id=invoice.booking_id,
            tenant_id=tenant_id,
            amount=invoice.outstanding_amount,
            method=method,
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class StateTransition(BaseModel):
    """A single transition applied by the engine."""
    intent_id: str
    previous_state: IntentState
    new_state: IntentState
    trigger: str = Field(..., description="Engine operation that caused the transition")
    detail: Dict[str, Any] = Field(default_factory=dict)
    at: datetime = Field(default_factory=datetime.utcnow)


class GatewayStatus(WireModel):
    """Response of the gateway status endpoint."""
    status: str
    amount: Optional[int] = None
    payment_type: Optional[str] = None


class RedirectSession(WireModel):
    """Result of asking the gateway to create a transaction."""
    redirect_url: str
    external_reference: str
    invoice: Optional[Invoice] = None


class GatewayNotification(BaseModel):
    """Canonical form of an asynchronous gateway webhook."""
    external_reference: str
    status: str
    status_code: Optional[str] = None
    gross_amount: Optional[str] = None
    payment_type: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class ManualPaymentForm(WireModel):
    """Bank-transfer metadata entered by the tenant.

    Fields are deliberately optional: missing values are reported as
    violations by the submitter rather than rejected at parse time.
    """
    bank_name: str = ""
    account_number: str = ""
    account_holder_name: str = ""
    transfer_date: Optional[date] = None
    payment_channel: str = "bank_transfer"
    notes: Optional[str] = None


class Violation(BaseModel):
    """A single validation failure."""
    field: str
    code: str
    message: str


class ManualSubmissionReceipt(WireModel):
    """Backend acknowledgement of a manual payment."""
    payment_id: str
    status: str = "pending"


class PendingCheck(BaseModel):
    """Outcome of a pending-payment lookup."""
    blocked: bool
    existing: List[PaymentRecord] = Field(default_factory=list)
    source: Optional[str] = Field(None, description="'invoice' or 'tenant_payments'")
    lookup_failed: bool = False


class NoticeLevel(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


class Notice(BaseModel):
    """Dismissible message for the UI; never changes payment state."""
    level: NoticeLevel
    title: str
    message: str
    at: datetime = Field(default_factory=datetime.utcnow)


class PaymentSnapshot(WireModel):
    """Observable state handed to the UI shell."""
    intent_id: str
    invoice_id: int
    method: PaymentMethod
    amount: int
    state: IntentState
    invoice: Optional[Invoice] = None
    check_attempts: int = 0
    seconds_remaining: Optional[int] = None
    external_reference: Optional[str] = None
    redirect_url: Optional[str] = None
    popup_blocked: bool = False
    last_checked_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    is_terminal: bool = False
