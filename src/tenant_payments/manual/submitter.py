"""Validation and submission of manual bank-transfer payments."""

import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional

from ..backend import BackendClient
from ..config import MIB
from ..errors import BackendRejected, InvalidState, ProofValidationError, SubmissionRejected
from ..models import IntentState, ManualPaymentForm, ManualSubmissionReceipt, Violation
from ..reconciliation.engine import ReconciliationEngine
from .proof import ALLOWED_MIME_TYPES, ProofArtifact

logger = logging.getLogger(__name__)

_REQUIRED_FIELDS = (
    ("bank_name", "Bank name is required"),
    ("account_number", "Account number is required"),
    ("account_holder_name", "Account holder name is required"),
)


class ManualProofSubmitter:
    """Checks a transfer proof locally, then posts it to the backend."""

    def __init__(
        self,
        backend: Optional[BackendClient],
        max_size_bytes: int = 5 * MIB,
        today: Optional[Callable[[], date]] = None,
    ):
        self.backend = backend
        self.max_size_bytes = max_size_bytes
        self._today = today or date.today

    def validate(self, artifact: Optional[ProofArtifact], form: ManualPaymentForm) -> List[Violation]:
        """Return every problem with the proof and form; empty means valid."""
        violations: List[Violation] = []

        if artifact is None:
            violations.append(Violation(field="proof", code="required", message="Payment proof is required"))
        else:
            if artifact.mime_type not in ALLOWED_MIME_TYPES:
                violations.append(Violation(
                    field="proof",
                    code="unsupported_type",
                    message=f"File type {artifact.mime_type} is not allowed; use JPEG, PNG, GIF or PDF",
                ))
            if artifact.size_bytes > self.max_size_bytes:
                violations.append(Violation(
                    field="proof",
                    code="too_large",
                    message=f"File is larger than {self.max_size_bytes // MIB} MB",
                ))
            if artifact.size_bytes == 0:
                violations.append(Violation(field="proof", code="empty", message="File is empty"))

        for field_name, message in _REQUIRED_FIELDS:
            if not (getattr(form, field_name) or "").strip():
                violations.append(Violation(field=field_name, code="required", message=message))

        if form.transfer_date is None:
            violations.append(Violation(field="transfer_date", code="required", message="Transfer date is required"))
        elif form.transfer_date > self._today():
            violations.append(Violation(
                field="transfer_date",
                code="in_future",
                message="Transfer date cannot be in the future",
            ))

        return violations

    async def submit(
        self,
        engine: ReconciliationEngine,
        artifact: Optional[ProofArtifact],
        form: ManualPaymentForm,
    ) -> ManualSubmissionReceipt:
        """Submit the proof for the engine's intent.

        Raises:
            ProofValidationError: Before any network call, intent untouched.
            InvalidState: If the intent is not awaiting a proof.
            SubmissionRejected: The backend refused; the intent is FAILED.
            NetworkError: Transport failure; the intent is untouched.
        """
        if engine.state != IntentState.MANUAL_AWAITING_PROOF:
            raise InvalidState(
                f"Cannot submit a proof while intent is {engine.state.value}",
                {"state": engine.state.value},
            )
        violations = self.validate(artifact, form)
        if violations:
            raise ProofValidationError(violations)

        if self.backend is None:
            raise InvalidState("Submitter has no backend client; it can only validate")

        intent = engine.intent
        body = self._build_body(intent, artifact, form)
        try:
            payload = await self.backend.create_manual_payment(body)
        except BackendRejected as e:
            logger.warning(f"Manual payment for invoice {intent.invoice_id} rejected: {e.message}")
            engine.report_rejection(e.message)
            raise SubmissionRejected(e.message, e.detail) from e

        receipt = ManualSubmissionReceipt.model_validate(payload)
        logger.info(f"Manual payment {receipt.payment_id} submitted for invoice {intent.invoice_id}")
        engine.report_manual_submission_accepted(receipt.payment_id)
        return receipt

    @staticmethod
    def _build_body(intent, artifact: ProofArtifact, form: ManualPaymentForm) -> Dict[str, Any]:
        return {
            "invoiceId": intent.invoice_id,
            "tenantId": intent.tenant_id,
            "bookingId": intent.booking_id,
            "amount": intent.amount,
            "bankName": form.bank_name.strip(),
            "accountNumber": form.account_number.strip(),
            "accountHolderName": form.account_holder_name.strip(),
            "transferDate": f"{form.transfer_date.isoformat()}T00:00:00Z",
            "fileName": artifact.file_name,
            "fileType": artifact.mime_type,
            "contentBase64": artifact.content_base64,
            "paymentChannel": form.payment_channel or "bank_transfer",
            "notes": form.notes,
        }
