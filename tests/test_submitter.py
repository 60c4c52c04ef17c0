"""Tests for manual payment submission."""

import base64
import json
from datetime import date

import pytest

from tenant_payments.config import MIB
from tenant_payments.errors import InvalidState, NetworkError, ProofValidationError, SubmissionRejected
from tenant_payments.manual import ManualProofSubmitter, ProofArtifact
from tenant_payments.models import IntentState, ManualPaymentForm
from tenant_payments.reconciliation import ReconciliationEngine

TODAY = date(2024, 5, 10)
PNG_HEADER = b"\x89PNG\r\n\x1a\n"


def png(size: int) -> ProofArtifact:
    return ProofArtifact.from_bytes("receipt.png", PNG_HEADER + b"\x00" * (size - len(PNG_HEADER)))


@pytest.fixture
def form():
    return ManualPaymentForm(
        bank_name="BCA",
        account_number="1234567890",
        account_holder_name="Siti Rahma",
        transfer_date=date(2024, 5, 9),
    )


@pytest.fixture
def submitter(backend):
    return ManualProofSubmitter(backend, today=lambda: TODAY)


@pytest.fixture
def engine(manual_intent):
    engine = ReconciliationEngine(manual_intent)
    engine.start()
    return engine


class TestValidation:
    """Test local checks performed before any network call."""

    def test_valid_proof(self, submitter, form):
        assert submitter.validate(png(4 * MIB), form) == []

    def test_oversized_proof(self, submitter, form):
        violations = submitter.validate(png(6 * MIB), form)
        assert [(v.field, v.code) for v in violations] == [("proof", "too_large")]

    def test_exact_limit_is_allowed(self, submitter, form):
        assert submitter.validate(png(5 * MIB), form) == []

    def test_unsupported_type(self, submitter, form):
        artifact = ProofArtifact.from_bytes("notes.txt", b"hello")
        codes = [v.code for v in submitter.validate(artifact, form)]
        assert codes == ["unsupported_type"]

    def test_missing_proof_and_fields(self, submitter):
        violations = submitter.validate(None, ManualPaymentForm(bank_name="  "))
        fields = {(v.field, v.code) for v in violations}
        assert fields == {
            ("proof", "required"),
            ("bank_name", "required"),
            ("account_number", "required"),
            ("account_holder_name", "required"),
            ("transfer_date", "required"),
        }

    def test_future_transfer_date(self, submitter, form):
        form.transfer_date = date(2024, 5, 11)
        codes = [v.code for v in submitter.validate(png(100), form)]
        assert codes == ["in_future"]

    def test_custom_limit(self, backend, form):
        submitter = ManualProofSubmitter(backend, max_size_bytes=MIB, today=lambda: TODAY)
        assert [v.code for v in submitter.validate(png(2 * MIB), form)] == ["too_large"]


class TestSubmit:
    """Test submission through the portal backend."""

    async def test_accepted_submission(self, submitter, engine, form, portal):
        receipt = await submitter.submit(engine, png(4 * MIB), form)

        assert receipt.payment_id == "pay-1"
        assert engine.state == IntentState.MANUAL_AWAITING_VERIFICATION
        assert engine.intent.manual_payment_id == "pay-1"

        body = portal.manual_submissions[0]
        assert body["invoiceId"] == 42
        assert body["tenantId"] == 7
        assert body["amount"] == 150000
        assert body["transferDate"] == "2024-05-09T00:00:00Z"
        assert body["paymentChannel"] == "bank_transfer"
        assert body["fileType"] == "image/png"
        assert len(base64.b64decode(body["contentBase64"])) == 4 * MIB

    async def test_invalid_proof_makes_no_request(self, submitter, engine, form, portal):
        with pytest.raises(ProofValidationError) as exc_info:
            await submitter.submit(engine, png(6 * MIB), form)

        assert exc_info.value.violations[0].code == "too_large"
        assert portal.requests == []
        assert engine.state == IntentState.MANUAL_AWAITING_PROOF

    async def test_rejection_fails_intent(self, submitter, engine, form, portal):
        portal.reject_manual = "A payment for this invoice is already pending"
        with pytest.raises(SubmissionRejected, match="already pending"):
            await submitter.submit(engine, png(100), form)
        assert engine.state == IntentState.FAILED
        assert engine.intent.failure_reason == "A payment for this invoice is already pending"

    async def test_network_error_leaves_intent(self, submitter, engine, form, portal):
        portal.unavailable.add("manual")
        with pytest.raises(NetworkError):
            await submitter.submit(engine, png(100), form)
        assert engine.state == IntentState.MANUAL_AWAITING_PROOF

    async def test_submit_requires_awaiting_proof(self, submitter, engine, form):
        await submitter.submit(engine, png(100), form)
        with pytest.raises(InvalidState):
            await submitter.submit(engine, png(100), form)

    async def test_validate_only_submitter(self, engine, form):
        submitter = ManualProofSubmitter(None, today=lambda: TODAY)
        with pytest.raises(InvalidState):
            await submitter.submit(engine, png(100), form)

    async def test_notes_and_channel_forwarded(self, submitter, engine, form, portal):
        form.payment_channel = "atm"
        form.notes = "Paid at branch"
        await submitter.submit(engine, png(100), form)
        body = json.loads(portal.requests[-1].content)
        assert body["paymentChannel"] == "atm"
        assert body["notes"] == "Paid at branch"
