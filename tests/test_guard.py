"""Tests for the pending manual payment guard."""

import logging

import pytest

from tenant_payments.errors import PendingPaymentExists
from tenant_payments.manual import PendingPaymentGuard

TENANT_ID = 7


@pytest.fixture
def guard(backend):
    return PendingPaymentGuard(backend)


class TestPendingPaymentGuard:
    """Test duplicate-submission detection."""

    async def test_pending_manual_payment_blocks(self, guard, portal):
        portal.add_payment(42, "pending", method="manual")
        check = await guard.has_pending_manual_payment(42, TENANT_ID)

        assert check.blocked
        assert check.source == "invoice"
        assert check.existing[0].payment_id == "pay-1"

    @pytest.mark.parametrize("status", ["verified", "failed"])
    async def test_settled_payments_do_not_block(self, guard, portal, status):
        portal.add_payment(42, status, method="manual")
        check = await guard.has_pending_manual_payment(42, TENANT_ID)
        assert not check.blocked

    async def test_pending_online_payment_does_not_block(self, guard, portal):
        portal.add_payment(42, "pending", method="midtrans", transaction_id="INV-42-1")
        check = await guard.has_pending_manual_payment(42, TENANT_ID)
        assert not check.blocked

    async def test_other_invoice_does_not_block(self, guard, portal):
        portal.add_payment(43, "pending")
        check = await guard.has_pending_manual_payment(42, TENANT_ID)
        assert not check.blocked
        assert check.source == "tenant_payments"

    async def test_tenant_list_used_when_invoice_lookup_fails(self, guard, portal):
        portal.add_payment("42", "pending")
        portal.unavailable.add("invoice")
        check = await guard.has_pending_manual_payment(42, TENANT_ID)

        assert check.blocked
        assert check.source == "tenant_payments"

    async def test_tenant_list_skipped_when_invoice_shows_pending(self, guard, portal):
        portal.add_payment(42, "pending")
        await guard.has_pending_manual_payment(42, TENANT_ID)
        assert not any("tenants" in path for path in portal.paths())

    async def test_both_lookups_failing_fails_open(self, guard, portal, caplog):
        portal.add_payment(42, "pending")
        portal.unavailable.update({"invoice", "tenant_payments"})

        with caplog.at_level(logging.WARNING):
            check = await guard.has_pending_manual_payment(42, TENANT_ID)

        assert not check.blocked
        assert check.lookup_failed
        assert "allowing submission" in caplog.text

    async def test_only_tenant_lookup_failing(self, guard, portal):
        portal.unavailable.add("tenant_payments")
        check = await guard.has_pending_manual_payment(42, TENANT_ID)
        assert not check.blocked
        assert not check.lookup_failed
        assert check.source == "invoice"

    async def test_ensure_no_pending_raises(self, guard, portal):
        portal.add_payment(42, "pending")
        with pytest.raises(PendingPaymentExists) as exc_info:
            await guard.ensure_no_pending(42, TENANT_ID)
        assert exc_info.value.invoice_id == 42
        assert len(exc_info.value.existing) == 1
