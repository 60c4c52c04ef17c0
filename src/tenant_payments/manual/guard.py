"""Duplicate-submission guard for manual payments."""

import logging
from typing import List

from pydantic import ValidationError

from ..backend import BackendClient
from ..errors import PaymentError, PendingPaymentExists
from ..models import PaymentRecord, PendingCheck

logger = logging.getLogger(__name__)


def _pending_manual(records: List[PaymentRecord], invoice_id: int) -> List[PaymentRecord]:
    return [r for r in records if r.is_pending and r.is_manual and r.belongs_to(invoice_id)]


class PendingPaymentGuard:
    """Refuses a new manual payment while another one awaits verification.

    The invoice's embedded payments are consulted first; only when they show
    nothing pending is the tenant-wide payment list checked. If both lookups
    fail the guard fails open and lets the tenant proceed.
    """

    def __init__(self, backend: BackendClient):
        self.backend = backend

    async def has_pending_manual_payment(self, invoice_id: int, tenant_id: int) -> PendingCheck:
        invoice_failed = False
        try:
            invoice = await self.backend.get_invoice(invoice_id)
        except (PaymentError, ValidationError) as e:
            invoice_failed = True
            logger.warning(f"Invoice lookup for pending check of invoice {invoice_id} failed: {e}")
        else:
            existing = _pending_manual(invoice.payments, invoice_id)
            if existing:
                logger.info(f"Invoice {invoice_id} has {len(existing)} pending manual payment(s)")
                return PendingCheck(blocked=True, existing=existing, source="invoice")

        try:
            records = await self.backend.get_tenant_payments(tenant_id)
        except (PaymentError, ValidationError) as e:
            if invoice_failed:
                logger.warning(
                    f"Could not determine pending payments for invoice {invoice_id}; allowing submission ({e})"
                )
                return PendingCheck(blocked=False, lookup_failed=True)
            logger.warning(f"Tenant payment lookup for invoice {invoice_id} failed: {e}")
            return PendingCheck(blocked=False, source="invoice")

        existing = _pending_manual(records, invoice_id)
        if existing:
            logger.info(f"Tenant {tenant_id} has a pending manual payment for invoice {invoice_id}")
            return PendingCheck(blocked=True, existing=existing, source="tenant_payments")
        return PendingCheck(blocked=False, source="tenant_payments")

    async def ensure_no_pending(self, invoice_id: int, tenant_id: int) -> PendingCheck:
        """Raise PendingPaymentExists when the invoice is blocked."""
        check = await self.has_pending_manual_payment(invoice_id, tenant_id)
        if check.blocked:
            raise PendingPaymentExists(invoice_id, check.existing)
        return check
