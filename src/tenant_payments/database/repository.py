"""Repository layer for intent journal persistence."""

import logging
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import TERMINAL_STATES, PaymentIntent, StateTransition
from .models import IntentTransition, PaymentIntentRecord

logger = logging.getLogger(__name__)

_TERMINAL_VALUES = [s.value for s in TERMINAL_STATES]


class IntentRepository:
    """Repository for PaymentIntentRecord operations."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def save(self, intent: PaymentIntent) -> PaymentIntentRecord:
        """Insert the intent or update the stored copy.

        Args:
            intent: Current intent snapshot.

        Returns:
            The stored PaymentIntentRecord.
        """
        record = await self.get_by_id(intent.intent_id)
        if record is None:
            record = PaymentIntentRecord(
                id=intent.intent_id,
                invoice_id=intent.invoice_id,
                booking_id=intent.booking_id,
                tenant_id=intent.tenant_id,
                amount=intent.amount,
                method=intent.method.value,
                created_at=intent.created_at,
            )
            self.session.add(record)
            logger.info(f"Journaling intent {intent.intent_id} for invoice {intent.invoice_id}")

        record.state = intent.state.value
        record.external_reference = intent.external_reference
        record.manual_payment_id = intent.manual_payment_id
        record.check_attempts = intent.check_attempts
        record.last_checked_at = intent.last_checked_at
        record.failure_reason = intent.failure_reason
        await self.session.flush()
        return record

    async def get_by_id(self, intent_id: str) -> Optional[PaymentIntentRecord]:
        result = await self.session.execute(
            select(PaymentIntentRecord).where(PaymentIntentRecord.id == intent_id)
        )
        return result.scalar_one_or_none()

    async def get_by_external_reference(self, external_reference: str) -> Optional[PaymentIntentRecord]:
        result = await self.session.execute(
            select(PaymentIntentRecord).where(
                PaymentIntentRecord.external_reference == external_reference
            )
        )
        return result.scalar_one_or_none()

    async def list_for_invoice(self, invoice_id: int) -> List[PaymentIntentRecord]:
        """List every intent for an invoice, newest first."""
        result = await self.session.execute(
            select(PaymentIntentRecord)
            .where(PaymentIntentRecord.invoice_id == invoice_id)
            .order_by(PaymentIntentRecord.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_active(self, invoice_id: Optional[int] = None) -> List[PaymentIntentRecord]:
        """List intents that have not reached a terminal state."""
        query = select(PaymentIntentRecord).where(PaymentIntentRecord.state.not_in(_TERMINAL_VALUES))
        if invoice_id is not None:
            query = query.where(PaymentIntentRecord.invoice_id == invoice_id)
        result = await self.session.execute(query.order_by(PaymentIntentRecord.created_at))
        return list(result.scalars().all())


class IntentTransitionRepository:
    """Repository for IntentTransition operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, transition: StateTransition) -> IntentTransition:
        """Append a transition to its intent's history."""
        result = await self.session.execute(
            select(func.count(IntentTransition.id)).where(
                IntentTransition.intent_id == transition.intent_id
            )
        )
        sequence = result.scalar_one()

        entry = IntentTransition(
            intent_id=transition.intent_id,
            sequence=sequence,
            previous_state=transition.previous_state.value,
            new_state=transition.new_state.value,
            trigger=transition.trigger,
            created_at=transition.at,
        )
        entry.detail = transition.detail
        self.session.add(entry)
        await self.session.flush()

        logger.debug(
            f"Recorded transition {transition.previous_state.value} -> {transition.new_state.value} "
            f"for intent {transition.intent_id}"
        )
        return entry

    async def list_for_intent(self, intent_id: str) -> List[IntentTransition]:
        result = await self.session.execute(
            select(IntentTransition)
            .where(IntentTransition.intent_id == intent_id)
            .order_by(IntentTransition.sequence)
        )
        return list(result.scalars().all())
