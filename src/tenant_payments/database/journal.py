"""SQL-backed intent journal."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import PaymentIntent, StateTransition
from .repository import IntentRepository, IntentTransitionRepository

logger = logging.getLogger(__name__)


class SqlIntentJournal:
    """Stores every intent and transition a payment session produces.

    Each write runs in its own transaction so a failed write never leaves a
    session holding a broken database session.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record_intent(self, intent: PaymentIntent) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await IntentRepository(session).save(intent)

    async def record_transition(self, intent: PaymentIntent, transition: StateTransition) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await IntentRepository(session).save(intent)
                await IntentTransitionRepository(session).add(transition)
