"""Database module for the payment intent journal."""

from .models import (
    Base,
    IntentTransition,
    PaymentIntentRecord,
)
from .session import (
    get_database_url,
    init_db,
    close_db,
    create_async_engine,
    get_async_session_factory,
)
from .repository import (
    IntentRepository,
    IntentTransitionRepository,
)
from .journal import SqlIntentJournal

__all__ = [
    # Models
    "Base",
    "IntentTransition",
    "PaymentIntentRecord",
    # Session management
    "get_database_url",
    "init_db",
    "close_db",
    "create_async_engine",
    "get_async_session_factory",
    # Repositories
    "IntentRepository",
    "IntentTransitionRepository",
    "SqlIntentJournal",
]
