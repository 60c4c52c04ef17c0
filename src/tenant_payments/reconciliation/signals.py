"""Status normalization shared by every reconciliation path.

Gateway statuses, payment record statuses and invoice statuses all pass
through the same table so that success and failure keywords are defined in
exactly one place.
"""

import enum
import logging
from typing import Dict, Optional, Set

logger = logging.getLogger(__name__)


class SignalOutcome(str, enum.Enum):
    """Classification of a raw status string."""
    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"
    UNKNOWN = "unknown"


# Canonical outcome -> raw statuses that map to it
STATUS_EQUIVALENTS: Dict[SignalOutcome, Set[str]] = {
    SignalOutcome.SUCCESS: {"settlement", "capture", "success", "verified", "paid"},
    SignalOutcome.FAILURE: {"deny", "denied", "cancel", "expire", "expired", "failure", "failed"},
    SignalOutcome.PENDING: {"pending", "unpaid", "authorize"},
}

_LOOKUP: Dict[str, SignalOutcome] = {
    raw: outcome
    for outcome, raws in STATUS_EQUIVALENTS.items()
    for raw in raws
}


def normalize_status(raw_status: Optional[str]) -> SignalOutcome:
    """Classify a raw status string.

    Unknown or empty statuses never map to success; they are reported as
    ``UNKNOWN`` so the caller can leave the intent untouched.

    Args:
        raw_status: Status as reported by the gateway, a payment record or an
            invoice.

    Returns:
        The SignalOutcome for the status.
    """
    if not raw_status:
        return SignalOutcome.UNKNOWN
    outcome = _LOOKUP.get(raw_status.strip().lower())
    if outcome is None:
        logger.warning(f"Unrecognized payment status '{raw_status}'; treating as no transition")
        return SignalOutcome.UNKNOWN
    return outcome


def is_terminal_outcome(outcome: SignalOutcome) -> bool:
    return outcome in (SignalOutcome.SUCCESS, SignalOutcome.FAILURE)
