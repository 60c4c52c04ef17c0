"""Reconciliation of payment status across gateway, backend records and timers.

This module provides:
- A single status normalization table shared by every source
- The per-intent state machine that owns the displayed status
- The polling/countdown scheduler driving online payments
"""

from .signals import (
    STATUS_EQUIVALENTS,
    SignalOutcome,
    is_terminal_outcome,
    normalize_status,
)
from .engine import ReconciliationEngine
from .scheduler import PollingScheduler

__all__ = [
    "STATUS_EQUIVALENTS",
    "SignalOutcome",
    "is_terminal_outcome",
    "normalize_status",
    "ReconciliationEngine",
    "PollingScheduler",
]
