"""State machine owning the status of a single payment intent."""

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, List, Optional

from ..errors import InvalidState
from ..models import (
    IntentState,
    PaymentIntent,
    PaymentMethod,
    PaymentRecord,
    StateTransition,
)
from .signals import SignalOutcome, normalize_status

logger = logging.getLogger(__name__)

Listener = Callable[[PaymentIntent, StateTransition], None]


def _as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Backend timestamps may carry an offset; the engine clock is naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class ReconciliationEngine:
    """Merges status signals into one authoritative intent state.

    Every collaborator (scheduler, gateway client, submitter, webhook handler)
    reports signals through the methods below; none of them writes the intent
    directly. Signals are applied synchronously in arrival order. Once the
    intent is terminal every further signal is a no-op, and once the engine is
    disposed every signal is discarded.

    Conflicting sources are resolved as "most recent signal wins", with a
    gateway signal taking precedence over a payment record that was last
    updated before that signal was observed.
    """

    START_STATES: Dict[PaymentMethod, IntentState] = {
        PaymentMethod.ONLINE: IntentState.ONLINE_AWAITING_REDIRECT,
        PaymentMethod.MANUAL: IntentState.MANUAL_AWAITING_PROOF,
    }

    # Signals are keyed by external reference, which exists only once polling starts.
    GATEWAY_SIGNAL_STATES: FrozenSet[IntentState] = frozenset({IntentState.ONLINE_POLLING})

    RECORD_REFRESH_STATES: FrozenSet[IntentState] = frozenset({
        IntentState.ONLINE_POLLING,
        IntentState.MANUAL_AWAITING_VERIFICATION,
    })

    def __init__(
        self,
        intent: PaymentIntent,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the engine for a freshly created intent.

        Args:
            intent: The intent to own. A private copy is kept.
            clock: Optional time source, defaults to ``datetime.utcnow``.

        Raises:
            InvalidState: If the intent has already left CREATED.
        """
        if intent.state != IntentState.CREATED:
            raise InvalidState(
                f"Intent {intent.intent_id} is {intent.state.value}; a fresh intent is required"
            )
        self._intent = intent.model_copy()
        self._clock = clock or datetime.utcnow
        self._listeners: List[Listener] = []
        self._history: List[StateTransition] = []
        self._disposed = False
        self._last_gateway_signal_at: Optional[datetime] = None

    @property
    def intent(self) -> PaymentIntent:
        """A copy of the current intent."""
        return self._intent.model_copy()

    @property
    def state(self) -> IntentState:
        return self._intent.state

    @property
    def is_terminal(self) -> bool:
        return self._intent.is_terminal

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def history(self) -> List[StateTransition]:
        return list(self._history)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a transition listener.

        Returns:
            A callable that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def start(self, method: Optional[PaymentMethod] = None) -> IntentState:
        """Move a CREATED intent into the first state of its method's path."""
        if self._disposed:
            raise InvalidState(f"Engine for intent {self._intent.intent_id} is disposed")
        self._require({IntentState.CREATED}, "start")
        if method is not None and method != self._intent.method:
            self._invalid(f"start({method.value}) on an intent created for {self._intent.method.value}")
        self._transition(self.START_STATES[self._intent.method], "start")
        return self._intent.state

    def report_redirect_ready(self, external_reference: str) -> bool:
        """Record the gateway order ID and begin polling.

        The external reference is assigned once; a later call with the same
        value is ignored, a different value is a programming error.
        """
        if not self._accepting("report_redirect_ready"):
            return False
        current = self._intent.external_reference
        if current is not None and current != external_reference:
            self._invalid(
                f"external reference already set to {current}, refusing {external_reference}"
            )
        if self._intent.state == IntentState.ONLINE_POLLING:
            return False
        self._require({IntentState.ONLINE_AWAITING_REDIRECT}, "report_redirect_ready")
        self._intent.external_reference = external_reference
        self._transition(
            IntentState.ONLINE_POLLING,
            "report_redirect_ready",
            external_reference=external_reference,
        )
        return True

    def report_gateway_signal(self, raw_status: Optional[str], observed_at: Optional[datetime] = None) -> bool:
        """Apply a status reported by the gateway (polling or webhook).

        Returns:
            True if the signal caused a transition.
        """
        if not self._accepting("report_gateway_signal"):
            return False
        self._require(self.GATEWAY_SIGNAL_STATES, "report_gateway_signal")
        self._touch()
        self._last_gateway_signal_at = _as_naive_utc(observed_at) or self._intent.last_checked_at
        outcome = normalize_status(raw_status)
        return self._apply_outcome(outcome, "report_gateway_signal", raw_status)

    def report_manual_submission_accepted(self, payment_id: Optional[str] = None) -> bool:
        """The backend stored the tenant's proof; wait for admin verification."""
        if not self._accepting("report_manual_submission_accepted"):
            return False
        self._require({IntentState.MANUAL_AWAITING_PROOF}, "report_manual_submission_accepted")
        self._intent.manual_payment_id = payment_id
        self._transition(
            IntentState.MANUAL_AWAITING_VERIFICATION,
            "report_manual_submission_accepted",
            payment_id=payment_id,
        )
        return True

    def refresh_from_record(self, record: PaymentRecord) -> bool:
        """Apply the status of a server-side payment record.

        A record last updated before the most recent gateway signal is stale
        and does not override it.

        Returns:
            True if the record caused a transition.
        """
        if not self._accepting("refresh_from_record"):
            return False
        self._require(self.RECORD_REFRESH_STATES, "refresh_from_record")
        self._touch()
        updated_at = _as_naive_utc(record.updated_at)
        if (
            self._last_gateway_signal_at is not None
            and updated_at is not None
            and updated_at < self._last_gateway_signal_at
        ):
            logger.info(
                f"Ignoring stale record {record.payment_id} ({record.status}) for intent "
                f"{self._intent.intent_id}; gateway signal is newer"
            )
            return False
        outcome = normalize_status(record.status)
        return self._apply_outcome(
            outcome, "refresh_from_record", record.status, payment_id=record.payment_id
        )

    def report_rejection(self, reason: str) -> bool:
        """A business-terminal error (gateway or submission rejected)."""
        if not self._accepting("report_rejection"):
            return False
        self._intent.failure_reason = reason
        self._transition(IntentState.FAILED, "report_rejection", reason=reason)
        return True

    def expire(self) -> bool:
        """The countdown ran out without a terminal signal."""
        if not self._accepting("expire"):
            return False
        self._intent.failure_reason = "expired"
        self._transition(IntentState.EXPIRED, "expire")
        return True

    def dispose(self) -> None:
        """Detach listeners; later signals are discarded."""
        self._disposed = True
        self._listeners.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _accepting(self, operation: str) -> bool:
        if self._disposed:
            logger.debug(f"Discarding {operation} for disposed intent {self._intent.intent_id}")
            return False
        if self._intent.is_terminal:
            logger.debug(
                f"Ignoring {operation} for intent {self._intent.intent_id} in terminal state "
                f"{self._intent.state.value}"
            )
            return False
        return True

    def _require(self, allowed, operation: str) -> None:
        if self._intent.state not in allowed:
            self._invalid(f"{operation} is not allowed in state {self._intent.state.value}")

    def _invalid(self, message: str) -> None:
        logger.error(f"Invalid state for intent {self._intent.intent_id}: {message}")
        raise InvalidState(message, {"intent_id": self._intent.intent_id, "state": self._intent.state.value})

    def _touch(self) -> None:
        self._intent.check_attempts += 1
        now = self._clock()
        if self._intent.last_checked_at is None or now >= self._intent.last_checked_at:
            self._intent.last_checked_at = now

    def _apply_outcome(self, outcome: SignalOutcome, trigger: str, raw_status: Optional[str], **detail) -> bool:
        if outcome == SignalOutcome.SUCCESS:
            self._transition(IntentState.SUCCEEDED, trigger, status=raw_status, **detail)
            return True
        if outcome == SignalOutcome.FAILURE:
            self._intent.failure_reason = raw_status
            self._transition(IntentState.FAILED, trigger, status=raw_status, **detail)
            return True
        logger.debug(f"Intent {self._intent.intent_id} still {self._intent.state.value} after '{raw_status}'")
        return False

    def _transition(self, new_state: IntentState, trigger: str, **detail) -> None:
        previous = self._intent.state
        self._intent.state = new_state
        transition = StateTransition(
            intent_id=self._intent.intent_id,
            previous_state=previous,
            new_state=new_state,
            trigger=trigger,
            detail={k: v for k, v in detail.items() if v is not None},
            at=self._clock(),
        )
        self._history.append(transition)
        logger.info(
            f"Intent {self._intent.intent_id} (invoice {self._intent.invoice_id}): "
            f"{previous.value} -> {new_state.value} via {trigger}"
        )
        snapshot = self._intent.model_copy()
        for listener in list(self._listeners):
            try:
                listener(snapshot, transition)
            except Exception:
                logger.exception(f"Transition listener failed for intent {self._intent.intent_id}")
