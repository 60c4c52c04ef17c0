"""Payment session: one intent plus the window, timers and clients serving it."""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Protocol

from pydantic import ValidationError

from .backend import BackendClient
from .config import Settings, get_settings
from .errors import (
    GatewayRejected,
    InvalidState,
    NetworkError,
    NotFound,
    PaymentError,
    PendingPaymentExists,
    PopupBlocked,
    SubmissionRejected,
)
from .gateway.base import GatewayClientBase
from .manual.guard import PendingPaymentGuard
from .manual.proof import ProofArtifact
from .manual.submitter import ManualProofSubmitter
from .models import (
    GatewayNotification,
    IntentState,
    Invoice,
    ManualPaymentForm,
    Notice,
    NoticeLevel,
    PaymentIntent,
    PaymentMethod,
    PaymentRecord,
    PaymentSnapshot,
    RedirectSession,
    StateTransition,
)
from .reconciliation.engine import ReconciliationEngine
from .reconciliation.scheduler import PollingScheduler
from .window import RedirectWindowController, WindowHandle

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[PaymentSnapshot], None]


class IntentJournal(Protocol):
    """Durable record of intents and their transitions."""

    async def record_intent(self, intent: PaymentIntent) -> None:
        ...

    async def record_transition(self, intent: PaymentIntent, transition: StateTransition) -> None:
        ...


class PaymentSession:
    """Coordinates one payment attempt for one invoice.

    The session owns a ``ReconciliationEngine`` and wires the gateway client,
    the redirect window, the polling scheduler, the pending-payment guard and
    the proof submitter to it. Collaborators only report signals; the engine
    decides the state.

    After ``close()`` every late result (a status response, a submission
    receipt, a window-closed callback) is discarded.
    """

    def __init__(
        self,
        intent: PaymentIntent,
        backend: BackendClient,
        gateway: GatewayClientBase,
        settings: Optional[Settings] = None,
        window: Optional[RedirectWindowController] = None,
        guard: Optional[PendingPaymentGuard] = None,
        submitter: Optional[ManualProofSubmitter] = None,
        journal: Optional[IntentJournal] = None,
        on_notice: Optional[Callable[[Notice], None]] = None,
        invoice: Optional[Invoice] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings or get_settings()
        self.session_id = str(uuid.uuid4())
        self.backend = backend
        self.gateway = gateway
        self.window = window or RedirectWindowController(
            watch_interval=self.settings.window_watch_interval_seconds
        )
        self.guard = guard or PendingPaymentGuard(backend)
        self.submitter = submitter or ManualProofSubmitter(
            backend, max_size_bytes=self.settings.max_proof_size_bytes
        )
        self.journal = journal
        self._on_notice = on_notice
        self._clock = clock

        self._invoice = invoice
        self._notices: List[Notice] = []
        self._listeners: List[SnapshotListener] = []
        self._closed = False
        self._closed_at: Optional[datetime] = None
        self._submitting = False
        self._journal_tail: Optional[asyncio.Future] = None
        self._attach(intent)

    def _attach(self, intent: PaymentIntent) -> None:
        self.engine = ReconciliationEngine(intent, clock=self._clock)
        self.engine.subscribe(self._on_transition)
        self._redirect: Optional[RedirectSession] = None
        self._handle: Optional[WindowHandle] = None
        self._popup_blocked = False
        self._consecutive_failures = 0
        self._journal_started = False
        self._scheduler = self._build_scheduler(intent.method)

    def _build_scheduler(self, method: PaymentMethod) -> PollingScheduler:
        return PollingScheduler.from_settings(
            self.settings,
            check=self._check_once,
            on_expire=self._on_expire,
            is_terminal=lambda: self.engine.is_terminal,
            with_countdown=method == PaymentMethod.ONLINE,
        )

    @classmethod
    async def create(
        cls,
        invoice_id: int,
        method: PaymentMethod,
        backend: BackendClient,
        gateway: GatewayClientBase,
        settings: Optional[Settings] = None,
        tenant_id: Optional[int] = None,
        registry: Optional["SessionRegistry"] = None,
        invoice: Optional[Invoice] = None,
        **kwargs,
    ) -> "PaymentSession":
        """Create a session for an invoice's outstanding amount.

        Raises:
            PendingPaymentExists: A live session or a pending manual payment
                already exists for the invoice.
            ValueError: Nothing is outstanding or no tenant is configured.
        """
        settings = settings or get_settings()
        tenant_id = tenant_id if tenant_id is not None else settings.tenant_id
        if tenant_id is None:
            raise ValueError("A tenant id is required to create a payment session")

        if registry is not None:
            live = registry.active_for_invoice(invoice_id)
            if live is not None:
                raise PendingPaymentExists(invoice_id)

        if invoice is None:
            invoice = await backend.get_invoice(invoice_id)

        guard = kwargs.pop("guard", None) or PendingPaymentGuard(backend)
        if method == PaymentMethod.MANUAL:
            await guard.ensure_no_pending(invoice_id, tenant_id)

        intent = PaymentIntent.for_invoice(invoice, tenant_id, method)
        session = cls(
            intent,
            backend=backend,
            gateway=gateway,
            settings=settings,
            guard=guard,
            invoice=invoice,
            **kwargs,
        )
        if registry is not None:
            await registry.add(session)
        logger.info(
            f"Created {method.value} payment session {session.session_id} for invoice {invoice_id} "
            f"(amount {intent.amount})"
        )
        return session

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def intent(self) -> PaymentIntent:
        return self.engine.intent

    @property
    def invoice_id(self) -> int:
        return self.engine.intent.invoice_id

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def finished_at(self) -> Optional[datetime]:
        """When the session closed or its intent reached a terminal state."""
        if self._closed_at is not None:
            return self._closed_at
        history = self.engine.history
        if self.engine.is_terminal and history:
            return history[-1].at
        return None

    @property
    def scheduler(self) -> PollingScheduler:
        return self._scheduler

    @property
    def notices(self) -> List[Notice]:
        return list(self._notices)

    def dismiss_notices(self) -> None:
        self._notices.clear()

    def snapshot(self) -> PaymentSnapshot:
        intent = self.engine.intent
        return PaymentSnapshot(
            intent_id=intent.intent_id,
            invoice_id=intent.invoice_id,
            method=intent.method,
            amount=intent.amount,
            state=intent.state,
            invoice=self._invoice,
            check_attempts=intent.check_attempts,
            seconds_remaining=self._scheduler.seconds_remaining,
            external_reference=intent.external_reference,
            redirect_url=self._redirect.redirect_url if self._redirect else None,
            popup_blocked=self._popup_blocked,
            last_checked_at=intent.last_checked_at,
            failure_reason=intent.failure_reason,
            is_terminal=intent.is_terminal,
        )

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Receive a snapshot after every transition."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def begin(self) -> PaymentSnapshot:
        """Start the intent; online intents get a gateway transaction and window.

        Calling again while still awaiting a redirect retries the gateway call.
        """
        self._ensure_open()
        if self.engine.state == IntentState.CREATED:
            self._journal(lambda intent=self.engine.intent: self.journal.record_intent(intent))
            self._journal_started = True
            self.engine.start()
        if self.engine.state == IntentState.ONLINE_AWAITING_REDIRECT:
            await self._open_gateway()
        return self.snapshot()

    async def check_now(self) -> PaymentSnapshot:
        """Run one status check now; skipped if one is already in flight."""
        self._ensure_open()
        if self.engine.state in (IntentState.ONLINE_POLLING, IntentState.MANUAL_AWAITING_VERIFICATION):
            await self._scheduler.check_now()
        return self.snapshot()

    async def submit_proof(self, artifact: Optional[ProofArtifact], form: ManualPaymentForm) -> PaymentSnapshot:
        """Submit a manual transfer proof.

        The pending-payment guard runs before the submitter so a second
        submission for the same invoice never reaches the backend.
        """
        self._ensure_open()
        if self.engine.intent.method != PaymentMethod.MANUAL:
            raise InvalidState("Proofs can only be submitted for manual payments")
        if self._submitting:
            raise InvalidState("A submission is already in progress")
        intent = self.engine.intent
        self._submitting = True
        try:
            await self.guard.ensure_no_pending(intent.invoice_id, intent.tenant_id)
            if self._closed:
                return self.snapshot()
            await self.submitter.submit(self.engine, artifact, form)
        except SubmissionRejected as e:
            self._notify(NoticeLevel.ERROR, "Payment rejected", e.message)
            raise
        except NetworkError as e:
            self._notify(NoticeLevel.WARNING, "Could not submit payment", e.message)
            raise
        finally:
            self._submitting = False
        return self.snapshot()

    async def retry(self) -> PaymentSnapshot:
        """Start a fresh intent after a failure or expiry.

        An online intent still waiting for its redirect (the gateway was
        unreachable) retries the gateway call instead.
        """
        self._ensure_open()
        state = self.engine.state
        if state == IntentState.ONLINE_AWAITING_REDIRECT:
            return await self.begin()
        if state not in (IntentState.FAILED, IntentState.EXPIRED):
            raise InvalidState(f"Cannot retry a payment in state {state.value}")

        previous = self.engine.intent
        self._teardown()
        invoice = await self.backend.get_invoice(previous.invoice_id)
        if self._closed:
            return self.snapshot()
        if previous.method == PaymentMethod.MANUAL:
            await self.guard.ensure_no_pending(previous.invoice_id, previous.tenant_id)

        self.engine.dispose()
        self._invoice = invoice
        self._attach(PaymentIntent.for_invoice(invoice, previous.tenant_id, previous.method))
        logger.info(
            f"Retrying invoice {previous.invoice_id}: intent {previous.intent_id} replaced by "
            f"{self.engine.intent.intent_id}"
        )
        return await self.begin()

    def cancel(self) -> PaymentSnapshot:
        """Abandon the attempt; the intent fails with reason ``cancelled``."""
        self._ensure_open()
        if not self.engine.is_terminal:
            self.engine.report_rejection("cancelled")
        self._teardown()
        return self.snapshot()

    def reopen_window(self) -> PaymentSnapshot:
        """Open the gateway page again, e.g. after the popup was blocked."""
        self._ensure_open()
        if self._redirect is None or self.engine.is_terminal:
            raise InvalidState("There is no open gateway transaction to show")
        self.window.close(self._handle)
        self._open_window(self._redirect.redirect_url)
        return self.snapshot()

    def handle_notification(self, notification: GatewayNotification) -> bool:
        """Apply an asynchronous gateway webhook for this session's order."""
        if self._closed:
            logger.debug(f"Discarding notification for closed session {self.session_id}")
            return False
        if notification.external_reference != self.engine.intent.external_reference:
            return False
        return self.engine.report_gateway_signal(notification.status)

    async def close(self) -> None:
        """Stop timers, close the window, dispose the engine and flush the journal."""
        if self._closed:
            return
        self._closed = True
        self._closed_at = (self._clock or datetime.utcnow)()
        self._teardown()
        self.engine.dispose()
        self._listeners.clear()
        await self._scheduler.wait_stopped()
        if self._journal_tail is not None:
            await asyncio.gather(self._journal_tail, return_exceptions=True)
        logger.debug(f"Payment session {self.session_id} closed")

    async def __aenter__(self) -> "PaymentSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Online flow
    # ------------------------------------------------------------------

    async def _open_gateway(self) -> None:
        intent = self.engine.intent
        try:
            redirect = await self.gateway.create_redirect(intent)
        except GatewayRejected as e:
            if not self._closed:
                self.engine.report_rejection(e.message)
                self._notify(NoticeLevel.ERROR, "Payment could not be started", e.message)
            raise
        except NetworkError as e:
            if not self._closed:
                self._notify(NoticeLevel.WARNING, "Payment gateway unreachable", e.message)
            raise
        if self._closed or self.engine.is_terminal:
            return

        self._redirect = redirect
        if redirect.invoice is not None:
            self._invoice = redirect.invoice
        self.engine.report_redirect_ready(redirect.external_reference)
        self._scheduler.start()
        self._open_window(redirect.redirect_url)

    def _open_window(self, url: str) -> None:
        try:
            self._handle = self.window.open(url)
        except PopupBlocked:
            self._handle = None
            self._popup_blocked = True
            self._notify(
                NoticeLevel.WARNING,
                "Payment window blocked",
                f"Allow popups or open the payment page manually: {url}",
            )
            return
        self._popup_blocked = False
        self.window.watch(self._handle, self._on_window_closed)

    def _on_window_closed(self) -> None:
        if self._closed or self.engine.is_terminal:
            return
        self._notify(
            NoticeLevel.INFO,
            "Payment window closed",
            "Checking your payment status. Use check status if it does not update.",
        )
        self._scheduler.status_tick()

    def _on_expire(self) -> None:
        if self._closed:
            return
        self.engine.expire()

    # ------------------------------------------------------------------
    # Status checks
    # ------------------------------------------------------------------

    async def _check_once(self) -> None:
        if self._closed or self.engine.is_terminal:
            return
        intent = self.engine.intent
        if intent.method == PaymentMethod.ONLINE:
            await self._check_online(intent)
        else:
            await self._check_manual(intent)

    async def _check_online(self, intent: PaymentIntent) -> None:
        try:
            status = await self.gateway.check_status(intent.external_reference)
        except (NetworkError, NotFound) as e:
            logger.info(f"Gateway status for {intent.external_reference} unavailable ({e}); trying records")
            await self._check_records(intent, e)
            return
        if self._closed:
            return
        self._consecutive_failures = 0
        self.engine.report_gateway_signal(status.status)

    async def _check_manual(self, intent: PaymentIntent) -> None:
        await self._check_records(intent, None)

    async def _check_records(self, intent: PaymentIntent, cause: Optional[PaymentError]) -> None:
        try:
            record = await self._lookup_record(intent)
        except NetworkError as e:
            if not self._closed:
                self._record_failure(cause or e)
            return
        if self._closed:
            return
        if record is None and cause is not None:
            # Gateway down and no record yet: still no status for the tenant.
            self._record_failure(cause)
            return
        self._consecutive_failures = 0
        if record is not None:
            self.engine.refresh_from_record(record)

    async def _lookup_record(self, intent: PaymentIntent) -> Optional[PaymentRecord]:
        """Find this intent's payment record in the invoice, then the tenant list.

        Raises:
            NetworkError: If both lookups failed.
        """
        def matches(record: PaymentRecord) -> bool:
            if intent.method == PaymentMethod.ONLINE:
                return record.transaction_id is not None and record.transaction_id == intent.external_reference
            if intent.manual_payment_id is not None:
                return record.payment_id == intent.manual_payment_id
            return record.is_manual and record.belongs_to(intent.invoice_id)

        invoice_failed = False
        try:
            invoice = await self.backend.get_invoice(intent.invoice_id)
        except (PaymentError, ValidationError) as e:
            invoice_failed = True
            logger.debug(f"Invoice lookup for intent {intent.intent_id} failed: {e}")
        else:
            self._invoice = invoice
            for record in invoice.payments:
                if matches(record):
                    return record

        try:
            records = await self.backend.get_tenant_payments(intent.tenant_id)
        except (PaymentError, ValidationError) as e:
            if invoice_failed:
                raise NetworkError(f"Payment records for invoice {intent.invoice_id} are unavailable") from e
            return None
        for record in records:
            if matches(record):
                return record
        return None

    def _record_failure(self, error: PaymentError) -> None:
        self._consecutive_failures += 1
        logger.warning(
            f"Status check {self._consecutive_failures} for intent {self.engine.intent.intent_id} "
            f"failed: {error.message}"
        )
        if self._consecutive_failures == self.settings.network_failure_threshold:
            self._notify(
                NoticeLevel.WARNING,
                "Connection problem",
                "We could not check your payment status. We will keep trying.",
            )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._closed:
            raise InvalidState(f"Payment session {self.session_id} is closed")

    def _teardown(self) -> None:
        self._scheduler.stop()
        self.window.close(self._handle)
        self.window.stop()

    def _on_transition(self, intent: PaymentIntent, transition: StateTransition) -> None:
        if self._journal_started:
            self._journal(lambda: self.journal.record_transition(intent, transition))

        if intent.is_terminal:
            self._teardown()
            if intent.state == IntentState.SUCCEEDED:
                self._notify(NoticeLevel.SUCCESS, "Payment successful", f"Invoice {intent.invoice_id} is paid.")
            elif intent.state == IntentState.EXPIRED:
                self._notify(NoticeLevel.WARNING, "Payment expired", "The payment session timed out.")
            elif intent.failure_reason != "cancelled":
                self._notify(
                    NoticeLevel.ERROR,
                    "Payment failed",
                    f"Payment for invoice {intent.invoice_id} failed ({intent.failure_reason}).",
                )

        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception(f"Snapshot listener failed for session {self.session_id}")

    def _notify(self, level: NoticeLevel, title: str, message: str) -> None:
        notice = Notice(level=level, title=title, message=message)
        self._notices.append(notice)
        if self._on_notice is not None:
            try:
                self._on_notice(notice)
            except Exception:
                logger.exception("Notice callback failed")

    def _journal(self, write: Callable[[], Awaitable[None]]) -> None:
        """Queue a journal write behind the previous one."""
        if self.journal is None:
            return
        previous = self._journal_tail

        async def run() -> None:
            if previous is not None:
                await asyncio.gather(previous, return_exceptions=True)
            try:
                await write()
            except Exception:
                logger.exception(f"Journal write failed for session {self.session_id}")

        self._journal_tail = asyncio.ensure_future(run())


class SessionRegistry:
    """Live sessions of one process; at most one non-terminal per invoice.

    Finished sessions (closed or terminal) stay readable until a newer
    session for the same invoice is added or ``retention_seconds`` pass,
    whichever comes first. Pruning runs on every ``add``.
    """

    def __init__(self, retention_seconds: float = 900.0, clock: Optional[Callable[[], datetime]] = None):
        self._sessions: Dict[str, PaymentSession] = {}
        self.retention_seconds = retention_seconds
        self._clock = clock or datetime.utcnow

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionRegistry":
        return cls(retention_seconds=settings.session_retention_seconds)

    def __len__(self) -> int:
        return len(self._sessions)

    async def add(self, session: PaymentSession) -> None:
        live = self.active_for_invoice(session.invoice_id)
        if live is not None and live is not session:
            raise PendingPaymentExists(session.invoice_id)
        await self.prune(invoice_id=session.invoice_id)
        self._sessions[session.session_id] = session

    async def prune(self, invoice_id: Optional[int] = None) -> int:
        """Close and drop finished sessions.

        Sessions for ``invoice_id`` are dropped as soon as they are finished;
        any other finished session once it is older than the retention window.
        Returns the number of sessions removed.
        """
        now = self._clock()
        stale = []
        for session_id, session in self._sessions.items():
            finished_at = session.finished_at
            if finished_at is None:
                continue
            if session.invoice_id == invoice_id:
                stale.append(session_id)
            elif (now - finished_at).total_seconds() >= self.retention_seconds:
                stale.append(session_id)
        for session_id in stale:
            await self.remove(session_id)
        if stale:
            logger.debug(f"Evicted {len(stale)} finished payment session(s)")
        return len(stale)

    def get(self, session_id: str) -> Optional[PaymentSession]:
        return self._sessions.get(session_id)

    def active_for_invoice(self, invoice_id: int) -> Optional[PaymentSession]:
        for session in self._sessions.values():
            if session.closed or session.engine.is_terminal:
                continue
            if session.invoice_id == invoice_id:
                return session
        return None

    def find_by_external_reference(self, external_reference: str) -> Optional[PaymentSession]:
        for session in self._sessions.values():
            if not session.closed and session.engine.intent.external_reference == external_reference:
                return session
        return None

    async def remove(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            await session.close()

    async def close_all(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.close()
