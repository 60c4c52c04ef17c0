"""HTTP surface for payment sessions."""

import base64
import binascii
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from pydantic import Field
from slowapi.errors import RateLimitExceeded

from .auth import CHECK_RATE_LIMIT, SESSION_RATE_LIMIT, limiter, rate_limit_handler, verify_api_key
from .backend import BackendClient
from .config import Settings, get_settings
from .database import SqlIntentJournal, close_db, get_async_session_factory, init_db
from .errors import (
    GatewayRejected,
    InvalidState,
    NetworkError,
    NotFound,
    PaymentError,
    PendingPaymentExists,
    ProofValidationError,
    SubmissionRejected,
)
from .gateway import BackendGatewayClient, GatewayClientBase
from .manual import ProofArtifact
from .models import ManualPaymentForm, Notice, PaymentMethod, PaymentSnapshot, WireModel
from .session import IntentJournal, PaymentSession, SessionRegistry
from .window import ClientSideOpener, RedirectWindowController

logger = logging.getLogger(__name__)


@dataclass
class PaymentServices:
    """Collaborators shared by every session the API creates."""
    settings: Settings
    backend: BackendClient
    gateway: GatewayClientBase
    journal: Optional[IntentJournal] = None
    registry: Optional[SessionRegistry] = None

    def __post_init__(self):
        if self.registry is None:
            self.registry = SessionRegistry.from_settings(self.settings)

    def window_controller(self) -> RedirectWindowController:
        return RedirectWindowController(
            opener=ClientSideOpener(),
            watch_interval=self.settings.window_watch_interval_seconds,
        )

    async def aclose(self) -> None:
        await self.registry.close_all()
        await self.gateway.aclose()
        await self.backend.aclose()


class CreateSessionBody(WireModel):
    """Request body for starting a payment."""
    invoice_id: int = Field(..., gt=0)
    method: PaymentMethod


class ManualProofBody(WireModel):
    """Request body for a manual bank-transfer proof."""
    bank_name: str = ""
    account_number: str = ""
    account_holder_name: str = ""
    transfer_date: Optional[date] = None
    file_name: str
    file_type: Optional[str] = None
    content_base64: str
    payment_channel: str = "bank_transfer"
    notes: Optional[str] = None


class SessionResponse(WireModel):
    session_id: str
    snapshot: PaymentSnapshot
    notices: List[Notice] = Field(default_factory=list)


def to_http_exception(error: PaymentError) -> HTTPException:
    """Map a payment error onto an HTTP status."""
    detail: Dict[str, Any] = {"message": error.message}
    if isinstance(error, ProofValidationError):
        detail["violations"] = [v.model_dump() for v in error.violations]
        return HTTPException(status_code=422, detail=detail)
    if isinstance(error, (PendingPaymentExists, InvalidState)):
        return HTTPException(status_code=409, detail=detail)
    if isinstance(error, NotFound):
        return HTTPException(status_code=404, detail=detail)
    if isinstance(error, (GatewayRejected, SubmissionRejected)):
        return HTTPException(status_code=502, detail=detail)
    if isinstance(error, NetworkError):
        return HTTPException(status_code=503, detail=detail)
    return HTTPException(status_code=400, detail=detail)


def get_services(request: Request) -> PaymentServices:
    return request.app.state.services


def get_session(session_id: str, services: PaymentServices = Depends(get_services)) -> PaymentSession:
    session = services.registry.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session


def _respond(session: PaymentSession) -> SessionResponse:
    return SessionResponse(
        session_id=session.session_id,
        snapshot=session.snapshot(),
        notices=session.notices,
    )


router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.post("", response_model=SessionResponse, status_code=201)
@limiter.limit(SESSION_RATE_LIMIT)
async def create_session(
    request: Request,
    body: CreateSessionBody,
    services: PaymentServices = Depends(get_services),
    api_key: str = Depends(verify_api_key),
):
    """
    Start paying an invoice.

    Online payments return the gateway redirect URL in the snapshot; the
    client opens it and the server keeps polling the gateway.
    """
    try:
        session = await PaymentSession.create(
            body.invoice_id,
            body.method,
            backend=services.backend,
            gateway=services.gateway,
            settings=services.settings,
            registry=services.registry,
            window=services.window_controller(),
            journal=services.journal,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"message": str(e)})
    except PaymentError as e:
        raise to_http_exception(e) from e

    try:
        await session.begin()
    except PaymentError as e:
        exc = to_http_exception(e)
        exc.detail["sessionId"] = session.session_id
        raise exc from e
    return _respond(session)


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session_status(
    session: PaymentSession = Depends(get_session),
    api_key: str = Depends(verify_api_key),
):
    return _respond(session)


@router.post("/{session_id}/check", response_model=SessionResponse)
@limiter.limit(CHECK_RATE_LIMIT)
async def check_session(
    request: Request,
    session: PaymentSession = Depends(get_session),
    api_key: str = Depends(verify_api_key),
):
    """Run a status check now; returns the current state if one is in flight."""
    try:
        await session.check_now()
    except PaymentError as e:
        raise to_http_exception(e) from e
    return _respond(session)


@router.post("/{session_id}/retry", response_model=SessionResponse)
@limiter.limit(SESSION_RATE_LIMIT)
async def retry_session(
    request: Request,
    session: PaymentSession = Depends(get_session),
    api_key: str = Depends(verify_api_key),
):
    try:
        await session.retry()
    except PaymentError as e:
        raise to_http_exception(e) from e
    return _respond(session)


@router.post("/{session_id}/cancel", response_model=SessionResponse)
async def cancel_session(
    session: PaymentSession = Depends(get_session),
    api_key: str = Depends(verify_api_key),
):
    try:
        session.cancel()
    except PaymentError as e:
        raise to_http_exception(e) from e
    return _respond(session)


@router.post("/{session_id}/reopen", response_model=SessionResponse)
async def reopen_session_window(
    session: PaymentSession = Depends(get_session),
    api_key: str = Depends(verify_api_key),
):
    try:
        session.reopen_window()
    except PaymentError as e:
        raise to_http_exception(e) from e
    return _respond(session)


@router.post("/{session_id}/manual", response_model=SessionResponse)
@limiter.limit(SESSION_RATE_LIMIT)
async def submit_manual_proof(
    request: Request,
    body: ManualProofBody,
    session: PaymentSession = Depends(get_session),
    api_key: str = Depends(verify_api_key),
):
    """
    Submit a bank-transfer proof.

    Validation problems are returned as 422 with one entry per violation.
    """
    try:
        content = base64.b64decode(body.content_base64, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(
            status_code=422,
            detail={"message": "contentBase64 is not valid base64"},
        )
    artifact = ProofArtifact.from_bytes(body.file_name, content, body.file_type)
    form = ManualPaymentForm(
        bank_name=body.bank_name,
        account_number=body.account_number,
        account_holder_name=body.account_holder_name,
        transfer_date=body.transfer_date,
        payment_channel=body.payment_channel,
        notes=body.notes,
    )
    try:
        await session.submit_proof(artifact, form)
    except PaymentError as e:
        raise to_http_exception(e) from e
    return _respond(session)


@router.delete("/{session_id}", status_code=204)
async def close_session(
    session_id: str,
    services: PaymentServices = Depends(get_services),
    api_key: str = Depends(verify_api_key),
):
    if services.registry.get(session_id) is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    await services.registry.remove(session_id)


def create_app(services: Optional[PaymentServices] = None) -> FastAPI:
    """Build the API.

    Args:
        services: Pre-built collaborators. When omitted they are created from
            settings on startup, with the SQL journal enabled.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_database = False
        if services is None:
            settings = get_settings()
            await init_db(settings.database_url)
            owns_database = True
            backend = BackendClient.from_settings(settings)
            app.state.services = PaymentServices(
                settings=settings,
                backend=backend,
                gateway=BackendGatewayClient(backend, server_key=settings.gateway_server_key),
                journal=SqlIntentJournal(get_async_session_factory()),
            )
        else:
            app.state.services = services
        try:
            yield
        finally:
            await app.state.services.aclose()
            if owns_database:
                await close_db()

    app = FastAPI(title="Tenant Payments API", lifespan=lifespan)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.include_router(router)

    @app.post("/webhooks/gateway")
    async def gateway_webhook(request: Request):
        """Route a gateway notification to the session owning its order."""
        services: PaymentServices = request.app.state.services
        body = await request.body()
        headers = {k.lower(): v for k, v in request.headers.items()}
        try:
            notification = services.gateway.parse_notification(headers, body)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        session = services.registry.find_by_external_reference(notification.external_reference)
        if session is None:
            logger.info(f"No live session for gateway order {notification.external_reference}")
            return {"accepted": True, "matched": False}
        try:
            applied = session.handle_notification(notification)
        except InvalidState as e:
            raise to_http_exception(e) from e
        return {"accepted": True, "matched": True, "applied": applied, "sessionId": session.session_id}

    @app.get("/health")
    async def health(request: Request):
        services: PaymentServices = request.app.state.services
        return {
            "status": "ok",
            "gateway": services.gateway.health_check(),
            "sessions": len(services.registry),
        }

    return app


app = create_app()
