# tenant_payments package
__version__ = "0.1.0"

from .config import Settings, get_settings
from .errors import (
    PaymentError,
    PopupBlocked,
    NetworkError,
    NotFound,
    GatewayRejected,
    SubmissionRejected,
    InvalidState,
    PendingPaymentExists,
    ProofValidationError,
)
from .models import (
    PaymentMethod,
    IntentState,
    PaymentIntent,
    PaymentRecord,
    Invoice,
    PaymentSnapshot,
    ManualPaymentForm,
    Notice,
)
from .backend import BackendClient
from .reconciliation import ReconciliationEngine, PollingScheduler, normalize_status
from .gateway import BackendGatewayClient, SimulatorGatewayClient
from .manual import ManualProofSubmitter, PendingPaymentGuard, ProofArtifact
from .window import RedirectWindowController
from .session import PaymentSession, SessionRegistry
