"""Manual bank-transfer payments."""

from .guard import PendingPaymentGuard
from .proof import ALLOWED_MIME_TYPES, ProofArtifact, sniff_mime_type
from .submitter import ManualProofSubmitter

__all__ = [
    "ALLOWED_MIME_TYPES",
    "ProofArtifact",
    "sniff_mime_type",
    "ManualProofSubmitter",
    "PendingPaymentGuard",
]
