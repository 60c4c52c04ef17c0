"""Manual payment proof artifacts."""

import base64
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = frozenset({
    "image/jpeg",
    "image/png",
    "image/gif",
    "application/pdf",
})

# Leading bytes -> mime type
_MAGIC_NUMBERS = (
    (b"\x89PNG", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF8", "image/gif"),
    (b"%PDF", "application/pdf"),
)


def sniff_mime_type(content: bytes) -> Optional[str]:
    """Detect the mime type of a proof file from its leading bytes."""
    for magic, mime_type in _MAGIC_NUMBERS:
        if content.startswith(magic):
            return mime_type
    return None


@dataclass(frozen=True)
class ProofArtifact:
    """An uploaded transfer receipt. Immutable; discarded after submission."""
    file_name: str
    mime_type: str
    size_bytes: int
    content: bytes

    @classmethod
    def from_bytes(cls, file_name: str, content: bytes, declared_type: Optional[str] = None) -> "ProofArtifact":
        """Build an artifact, preferring the sniffed type over the declared one.

        Args:
            file_name: Original file name.
            content: Raw file content.
            declared_type: Mime type claimed by the uploader, if any.
        """
        detected = sniff_mime_type(content)
        if declared_type is None:
            declared_type, _ = mimetypes.guess_type(file_name)
        mime_type = detected or declared_type or "application/octet-stream"
        if detected and declared_type and detected != declared_type:
            logger.warning(
                f"Proof {file_name} declared as {declared_type} but content is {detected}; using {detected}"
            )
        return cls(file_name=file_name, mime_type=mime_type, size_bytes=len(content), content=content)

    @classmethod
    def from_path(cls, path: Union[str, Path], declared_type: Optional[str] = None) -> "ProofArtifact":
        path = Path(path)
        return cls.from_bytes(path.name, path.read_bytes(), declared_type)

    @property
    def content_base64(self) -> str:
        return base64.b64encode(self.content).decode("ascii")
