"""
Integrity verification of sealed PDF artifacts.

The stored bytes are always re-read and re-hashed. Nothing here writes to a
document: a failed check is a reportable result, not something to repair.
"""
import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from studiosign.models import DocumentRecord
from studiosign.storage import ArtifactStorage
from studiosign.utils.security import compute_bytes_hash

logger = logging.getLogger(__name__)


@dataclass
class IntegrityReport:
    valid: bool
    recomputed_hash: Optional[str]
    sealed_hash: Optional[str]
    path: Optional[str]


def verify_bytes(data: bytes, expected_hash: Optional[str]) -> bool:
    """Constant-time comparison of the SHA-256 of data against a sealed hash."""
    if not expected_hash:
        return False
    return secrets.compare_digest(compute_bytes_hash(data), expected_hash.lower())


def signature_image_hash(data_url: str) -> str:
    return compute_bytes_hash(data_url.encode("utf-8"))


def verify_signature_image(data_url: Optional[str], expected_hash: Optional[str]) -> bool:
    """Whether a stored signature image still matches the hash taken when it was submitted."""
    if not data_url:
        return False
    return verify_bytes(data_url.encode("utf-8"), expected_hash)


class IntegrityVerifier:

    def __init__(self, storage: ArtifactStorage):
        self.storage = storage

    def verify(self, document: DocumentRecord) -> IntegrityReport:
        """Recompute the hash of the document's stored artifact and compare it to the seal."""
        path = document.pdf_path
        sealed = document.pdf_hash
        if not path or not sealed:
            return IntegrityReport(valid=False, recomputed_hash=None, sealed_hash=sealed, path=path)

        try:
            data = self.storage.read_bytes(path)
        except FileNotFoundError:
            logger.warning(f"Integrity check: artifact missing for {document.id}")
            return IntegrityReport(valid=False, recomputed_hash=None, sealed_hash=sealed, path=path)
        except OSError as e:
            logger.warning(f"Integrity check: artifact unreadable for {document.id}: {e}")
            return IntegrityReport(valid=False, recomputed_hash=None, sealed_hash=sealed, path=path)

        recomputed = compute_bytes_hash(data)
        valid = secrets.compare_digest(recomputed, sealed)
        if not valid:
            logger.error(
                f"Integrity mismatch for {document.id}: sealed={sealed[:12]} recomputed={recomputed[:12]}"
            )
        return IntegrityReport(valid=valid, recomputed_hash=recomputed, sealed_hash=sealed, path=path)
