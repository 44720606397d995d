"""
Artifact storage for generated and signed PDFs.

Two backends share one interface: a local directory for development and
tests, and a Google Cloud Storage bucket for production. Object paths are
stable and derived from the document id only.
"""
import logging
import os
from abc import ABC, abstractmethod
from datetime import timedelta
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import google.auth
from google.auth.transport.requests import Request
from google.cloud import storage
from google.cloud.storage import Blob

from studiosign.config import get_settings, Settings

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"


def document_pdf_path(document_id: str) -> str:
    """Unsigned rendered PDF."""
    return f"documents/{document_id}/document.pdf"


def working_pdf_path(document_id: str) -> str:
    """Envelope PDF that accumulates signatures while signing is in progress."""
    return f"documents/{document_id}/working.pdf"


def signed_pdf_path(document_id: str) -> str:
    """Final sealed PDF."""
    return f"documents/{document_id}/signed.pdf"


def upload_pdf_path(envelope_id: str, upload_id: str) -> str:
    """Uploaded PDF attached to an envelope."""
    return f"documents/{envelope_id}/uploads/{upload_id}.pdf"


def normalize_storage_path(path: str) -> str:
    """
    Validate a relative object path.

    Raises ValueError for path traversal attempts or absolute paths.
    """
    if not path:
        raise ValueError("Storage path cannot be empty")
    if ".." in path.split("/"):
        raise ValueError("Path traversal not allowed")
    if path.startswith("/"):
        raise ValueError("Absolute paths not allowed")
    return path


def _encode_filename_for_header(filename: str) -> str:
    """Content-Disposition value (RFC 6266) with a UTF-8 fallback for non-ASCII names."""
    try:
        filename.encode("ascii")
        safe_filename = filename.replace('"', '\\"')
        return f'attachment; filename="{safe_filename}"'
    except UnicodeEncodeError:
        encoded = quote(filename, safe="")
        ascii_fallback = "".join(c if ord(c) < 128 else "_" for c in filename)
        return f"attachment; filename=\"{ascii_fallback}\"; filename*=UTF-8''{encoded}"


class ArtifactStorage(ABC):

    @abstractmethod
    def write_bytes(self, path: str, data: bytes, content_type: str = PDF_CONTENT_TYPE) -> str: ...

    @abstractmethod
    def read_bytes(self, path: str) -> bytes:
        """Raises FileNotFoundError when the object does not exist."""

    @abstractmethod
    def exists(self, path: str) -> bool: ...

    @abstractmethod
    def delete(self, path: str) -> bool: ...

    def download_url(self, path: str, filename: Optional[str] = None) -> Optional[str]:
        """Time-limited download URL, if the backend supports one."""
        return None


class LocalArtifactStorage(ArtifactStorage):
    """Files under a base directory."""

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir)

    def _resolve(self, path: str) -> Path:
        return self.base_dir / normalize_storage_path(path)

    def write_bytes(self, path, data, content_type=PDF_CONTENT_TYPE):
        target = self._resolve(path)
        os.makedirs(target.parent, exist_ok=True)
        tmp = target.with_suffix(target.suffix + ".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, target)
        logger.info(f"Stored {len(data)} bytes at {path}")
        return path

    def read_bytes(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.exists():
            raise FileNotFoundError(f"File not found: {path}")
        return target.read_bytes()

    def exists(self, path: str) -> bool:
        return self._resolve(path).exists()

    def delete(self, path: str) -> bool:
        target = self._resolve(path)
        if not target.exists():
            return False
        target.unlink()
        return True


class GCSArtifactStorage(ArtifactStorage):
    """Google Cloud Storage bucket."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._client: Optional[storage.Client] = None
        self._bucket: Optional[storage.Bucket] = None

    @property
    def client(self) -> storage.Client:
        if self._client is None:
            self._client = storage.Client()
        return self._client

    @property
    def bucket(self) -> storage.Bucket:
        if self._bucket is None:
            self._bucket = self.client.bucket(self.settings.gcs_bucket)
        return self._bucket

    def _generate_iam_signed_url(
        self,
        blob: Blob,
        method: str,
        expiration_delta: timedelta,
        response_disposition: Optional[str] = None,
    ) -> str:
        """V4 signed URL using the runtime service account's identity (IAM)."""
        credentials, _ = google.auth.default()
        credentials.refresh(Request())

        return blob.generate_signed_url(
            version="v4",
            expiration=expiration_delta,
            method=method,
            response_disposition=response_disposition,
            service_account_email=credentials.service_account_email,
            access_token=credentials.token,
        )

    def write_bytes(self, path, data, content_type=PDF_CONTENT_TYPE):
        blob = self.bucket.blob(normalize_storage_path(path))
        blob.upload_from_string(data, content_type=content_type)
        logger.info(f"Uploaded {len(data)} bytes to gs://{self.settings.gcs_bucket}/{path}")
        return path

    def read_bytes(self, path: str) -> bytes:
        blob = self.bucket.blob(normalize_storage_path(path))
        if not blob.exists():
            raise FileNotFoundError(f"File not found in GCS: {path}")
        return blob.download_as_bytes()

    def exists(self, path: str) -> bool:
        return self.bucket.blob(normalize_storage_path(path)).exists()

    def delete(self, path: str) -> bool:
        blob = self.bucket.blob(normalize_storage_path(path))
        if not blob.exists():
            return False
        blob.delete()
        return True

    def download_url(self, path: str, filename: Optional[str] = None) -> Optional[str]:
        blob = self.bucket.blob(normalize_storage_path(path))
        if not blob.exists():
            raise FileNotFoundError(f"File not found: {path}")
        return self._generate_iam_signed_url(
            blob=blob,
            method="GET",
            expiration_delta=timedelta(minutes=self.settings.gcs_signed_url_expiration_minutes),
            response_disposition=_encode_filename_for_header(filename) if filename else None,
        )


def create_storage(settings: Settings) -> ArtifactStorage:
    if settings.storage_backend == "gcs":
        return GCSArtifactStorage(settings)
    if settings.storage_backend == "local":
        return LocalArtifactStorage(settings.artifact_dir)
    raise ValueError(f"Unknown STORAGE_BACKEND: {settings.storage_backend}")


# Singleton instance
_storage: Optional[ArtifactStorage] = None


def get_storage() -> ArtifactStorage:
    """Get the artifact storage singleton."""
    global _storage
    if _storage is None:
        _storage = create_storage(get_settings())
    return _storage
