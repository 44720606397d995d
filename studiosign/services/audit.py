"""
Append-only audit trail per document.
"""
import logging
from typing import Any, Dict, Iterator, List, Optional

from studiosign.email import AuditCallback
from studiosign.models import AuditAction, AuditEntry, DocumentKind
from studiosign.store.base import SigningStore
from studiosign.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)


class AuditLog:
    """Thin service over the store's audit table. Entries are never updated or deleted."""

    def __init__(self, store: SigningStore):
        self.store = store

    def append(
        self,
        document_id: str,
        kind: DocumentKind,
        action: AuditAction,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        entry = self.store.append_audit(
            document_id=document_id,
            kind=kind,
            action=action,
            metadata={k: v for k, v in (metadata or {}).items() if v is not None},
            created_at=utc_now(),
        )
        logger.info(f"Audit {action.value} #{entry.sequence} for {kind.value} {document_id}")
        return entry

    def list(self, document_id: str, limit: Optional[int] = None, offset: int = 0) -> List[AuditEntry]:
        """Entries newest first."""
        return self.store.list_audit(document_id, limit=limit, offset=offset)

    def iter_entries(self, document_id: str, page_size: int = 100) -> Iterator[AuditEntry]:
        """
        Lazily walk all entries, newest first, one store page at a time.

        Pages are keyed on the last sequence seen, so entries appended while
        walking are skipped rather than shifting later pages.
        """
        before = None
        while True:
            page = self.store.list_audit(document_id, limit=page_size, before_sequence=before)
            yield from page
            if len(page) < page_size:
                return
            before = page[-1].sequence

    def chronological(self, document_id: str) -> List[AuditEntry]:
        """Entries oldest first, for reports."""
        return list(reversed(list(self.iter_entries(document_id))))

    def email_callback(self, kind: DocumentKind) -> AuditCallback:
        """Callback for EmailService that records EMAIL_SENT / EMAIL_FAILED."""
        async def callback(event_type: str, document_id: str, metadata: Dict[str, Any]) -> None:
            self.append(document_id, kind, AuditAction(event_type), metadata)

        return callback
