"""
Append-only audit log.

Every event a signer or the pipeline produces is written to audit_events.
Appending is best-effort: a failed insert is logged and never fails the
request that produced the event.
"""
import logging
from typing import Any, Dict, List, Optional, Union

import httpx

from app.models import AuditEvent, AuditEventType, AuditEventView
from app.supabase_client import SupabaseClient, get_supabase_client

logger = logging.getLogger(__name__)

EVENT_LABELS = {
    AuditEventType.DOCUMENT_CREATED: "Document Created",
    AuditEventType.DOCUMENT_VIEWED: "Document Viewed",
    AuditEventType.SIGNATURE_UPLOADED: "Signature Captured",
    AuditEventType.CONSENT_GIVEN: "Consent Given",
    AuditEventType.TEXT_FIELD_SUBMITTED: "Text Field Submitted",
    AuditEventType.SIGNER_COMPLETED: "Signer Completed",
    AuditEventType.NEXT_SIGNER_NOTIFIED: "Next Signer Notified",
    AuditEventType.COMPLETED: "Document Completed",
    AuditEventType.WEBHOOK_SENT: "Webhook Sent",
    AuditEventType.SIGNER_WEBHOOK_SENT: "Signer Webhook Sent",
    AuditEventType.COMPLETION_EMAIL_SENT: "Completion Email Sent",
}

# Operational events kept for owners but left off the PDF trail page
TRAIL_HIDDEN_EVENTS = {
    AuditEventType.STORAGE_FALLBACK.value,
    AuditEventType.INTERNAL_DOWNLOAD.value,
}


def event_label(event: Union[str, AuditEventType]) -> str:
    """Human-readable label, title-casing anything without a fixed label."""
    value = event.value if isinstance(event, AuditEventType) else str(event)
    try:
        return EVENT_LABELS[AuditEventType(value)]
    except (KeyError, ValueError):
        return value.replace("_", " ").title()


def to_view(event: AuditEvent) -> AuditEventView:
    return AuditEventView(
        event=event.event,
        label=event_label(event.event),
        ip=event.ip,
        user_agent=event.user_agent,
        meta=event.meta_json,
        created_at=event.created_at,
    )


class AuditLog:
    def __init__(self, supabase: Optional[SupabaseClient] = None):
        self._supabase = supabase

    @property
    def supabase(self) -> SupabaseClient:
        if self._supabase is None:
            self._supabase = get_supabase_client()
        return self._supabase

    async def append(
        self,
        document_id: str,
        event: AuditEventType,
        request_meta: Optional[Dict[str, Optional[str]]] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        """
        Record one event.

        Args:
            document_id: Document the event belongs to
            event: Event type
            request_meta: {"ip", "user_agent"} of the acting client, if any
            detail: Free-form payload stored in meta_json

        Returns:
            The stored event, or None when the insert failed
        """
        request_meta = request_meta or {}
        record = AuditEvent(
            document_id=document_id,
            event=event.value,
            ip=request_meta.get("ip"),
            user_agent=request_meta.get("user_agent"),
            meta_json=detail or {},
        )
        try:
            return await self.supabase.insert_audit_event(record)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to append audit event {event.value} for document {document_id}: {e}")
            return None

    async def list(self, document_id: str) -> List[AuditEvent]:
        """All events of a document, oldest first."""
        return await self.supabase.list_audit_events(document_id)

    async def trail(self, document_id: str) -> List[AuditEvent]:
        """Events shown on the PDF audit page."""
        return [e for e in await self.list(document_id) if e.event not in TRAIL_HIDDEN_EVENTS]


# Singleton instance
_audit_log: Optional[AuditLog] = None


def get_audit_log() -> AuditLog:
    """Get the audit log singleton."""
    global _audit_log
    if _audit_log is None:
        _audit_log = AuditLog()
    return _audit_log
