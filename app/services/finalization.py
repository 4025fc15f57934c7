"""
Document finalization: stamp -> hash -> audit page -> persist -> notify.

Runs once per document, after the last signer completes (or right after the
completion check in single-signer mode). The completed-status update is the
last state change, so a failure before it leaves the document retryable.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import httpx
from starlette.concurrency import run_in_threadpool

from app.config import get_settings, Settings
from app.email import EmailService, get_email_service
from app.exceptions import ConflictError, UpstreamError
from app.models import (
    AuditEventType,
    CompleteResponse,
    Document,
    DocumentStatus,
    SignatureAsset,
    Signer,
    StorageProvider,
    TextFieldValue,
)
from app.pdf.audit_trail import AuditTrailGenerator, TrailDocument, get_audit_trail_generator, trail_events
from app.pdf.stamp import PDFStamper, StampingError, StampValue, append_pages, get_pdf_stamper
from app.services.audit import AuditLog, get_audit_log
from app.services.field_catalog import FieldCatalog, load_catalog
from app.storage import ObjectStorageBackend, StorageError, StorageResolver, get_storage_resolver
from app.supabase_client import SupabaseClient, get_supabase_client
from app.utils.datetime_utils import utc_now
from app.utils.logging import mask_email
from app.utils.security import compute_bytes_hash
from app.webhook import WebhookDispatcher, get_webhook_dispatcher

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"


def signed_pdf_key(document_id: str) -> str:
    return f"documents/{document_id}/signed.pdf"


def signed_pdf_filename(document: Document) -> str:
    return f"signed-{document.id}.pdf"


@dataclass
class FinalizedDocument:
    document_id: str
    signed_pdf_key: str
    sha256: str
    pdf_bytes: bytes

    def to_response(self) -> CompleteResponse:
        return CompleteResponse(
            success=True,
            document_id=self.document_id,
            status=DocumentStatus.COMPLETED,
            sha256=self.sha256,
        )


class FinalizationPipeline:
    """Produces and commits the signed artifact of a document."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        supabase: Optional[SupabaseClient] = None,
        resolver: Optional[StorageResolver] = None,
        audit: Optional[AuditLog] = None,
        stamper: Optional[PDFStamper] = None,
        trail_generator: Optional[AuditTrailGenerator] = None,
        webhooks: Optional[WebhookDispatcher] = None,
        email: Optional[EmailService] = None,
    ):
        self.settings = settings or get_settings()
        self.supabase = supabase or get_supabase_client()
        self.resolver = resolver or get_storage_resolver()
        self.audit = audit or get_audit_log()
        self.stamper = stamper or get_pdf_stamper()
        self.trail_generator = trail_generator or get_audit_trail_generator()
        self.webhooks = webhooks or get_webhook_dispatcher()
        self.email = email or get_email_service()

    async def finalize(
        self,
        document: Document,
        request_meta: Optional[Dict[str, Optional[str]]] = None,
    ) -> CompleteResponse:
        """
        Raises:
            UpstreamError: unsigned PDF, signature image or internal upload failed
            ConflictError: another worker completed the document first
        """
        logger.info(f"Finalizing document {document.id}")
        internal = self.resolver.internal_backend(document.storage_bucket)

        catalog = await load_catalog(document, self.supabase)
        assets = await self.supabase.get_signature_assets(document.id)
        values = await self.supabase.get_text_field_values(document.id)

        unsigned_pdf = await self._download_unsigned(document, internal)
        stamp_values = await self._collect_stamp_values(internal, assets, values)

        try:
            stamped = await run_in_threadpool(
                self.stamper.stamp,
                unsigned_pdf,
                catalog.rendering_fields(),
                stamp_values,
                document.is_one_off,
            )
        except StampingError as e:
            logger.error(f"Stamping failed for document {document.id}: {e}")
            raise UpstreamError("Failed to stamp the signed document", service="pdf")

        # Hash covers the stamped pages only, the audit page is appended after
        sha256 = compute_bytes_hash(stamped.pdf_bytes)
        final_pdf = await self._append_audit_trail(document, stamped.pdf_bytes, sha256)

        key = signed_pdf_key(document.id)
        await self._store(document, final_pdf, key, internal, request_meta)

        committed = await self.supabase.mark_document_completed(document.id, key, sha256)
        if not committed:
            logger.warning(f"Document {document.id} was completed concurrently, keeping the first result")
            raise ConflictError("Document has already been completed")

        await self.audit.append(document.id, AuditEventType.COMPLETED, request_meta, {"sha256": sha256})
        logger.info(f"Document completed: {document.id} sha256={sha256[:16]}...")

        result = FinalizedDocument(document.id, key, sha256, final_pdf)
        await self._notify(document, result, internal, request_meta)
        return result.to_response()

    async def _download_unsigned(self, document: Document, internal: ObjectStorageBackend) -> bytes:
        if not document.unsigned_pdf_key:
            raise UpstreamError("Document has no unsigned PDF", service="storage")
        try:
            return await internal.download(document.unsigned_pdf_key)
        except StorageError as e:
            logger.error(f"Could not download unsigned PDF for {document.id}: {e}")
            raise UpstreamError("Failed to load the unsigned document", service="storage")

    async def _collect_stamp_values(
        self,
        internal: ObjectStorageBackend,
        assets: List[SignatureAsset],
        values: List[TextFieldValue],
    ) -> Dict[str, StampValue]:
        collected: Dict[str, StampValue] = {}
        for asset in assets:
            try:
                image = await internal.download(asset.image_key)
            except StorageError as e:
                logger.error(f"Could not download signature image {asset.image_key}: {e}")
                raise UpstreamError("Failed to load a signature image", service="storage")
            collected[asset.spot_key] = StampValue(image=image, signed_at=asset.created_at)
        for value in values:
            collected[value.spot_key] = StampValue(text=value.value, signed_at=value.created_at)
        return collected

    async def _append_audit_trail(self, document: Document, stamped_pdf: bytes, sha256: str) -> bytes:
        events = await self.audit.trail(document.id)
        trail_document = TrailDocument(
            id=document.id,
            title=document.title,
            sender=document.data_json.get("senderName") or document.data_json.get("senderEmail"),
            signed_sha256=sha256,
            original_sha256=document.original_hash,
        )
        try:
            trail_pdf = await run_in_threadpool(
                self.trail_generator.generate, trail_document, trail_events(events), utc_now()
            )
            return await run_in_threadpool(append_pages, stamped_pdf, trail_pdf)
        except StampingError as e:
            logger.error(f"Audit trail failed for document {document.id}: {e}")
            raise UpstreamError("Failed to build the audit trail", service="pdf")

    async def _store(
        self,
        document: Document,
        pdf_bytes: bytes,
        key: str,
        internal: ObjectStorageBackend,
        request_meta: Optional[Dict[str, Optional[str]]],
    ) -> None:
        """Owner's backend first (best effort), then the internal copy (required)."""
        preferred = await self.resolver.resolve_preferred(document.user_id)
        if preferred.is_fallback:
            await self.audit.append(
                document.id,
                AuditEventType.STORAGE_FALLBACK,
                request_meta,
                {"provider": preferred.provider.value, "reason": preferred.fallback_reason},
            )
        elif preferred.provider != StorageProvider.FAIRSIGN:
            try:
                location = await preferred.backend.upload(pdf_bytes, key, PDF_CONTENT_TYPE)
                logger.info(f"Stored signed PDF of {document.id} in {preferred.provider.value}: {location}")
            except (StorageError, httpx.HTTPError) as e:
                logger.warning(
                    f"Upload to {preferred.provider.value} failed for {document.id}, "
                    f"internal copy only: {e}"
                )

        try:
            await internal.upload(pdf_bytes, key, PDF_CONTENT_TYPE)
        except StorageError as e:
            logger.error(f"Internal upload failed for {document.id}: {e}")
            raise UpstreamError("Failed to store the signed document", service="storage")

    async def _notify(
        self,
        document: Document,
        result: FinalizedDocument,
        internal: ObjectStorageBackend,
        request_meta: Optional[Dict[str, Optional[str]]],
    ) -> None:
        """Webhook and e-mails. Best effort: the document is already completed."""
        if document.callback_url:
            signed_url = None
            try:
                signed_url = await internal.get_signed_url(
                    result.signed_pdf_key, self.settings.signed_pdf_url_ttl_seconds
                )
            except StorageError as e:
                logger.warning(f"Could not sign download URL for {document.id}: {e}")

            webhook = await self.webhooks.send_completed(document, result.signed_pdf_key, signed_url, result.sha256)
            if webhook is not None and webhook.success:
                await self.audit.append(document.id, AuditEventType.WEBHOOK_SENT, request_meta, {
                    "callback_url": document.callback_url,
                    "compat_mode": self.webhooks.compat_mode,
                })

        signers = await self.supabase.get_signers(document.id)
        for email, name in self._completion_recipients(document, signers):
            sent = await self.email.send_completion(
                email, name, document.title, result.pdf_bytes, signed_pdf_filename(document)
            )
            if sent.success:
                await self.audit.append(document.id, AuditEventType.COMPLETION_EMAIL_SENT, request_meta, {
                    "recipientEmail": email,
                    "hasAttachment": True,
                })
            else:
                logger.warning(f"Completion email to {mask_email(email)} not delivered: {sent.error}")

        owner_email = document.data_json.get("ownerEmail") or document.data_json.get("landlordEmail")
        if document.user_id and owner_email:
            sent = await self.email.send_owner_completion(
                owner_email, document.title, result.pdf_bytes, signed_pdf_filename(document)
            )
            if sent.success:
                await self.audit.append(document.id, AuditEventType.COMPLETION_EMAIL_SENT, request_meta, {
                    "recipientEmail": owner_email,
                })

    @staticmethod
    def _completion_recipients(document: Document, signers: List[Signer]) -> List[Tuple[str, Optional[str]]]:
        if signers:
            return [(s.email, s.name) for s in signers if s.email]
        tenant_email = document.data_json.get("tenantEmail")
        if isinstance(tenant_email, str) and "@" in tenant_email:
            return [(tenant_email, document.data_json.get("tenantName"))]
        logger.info(f"No completion email recipients for document {document.id}")
        return []


# Singleton instance
_finalization_pipeline: Optional[FinalizationPipeline] = None


def get_finalization_pipeline() -> FinalizationPipeline:
    """Get the finalization pipeline singleton."""
    global _finalization_pipeline
    if _finalization_pipeline is None:
        _finalization_pipeline = FinalizationPipeline()
    return _finalization_pipeline
