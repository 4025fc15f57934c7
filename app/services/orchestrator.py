"""
Sequential signer orchestration.

A completion request is validated, recorded for the signer and then either
hands the document to the next pending signer (status "partial") or runs
finalization in the same request. The whole sequence holds the document's
lock so two signers finishing at once cannot both finalize.
"""
import logging
from typing import Dict, List, Optional

from app.config import get_settings, Settings
from app.email import EmailService, get_email_service
from app.exceptions import ConflictError
from app.models import AuditEventType, CompleteResponse, Document, DocumentStatus, Signer, SignerStatus
from app.services import completion
from app.services.audit import AuditLog, get_audit_log
from app.services.field_catalog import load_catalog
from app.services.finalization import FinalizationPipeline, get_finalization_pipeline
from app.supabase_client import SupabaseClient, get_supabase_client
from app.utils.locks import DocumentLockRegistry, get_document_locks
from app.utils.logging import mask_email
from app.webhook import WebhookDispatcher, get_webhook_dispatcher

logger = logging.getLogger(__name__)

PARTIAL_MESSAGE = "Your signature has been recorded. Waiting for other signers."


def pending_in_order(signers: List[Signer]) -> List[Signer]:
    """Pending signers by order_index; ties keep their creation order."""
    return sorted((s for s in signers if s.status == SignerStatus.PENDING), key=lambda s: s.order_index)


class SigningOrchestrator:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        supabase: Optional[SupabaseClient] = None,
        audit: Optional[AuditLog] = None,
        finalization: Optional[FinalizationPipeline] = None,
        webhooks: Optional[WebhookDispatcher] = None,
        email: Optional[EmailService] = None,
        locks: Optional[DocumentLockRegistry] = None,
    ):
        self.settings = settings or get_settings()
        self.supabase = supabase or get_supabase_client()
        self.audit = audit or get_audit_log()
        self._finalization = finalization
        self.webhooks = webhooks or get_webhook_dispatcher()
        self.email = email or get_email_service()
        self.locks = locks or get_document_locks()

    @property
    def finalization(self) -> FinalizationPipeline:
        if self._finalization is None:
            self._finalization = get_finalization_pipeline()
        return self._finalization

    async def complete(
        self,
        document: Document,
        signer: Optional[Signer],
        consent: bool,
        request_meta: Optional[Dict[str, Optional[str]]] = None,
    ) -> CompleteResponse:
        """
        Complete the caller's part of a document.

        Raises:
            ConflictError: document already completed or signer already signed
            ValidationException: consent missing
            MissingFieldsError: required fields still empty
        """
        async with self.locks.hold(document.id):
            # Re-read under the lock, the caller's copy may predate another completion
            document = await self.supabase.get_document(document.id) or document
            if signer is not None:
                signer = await self.supabase.get_signer(signer.id) or signer
                signers = await self.supabase.get_signers(document.id)
                if completion.awaits_finalization(document, signer, signers):
                    completion.ensure_consent(consent)
                    logger.warning(f"Retrying finalization of document {document.id}, all signers already completed")
                    return await self.finalization.finalize(document, request_meta)

            catalog = await load_catalog(document, self.supabase)
            assets = await self.supabase.get_signature_assets(document.id)
            values = await self.supabase.get_text_field_values(document.id)
            result = completion.validate(document, signer, catalog, assets, values)
            completion.ensure_can_complete(document, signer, consent, result)

            await self.audit.append(document.id, AuditEventType.CONSENT_GIVEN, request_meta, {
                "signerEmail": signer.email if signer else None,
                "signerRole": signer.role if signer else None,
            })

            if signer is not None:
                partial = await self._record_signer(document, signer, request_meta)
                if partial is not None:
                    return partial
                logger.info(f"All signers completed for document {document.id}, finalizing")

            return await self.finalization.finalize(document, request_meta)

    async def _record_signer(
        self,
        document: Document,
        signer: Signer,
        request_meta: Optional[Dict[str, Optional[str]]],
    ) -> Optional[CompleteResponse]:
        """Mark the signer done. Returns the partial response while others are pending."""
        if not await self.supabase.mark_signer_completed(signer.id):
            raise ConflictError("You have already signed this document")

        await self.audit.append(document.id, AuditEventType.SIGNER_COMPLETED, request_meta, {
            "signerEmail": signer.email,
            "signerRole": signer.role,
        })
        logger.info(f"Signer {mask_email(signer.email)} ({signer.role}) completed document {document.id}")

        webhook = await self.webhooks.send_signer_completed(document, signer)
        if webhook is not None:
            await self.audit.append(document.id, AuditEventType.SIGNER_WEBHOOK_SENT, request_meta, {
                "signerEmail": signer.email,
                "event": "Signed",
            })

        pending = pending_in_order(await self.supabase.get_signers(document.id))
        if not pending:
            return None

        await self.supabase.set_document_status(document.id, DocumentStatus.PARTIAL)
        if document.is_one_off:
            await self._notify_next_signer(document, pending[0], request_meta)

        return CompleteResponse(
            success=True,
            document_id=document.id,
            status=DocumentStatus.PARTIAL,
            message=PARTIAL_MESSAGE,
            pending_signers=[s.email for s in pending],
        )

    async def _notify_next_signer(
        self,
        document: Document,
        next_signer: Signer,
        request_meta: Optional[Dict[str, Optional[str]]],
    ) -> None:
        """Template documents notify every signer up front, so only one-off documents get here."""
        if not next_signer.email or not next_signer.token:
            logger.info(f"Next signer {next_signer.id} of {document.id} has no email or token, not notifying")
            return

        sign_link = f"{self.settings.get_sign_app_url()}/d/{document.id}?token={next_signer.token}"
        result = await self.email.send_signing_request(
            to_email=next_signer.email,
            signer_name=next_signer.name,
            document_title=document.title,
            signing_url=sign_link,
            sender_name=document.data_json.get("senderName"),
        )
        if not result.success:
            logger.error(
                f"Failed to notify next signer {mask_email(next_signer.email)} "
                f"of document {document.id}: {result.error}"
            )
            return

        logger.info(f"Next signer {mask_email(next_signer.email)} notified (order {next_signer.order_index})")
        await self.audit.append(document.id, AuditEventType.NEXT_SIGNER_NOTIFIED, request_meta, {
            "signerEmail": next_signer.email,
            "signerName": next_signer.name,
            "signerRole": next_signer.role,
            "orderIndex": next_signer.order_index,
        })


# Singleton instance
_orchestrator: Optional[SigningOrchestrator] = None


def get_orchestrator() -> SigningOrchestrator:
    """Get the signing orchestrator singleton."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = SigningOrchestrator()
    return _orchestrator
