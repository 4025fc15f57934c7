"""
Signer-facing reads and writes on a document: the signing view, signature
uploads and text/date/checkbox submissions.

Each spot accepts exactly one input. A repeated submission is rejected with
ConflictError, never overwritten.
"""
import logging
from typing import Dict, Optional

from app.auth import SigningContext
from app.config import get_settings, Settings
from app.exceptions import ConflictError, ForbiddenError, UpstreamError, ValidationException
from app.models import (
    AuditEventType,
    DocumentMetadataResponse,
    FieldType,
    SignatureAsset,
    Signer,
    SignerView,
    SpotSubmitResponse,
    TextFieldValue,
)
from app.pdf.stamp import InvalidImageError, is_checked, prepare_signature_image
from app.services import completion
from app.services.audit import AuditLog, get_audit_log
from app.services.field_catalog import CatalogField, load_catalog
from app.storage import ObjectStorageBackend, StorageError, StorageResolver, get_storage_resolver
from app.supabase_client import DuplicateRecordError, SupabaseClient, get_supabase_client
from app.utils.locks import DocumentLockRegistry, get_document_locks

logger = logging.getLogger(__name__)

TEXT_FIELD_TYPES = (FieldType.TEXT, FieldType.DATE, FieldType.CHECKBOX)


def signature_image_key(document_id: str, spot_key: str) -> str:
    return f"documents/{document_id}/signatures/{spot_key}.png"


def ensure_field_owner(ctx: SigningContext, field: CatalogField, message: str) -> None:
    """In multi-signer mode a spot may only be filled by the signer whose role owns it."""
    if ctx.signer is not None and field.owner_signer_role != ctx.signer.role:
        raise ForbiddenError(message, your_role=ctx.signer.role, field_role=field.owner_signer_role)


class SpotSubmissionService:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        supabase: Optional[SupabaseClient] = None,
        resolver: Optional[StorageResolver] = None,
        audit: Optional[AuditLog] = None,
        locks: Optional[DocumentLockRegistry] = None,
    ):
        self.settings = settings or get_settings()
        self.supabase = supabase or get_supabase_client()
        self.resolver = resolver or get_storage_resolver()
        self.audit = audit or get_audit_log()
        self.locks = locks or get_document_locks()

    def _internal(self, ctx: SigningContext) -> ObjectStorageBackend:
        return self.resolver.internal_backend(ctx.document.storage_bucket)

    async def _lookup_field(self, ctx: SigningContext, spot_key: str) -> CatalogField:
        catalog = await load_catalog(ctx.document, self.supabase)
        field = catalog.get(spot_key)
        if field is None:
            raise ValidationException("Invalid spotKey", details={"spotKey": spot_key})
        return field

    async def view(self, ctx: SigningContext) -> DocumentMetadataResponse:
        """Everything the signing UI needs to render the document for this signer."""
        document = ctx.document
        catalog = await load_catalog(document, self.supabase)
        assets = await self.supabase.get_signature_assets(document.id)
        values = await self.supabase.get_text_field_values(document.id)
        internal = self._internal(ctx)

        done = completion.completed_spot_keys(assets, values)
        text_values = {v.spot_key: v.value for v in values}
        text_values.update({k: v for k, v in catalog.creator_values().items() if k not in text_values})

        if ctx.signer is not None:
            uploaded = [a.spot_key for a in assets if a.signer_role == ctx.signer.role]
            uploaded += [v.spot_key for v in values if v.signer_role == ctx.signer.role]
        else:
            uploaded = [a.spot_key for a in assets] + [v.spot_key for v in values]

        ttl = self.settings.gcs_signed_url_expiration_minutes * 60
        signature_images: Dict[str, str] = {}
        for asset in assets:
            try:
                signature_images[asset.spot_key] = await internal.get_signed_url(asset.image_key, ttl)
            except StorageError as e:
                logger.warning(f"No signed URL for signature {asset.spot_key} of {document.id}: {e}")

        unsigned_pdf_url = None
        if document.unsigned_pdf_key:
            try:
                unsigned_pdf_url = await internal.get_signed_url(document.unsigned_pdf_key, ttl)
            except StorageError as e:
                logger.warning(f"No signed URL for unsigned PDF of {document.id}: {e}")

        signers = await self.supabase.get_signers(document.id) if ctx.signer is not None else []

        await self.audit.append(document.id, AuditEventType.DOCUMENT_VIEWED, ctx.request_meta, {
            "signerEmail": ctx.signer_email,
            "signerRole": ctx.signer_role,
        })

        return DocumentMetadataResponse(
            id=document.id,
            title=document.title,
            status=document.status,
            is_one_off=document.is_one_off,
            unsigned_pdf_url=unsigned_pdf_url,
            fields=[
                f.to_view(is_completed=f.spot_key in done, value=text_values.get(f.spot_key))
                for f in catalog.rendering_fields()
            ],
            required_spot_keys=catalog.required_spot_keys(ctx.signer_role),
            uploaded_spots=uploaded,
            signature_images=signature_images,
            text_values=text_values,
            signer_id=ctx.signer.id if ctx.signer else None,
            current_signer=self._signer_view(ctx.signer) if ctx.signer else None,
            signers=[self._signer_view(s) for s in signers],
        )

    @staticmethod
    def _signer_view(signer: Signer) -> SignerView:
        return SignerView(
            id=signer.id,
            name=signer.name,
            email=signer.email,
            role=signer.role,
            status=signer.status,
            order_index=signer.order_index,
        )

    async def upload_signature(self, ctx: SigningContext, spot_key: str, image: bytes) -> SpotSubmitResponse:
        """
        Raises:
            ConflictError: document completed or spot already signed
            ValidationException: unknown spot, non-signature spot or bad image
            ForbiddenError: spot belongs to another signer
            UpstreamError: image could not be stored
        """
        document = ctx.document
        async with self.locks.hold(document.id):
            document = await self.supabase.get_document(document.id) or document
            completion.ensure_not_completed(document)
            field = await self._lookup_field(ctx, spot_key)
            if not field.is_image:
                raise ValidationException("This spot is not a signature field", details={"spotKey": spot_key})
            ensure_field_owner(ctx, field, "This signature spot is not assigned to you")

            existing = await self.supabase.get_signature_assets(document.id)
            if any(a.spot_key == spot_key for a in existing):
                raise ConflictError("Signature already uploaded for this spot")

            try:
                png = prepare_signature_image(image)
            except InvalidImageError as e:
                raise ValidationException(str(e))

            image_key = signature_image_key(document.id, spot_key)
            try:
                await self._internal(ctx).upload(png, image_key, "image/png")
            except StorageError as e:
                logger.error(f"Failed to store signature {spot_key} of {document.id}: {e}")
                raise UpstreamError("Failed to store signature image", service="storage")

            try:
                await self.supabase.create_signature_asset(SignatureAsset(
                    document_id=document.id,
                    spot_key=spot_key,
                    image_key=image_key,
                    signer_role=ctx.signer_role,
                    signer_email=ctx.signer.email if ctx.signer else None,
                ))
            except DuplicateRecordError:
                raise ConflictError("Signature already uploaded for this spot")

        await self.audit.append(document.id, AuditEventType.SIGNATURE_UPLOADED, ctx.request_meta, {
            "spotKey": spot_key,
            "signerEmail": ctx.signer.email if ctx.signer else None,
            "signerRole": ctx.signer_role,
        })
        logger.info(f"Signature uploaded: {spot_key} for document {document.id}")
        return SpotSubmitResponse(spot_key=spot_key)

    async def submit_text_field(self, ctx: SigningContext, spot_key: str, value: str) -> SpotSubmitResponse:
        """
        Raises:
            ConflictError: document completed or value already submitted
            ValidationException: unknown spot, non-text spot or owner-filled field
            ForbiddenError: field belongs to another signer
        """
        document = ctx.document
        async with self.locks.hold(document.id):
            document = await self.supabase.get_document(document.id) or document
            completion.ensure_not_completed(document)

            field = await self._lookup_field(ctx, spot_key)
            if field.field_type not in TEXT_FIELD_TYPES:
                raise ValidationException("This spot is not a text field", details={"spotKey": spot_key})
            if field.creator_fills:
                raise ValidationException("This field is filled by the document owner")
            ensure_field_owner(ctx, field, "This field is not assigned to you")

            if field.field_type == FieldType.CHECKBOX:
                value = "true" if is_checked(value) else "false"

            existing = await self.supabase.get_text_field_values(document.id)
            if any(v.spot_key == spot_key for v in existing):
                raise ConflictError("Value already submitted for this field")

            try:
                await self.supabase.create_text_field_value(TextFieldValue(
                    document_id=document.id,
                    spot_key=spot_key,
                    value=value,
                    field_type=field.field_type,
                    signer_role=ctx.signer_role,
                    signer_email=ctx.signer.email if ctx.signer else None,
                ))
            except DuplicateRecordError:
                raise ConflictError("Value already submitted for this field")

        await self.audit.append(document.id, AuditEventType.TEXT_FIELD_SUBMITTED, ctx.request_meta, {
            "spotKey": spot_key,
            "fieldType": field.field_type.value,
            "signerEmail": ctx.signer.email if ctx.signer else None,
            "signerRole": ctx.signer_role,
        })
        logger.info(f"Text field submitted: {spot_key} for document {document.id}")
        return SpotSubmitResponse(spot_key=spot_key)


# Singleton instance
_submission_service: Optional[SpotSubmissionService] = None


def get_submission_service() -> SpotSubmissionService:
    """Get the spot submission service singleton."""
    global _submission_service
    if _submission_service is None:
        _submission_service = SpotSubmissionService()
    return _submission_service
