"""
Signer-facing API Router.
Paths: /api/documents/{document_id}, authenticated with ?token=
"""
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse

from app.auth import SigningContext, get_signing_context
from app.config import get_settings, Settings
from app.exceptions import NotFoundError, UpstreamError
from app.models import (
    AuditEventType,
    CompleteRequest,
    CompleteResponse,
    DocumentMetadataResponse,
    ErrorResponse,
    SignatureUploadRequest,
    SpotSubmitResponse,
    TextFieldRequest,
)
from app.services.audit import AuditLog, get_audit_log
from app.services.finalization import signed_pdf_filename
from app.services.orchestrator import SigningOrchestrator, get_orchestrator
from app.services.submissions import SpotSubmissionService, get_submission_service
from app.storage import StorageError, StorageResolver, get_storage_resolver

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/documents",
    tags=["documents"],
    responses={
        401: {"model": ErrorResponse, "description": "Invalid or missing access token"},
    },
)


@router.get(
    "/{document_id}",
    response_model=DocumentMetadataResponse,
    response_model_by_alias=True,
)
async def get_document(
    ctx: SigningContext = Depends(get_signing_context),
    service: SpotSubmissionService = Depends(get_submission_service),
):
    """Document metadata, fields and progress for the signing UI."""
    return await service.view(ctx)


@router.post(
    "/{document_id}/signatures",
    status_code=201,
    response_model=SpotSubmitResponse,
    response_model_by_alias=True,
    responses={
        400: {"model": ErrorResponse, "description": "Unknown spot or invalid image"},
        403: {"model": ErrorResponse, "description": "Spot assigned to another signer"},
        409: {"model": ErrorResponse, "description": "Completed or already signed"},
    },
)
async def upload_signature(
    request: SignatureUploadRequest,
    ctx: SigningContext = Depends(get_signing_context),
    service: SpotSubmissionService = Depends(get_submission_service),
):
    """Store the signature image for one spot."""
    return await service.upload_signature(ctx, request.spot_key, request.image_bytes())


@router.post(
    "/{document_id}/text-field",
    status_code=201,
    response_model=SpotSubmitResponse,
    response_model_by_alias=True,
    responses={
        400: {"model": ErrorResponse, "description": "Unknown or non-text field"},
        403: {"model": ErrorResponse, "description": "Field assigned to another signer"},
        409: {"model": ErrorResponse, "description": "Completed or already submitted"},
    },
)
async def submit_text_field(
    request: TextFieldRequest,
    ctx: SigningContext = Depends(get_signing_context),
    service: SpotSubmissionService = Depends(get_submission_service),
):
    return await service.submit_text_field(ctx, request.spot_key, request.value)


@router.post(
    "/{document_id}/complete",
    response_model=CompleteResponse,
    response_model_by_alias=True,
    responses={
        400: {"model": ErrorResponse, "description": "Consent missing or required fields empty"},
        409: {"model": ErrorResponse, "description": "Already completed or already signed"},
        500: {"model": ErrorResponse, "description": "Finalization failed"},
    },
)
async def complete_document(
    request: CompleteRequest,
    ctx: SigningContext = Depends(get_signing_context),
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
):
    """
    Complete the caller's part of the document.

    The last signer triggers finalization and receives the signed hash;
    earlier signers get status "partial" and the list of pending signers.
    """
    return await orchestrator.complete(ctx.document, ctx.signer, request.consent, ctx.request_meta)


@router.get(
    "/{document_id}/signed.pdf",
    responses={
        307: {"description": "Redirect to a short-lived download URL"},
        404: {"model": ErrorResponse, "description": "Document not completed"},
    },
)
async def download_signed_pdf(
    ctx: SigningContext = Depends(get_signing_context),
    settings: Settings = Depends(get_settings),
    resolver: StorageResolver = Depends(get_storage_resolver),
    audit: AuditLog = Depends(get_audit_log),
):
    document = ctx.document
    if not document.is_completed or not document.signed_pdf_key:
        raise NotFoundError("Signed PDF", document.id)

    backend = resolver.internal_backend(document.storage_bucket)
    try:
        url = await backend.get_signed_url(
            document.signed_pdf_key,
            settings.signed_pdf_url_ttl_seconds,
            filename=signed_pdf_filename(document),
        )
    except StorageError as e:
        logger.error(f"Could not sign download URL for {document.id}: {e}")
        raise UpstreamError("Failed to prepare the download", service="storage")

    await audit.append(document.id, AuditEventType.INTERNAL_DOWNLOAD, ctx.request_meta, {
        "signerEmail": ctx.signer_email,
    })
    return RedirectResponse(url=url, status_code=307)
