"""
Owner API Router - called by the product's Edge Functions on behalf of a
logged-in document owner. Authenticated with X-Admin-Secret + X-User-ID.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.auth import TokenMigration, get_owner_id
from app.exceptions import ConflictError, NotFoundError
from app.models import AuditEventView, Document, StorageCredentialView, StorageProvider
from app.services.audit import AuditLog, get_audit_log, to_view
from app.supabase_client import SupabaseClient, get_supabase_client
from app.utils.datetime_utils import utc_now
from app.vault import CredentialVault, VaultError, get_credential_vault, mask_secret

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/owner/v1",
    tags=["owner"],
)


class ArchiveResponse(BaseModel):
    document_id: str
    archived_at: Optional[datetime] = None


class TokenMigrationResponse(BaseModel):
    document_id: str
    registered: List[str]
    skipped: int
    promoted_signers: int


async def get_owned_document(
    document_id: str,
    owner_id: str = Depends(get_owner_id),
    supabase: SupabaseClient = Depends(get_supabase_client),
) -> Document:
    """The document, if it belongs to the calling owner. Anything else is a 404."""
    document = await supabase.get_document(document_id)
    if document is None or document.user_id != owner_id:
        raise NotFoundError("Document", document_id)
    return document


@router.get("/documents/{document_id}/audit", response_model=List[AuditEventView])
async def list_audit_events(
    document: Document = Depends(get_owned_document),
    audit: AuditLog = Depends(get_audit_log),
):
    """Full audit history of a document, oldest first."""
    return [to_view(e) for e in await audit.list(document.id)]


async def _set_archived(supabase: SupabaseClient, document: Document, archived_at: Optional[datetime]) -> ArchiveResponse:
    if document.is_completed:
        raise ConflictError("Completed documents cannot be archived or unarchived")
    if not await supabase.set_document_archived(document.id, archived_at):
        # Completed between the read and the update
        raise ConflictError("Completed documents cannot be archived or unarchived")
    logger.info(f"Document {document.id} {'archived' if archived_at else 'unarchived'}")
    return ArchiveResponse(document_id=document.id, archived_at=archived_at)


@router.post("/documents/{document_id}/archive", response_model=ArchiveResponse)
async def archive_document(
    document: Document = Depends(get_owned_document),
    supabase: SupabaseClient = Depends(get_supabase_client),
):
    return await _set_archived(supabase, document, utc_now())


@router.post("/documents/{document_id}/unarchive", response_model=ArchiveResponse)
async def unarchive_document(
    document: Document = Depends(get_owned_document),
    supabase: SupabaseClient = Depends(get_supabase_client),
):
    return await _set_archived(supabase, document, None)


@router.post("/documents/{document_id}/tokens/migrate", response_model=TokenMigrationResponse)
async def migrate_tokens(
    document: Document = Depends(get_owned_document),
    supabase: SupabaseClient = Depends(get_supabase_client),
):
    """Register the document's older-scheme tokens in access_tokens."""
    report = await TokenMigration(supabase).migrate_document(document)
    return TokenMigrationResponse(
        document_id=report.document_id,
        registered=[scheme.name.lower() for scheme in report.registered],
        skipped=report.skipped,
        promoted_signers=report.promoted_signers,
    )


def _decrypt_for_display(vault: CredentialVault, value: Optional[str], user_id: str) -> Optional[str]:
    try:
        return vault.decrypt_optional(value, user_id)
    except VaultError:
        logger.warning(f"Stored credential of user {user_id} could not be decrypted")
        return None


def s3_credential_view(row: Dict[str, Any], vault: CredentialVault, user_id: str) -> StorageCredentialView:
    access_key = _decrypt_for_display(vault, row.get("access_key_id_encrypted"), user_id)
    return StorageCredentialView(
        provider=StorageProvider.CUSTOM_S3,
        label=row.get("label"),
        endpoint=_decrypt_for_display(vault, row.get("endpoint_encrypted"), user_id),
        bucket=_decrypt_for_display(vault, row.get("bucket_encrypted"), user_id),
        access_key=mask_secret(access_key) if access_key else None,
        is_active=bool(row.get("is_active", True)),
    )


def oauth_credential_view(row: Dict[str, Any]) -> Optional[StorageCredentialView]:
    try:
        provider = StorageProvider(row.get("provider"))
    except ValueError:
        return None
    return StorageCredentialView(
        provider=provider,
        label=row.get("label"),
        account_email=row.get("account_email"),
        is_active=bool(row.get("is_active", True)),
    )


@router.get("/storage/credentials", response_model=List[StorageCredentialView])
async def list_storage_credentials(
    owner_id: str = Depends(get_owner_id),
    supabase: SupabaseClient = Depends(get_supabase_client),
    vault: CredentialVault = Depends(get_credential_vault),
):
    """Connected storage of the owner. Secrets are never returned, keys are masked."""
    views = [s3_credential_view(row, vault, owner_id) for row in await supabase.list_user_s3_credentials(owner_id)]
    for row in await supabase.list_storage_credentials(owner_id):
        view = oauth_credential_view(row)
        if view is not None:
            views.append(view)
    return views
