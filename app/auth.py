"""
Authentication for signer-facing and owner-facing endpoints.

Signers authenticate with an opaque access token in the query string. Every
token, whichever scheme it was minted under, is registered once in the
access_tokens table (hash + scheme_version) and resolved from there.
A document whose links were sent before the table existed is backfilled the
first time one of its tokens misses, so old links keep working without an
explicit migration.
Owners come in through the product's Edge Functions with the admin secret.
"""
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

import httpx
from fastapi import Depends, Query, Request

from app.config import get_settings, Settings
from app.exceptions import AppException, UnauthorizedError
from app.models import AccessToken, Document, Signer, SignerStatus, TokenScheme
from app.supabase_client import DuplicateRecordError, SupabaseClient, get_supabase_client
from app.utils.datetime_utils import is_past
from app.utils.logging import fingerprint, set_context
from app.utils.security import generate_access_token, hash_access_token

logger = logging.getLogger(__name__)


@dataclass
class SigningContext:
    """Resolved (document, signer) pair for a signer request."""
    document: Document
    signer: Optional[Signer]
    scheme: TokenScheme
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def signer_role(self) -> Optional[str]:
        return self.signer.role if self.signer else None

    @property
    def signer_email(self) -> Optional[str]:
        if self.signer:
            return self.signer.email
        return self.document.data_json.get("tenantEmail")

    @property
    def request_meta(self) -> Dict[str, Optional[str]]:
        return {"ip": self.ip_address, "user_agent": self.user_agent}


class TokenValidator:
    """
    Resolves access tokens to (document, signer).

    Reads only access_tokens. On a miss the document's legacy tokens are
    registered once per process and the lookup is repeated.
    """

    def __init__(self, supabase: Optional[SupabaseClient] = None):
        self._supabase = supabase
        self._backfilled: Set[str] = set()

    @property
    def supabase(self) -> SupabaseClient:
        if self._supabase is None:
            self._supabase = get_supabase_client()
        return self._supabase

    async def resolve(self, document_id: str, token: Optional[str]) -> Tuple[Document, Optional[Signer], TokenScheme]:
        """
        Raises:
            UnauthorizedError: missing token, unknown document, no match,
                token of another document or expired signer link
        """
        if not token:
            raise UnauthorizedError("Access token required")

        token_fp = fingerprint(token, "tok_")
        set_context(document_id=document_id, token_fp=token_fp)

        token_hash = hash_access_token(token)
        record = await self.supabase.get_access_token(token_hash)
        if record is None and document_id not in self._backfilled:
            record = await self._backfill_and_retry(document_id, token_hash)
        if record is None or record.document_id != document_id:
            logger.warning(f"token_resolve: no match for document {document_id}, {token_fp}")
            raise UnauthorizedError("Invalid access token")

        document = await self.supabase.get_document(document_id)
        if document is None:
            logger.warning(f"token_resolve: document {document_id} does not exist")
            raise UnauthorizedError("Invalid access token")

        if record.scheme_version in (TokenScheme.DOCUMENT, TokenScheme.EMBEDDED):
            logger.info(f"token_resolve: single-signer access via scheme {record.scheme_version.value}")
            return document, None, record.scheme_version

        signer = await self.supabase.get_signer(record.signer_id) if record.signer_id else None
        if signer is None or signer.document_id != document_id:
            logger.warning(f"token_resolve: signer {record.signer_id} missing for {token_fp}")
            raise UnauthorizedError("Invalid access token")

        if is_past(signer.token_expires_at):
            logger.info(f"token_resolve: expired link for signer {signer.id}")
            raise UnauthorizedError("Signing link has expired")

        set_context(signer_id=signer.id)
        return document, signer, record.scheme_version

    async def _backfill_and_retry(self, document_id: str, token_hash: str) -> Optional[AccessToken]:
        document = await self.supabase.get_document(document_id)
        if document is None:
            return None
        try:
            await TokenMigration(self.supabase).migrate_document(document)
        except httpx.HTTPError as e:
            logger.error(f"token_resolve: legacy token backfill failed for document {document_id}: {e}")
            return None
        self._backfilled.add(document_id)
        return await self.supabase.get_access_token(token_hash)


async def issue_access_token(
    supabase: SupabaseClient,
    document_id: str,
    signer_id: Optional[str] = None,
) -> str:
    """
    Mint a new token and register it once in access_tokens.

    Returns:
        The plain token; only its hash is stored
    """
    token, token_hash = generate_access_token()
    scheme = TokenScheme.SIGNER if signer_id else TokenScheme.DOCUMENT
    await supabase.create_access_token(AccessToken(
        token_hash=token_hash,
        document_id=document_id,
        signer_id=signer_id,
        scheme_version=scheme,
    ))
    logger.info(f"Issued {scheme.name.lower()} token {fingerprint(token, 'tok_')} for document {document_id}")
    return token


@dataclass
class MigrationReport:
    document_id: str
    registered: List[TokenScheme] = field(default_factory=list)
    skipped: int = 0
    promoted_signers: int = 0


class TokenMigration:
    """
    Registers tokens issued under the older schemes in access_tokens.

    Schemes are walked in their historical precedence (document token,
    embedded token, signer table, inline signers), so when the same token
    string appears twice the earlier scheme owns it. Inline signers that were
    never promoted to document_signers are promoted here.
    """

    def __init__(self, supabase: Optional[SupabaseClient] = None):
        self._supabase = supabase

    @property
    def supabase(self) -> SupabaseClient:
        if self._supabase is None:
            self._supabase = get_supabase_client()
        return self._supabase

    async def register(
        self,
        document_id: str,
        token: str,
        scheme: TokenScheme,
        signer_id: Optional[str] = None,
    ) -> bool:
        """Write one token row. False if the token was already registered."""
        try:
            await self.supabase.create_access_token(AccessToken(
                token_hash=hash_access_token(token),
                document_id=document_id,
                signer_id=signer_id,
                scheme_version=scheme,
            ))
        except DuplicateRecordError:
            return False
        return True

    async def migrate_document(self, document: Document) -> MigrationReport:
        report = MigrationReport(document_id=document.id)
        signers = await self.supabase.get_signers(document.id)
        by_role = {s.role: s for s in signers}

        candidates: List[Tuple[str, TokenScheme, Optional[str]]] = []
        if document.signing_token:
            candidates.append((document.signing_token, TokenScheme.DOCUMENT, None))

        embedded = document.data_json.get("embeddedToken")
        if embedded:
            candidates.append((str(embedded), TokenScheme.EMBEDDED, None))

        for signer in signers:
            if signer.token:
                candidates.append((signer.token, TokenScheme.SIGNER, signer.id))

        for index, inline in enumerate(document.data_json.get("signers") or []):
            inline_token = inline.get("token")
            role = inline.get("id")
            if not inline_token or not role:
                continue
            signer = by_role.get(role)
            if signer is None:
                signer = await self._promote_inline_signer(document.id, inline, index)
                by_role[role] = signer
                report.promoted_signers += 1
            candidates.append((str(inline_token), TokenScheme.INLINE_SIGNER, signer.id))

        seen = set()
        for token, scheme, signer_id in candidates:
            if token in seen:
                report.skipped += 1
                continue
            seen.add(token)
            if await self.register(document.id, token, scheme, signer_id):
                report.registered.append(scheme)
            else:
                report.skipped += 1

        logger.info(
            f"token_migration: document {document.id} registered={len(report.registered)} "
            f"skipped={report.skipped} promoted={report.promoted_signers}"
        )
        return report

    async def _promote_inline_signer(self, document_id: str, inline: Dict, index: int) -> Signer:
        order_index = inline.get("orderIndex")
        return await self.supabase.create_signer(Signer(
            id=str(uuid.uuid4()),
            document_id=document_id,
            email=inline.get("email"),
            name=inline.get("name"),
            role=inline["id"],
            token=inline.get("token"),
            status=SignerStatus.PENDING,
            order_index=order_index if isinstance(order_index, int) else index,
        ))


# Singleton instance
_token_validator: Optional[TokenValidator] = None


def get_token_validator() -> TokenValidator:
    """Get the token validator singleton."""
    global _token_validator
    if _token_validator is None:
        _token_validator = TokenValidator()
    return _token_validator


def get_client_ip(request: Request) -> str:
    """
    Extract client IP address, handling proxies and Cloud Run.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    if request.client:
        return request.client.host

    return "unknown"


async def get_signing_context(
    document_id: str,
    request: Request,
    token: Optional[str] = Query(None, description="Signer access token"),
    validator: TokenValidator = Depends(get_token_validator),
) -> SigningContext:
    """FastAPI dependency resolving the access token of a signer request."""
    document, signer, scheme = await validator.resolve(document_id, token)
    return SigningContext(
        document=document,
        signer=signer,
        scheme=scheme,
        ip_address=get_client_ip(request),
        user_agent=(request.headers.get("User-Agent") or "")[:500] or None,
    )


async def verify_admin_secret(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> bool:
    """
    Verify admin API secret from X-Admin-Secret header.
    Used for Edge Function → Cloud Run communication.
    """
    admin_secret = request.headers.get("X-Admin-Secret")

    if not admin_secret:
        raise UnauthorizedError("Admin secret required")

    if not settings.admin_api_secret:
        logger.error("ADMIN_API_SECRET not configured")
        raise UnauthorizedError("Admin authentication not configured")

    # Constant-time comparison to prevent timing attacks
    if not secrets.compare_digest(admin_secret, settings.admin_api_secret):
        raise UnauthorizedError("Invalid admin secret")

    return True


async def get_owner_id(
    request: Request,
    _: bool = Depends(verify_admin_secret),
) -> str:
    """Owner user id forwarded by a trusted Edge Function in X-User-ID."""
    user_id = request.headers.get("X-User-ID")
    if not user_id:
        raise AppException(400, "MISSING_USER_ID", "X-User-ID header is required")
    set_context(user_id=user_id)
    return user_id
