"""
Supabase client module for database operations.

All reads and writes go through the admin-proxy Edge Function with the
service secret; signer-facing requests carry no user JWT, access is decided
by the token validator instead of RLS.
"""
import logging
from datetime import datetime
from typing import Optional, List, Dict, Any, Union

import httpx

from app.config import get_settings, Settings
from app.models import (
    AccessToken,
    AuditEvent,
    Document,
    DocumentStatus,
    SignatureAsset,
    Signer,
    SignerStatus,
    TextFieldValue,
    UserAccount,
)
from app.utils.datetime_utils import utc_now, to_iso

logger = logging.getLogger(__name__)

Filters = Dict[str, Any]


class DuplicateRecordError(Exception):
    """Insert rejected by a unique constraint."""

    def __init__(self, table_name: str, detail: str = ""):
        self.table_name = table_name
        self.detail = detail
        super().__init__(f"Duplicate record in {table_name}: {detail}")


def _build_query(filters: Filters, order: Optional[str] = None) -> str:
    """
    Build a PostgREST query string.

    Plain values become `eq` filters, `(op, value)` tuples use the given
    operator, e.g. {"status": ("neq", "completed")}.
    """
    query_parts = []
    for k, v in filters.items():
        if isinstance(v, tuple) and len(v) == 2:
            op, val = v
            query_parts.append(f"{k}={op}.{val}")
        elif isinstance(v, bool):
            query_parts.append(f"{k}=eq.{str(v).lower()}")
        else:
            query_parts.append(f"{k}=eq.{v}")
    if order:
        query_parts.append(f"order={order}")
    return "&".join(query_parts)


def _unwrap_rows(result: Any) -> List[Dict[str, Any]]:
    """
    Normalize the admin-proxy response formats:
    plain array, {"data": [...]} wrapper or a single object.
    """
    if isinstance(result, list):
        return result
    if isinstance(result, dict) and "data" in result:
        data = result["data"]
        if isinstance(data, list):
            return data
        return [data] if data else []
    if isinstance(result, dict) and result:
        return [result]
    return []


def _is_unique_violation(response: httpx.Response) -> bool:
    if response.status_code == 409:
        return True
    try:
        body = response.json()
    except ValueError:
        return False
    return isinstance(body, dict) and body.get("code") == "23505"


class SupabaseClient:
    """Supabase persistence adapter over the admin-proxy Edge Function."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self._http_client = http_client or httpx.AsyncClient(
            base_url=self.settings.supabase_url,
            timeout=httpx.Timeout(15.0, connect=5.0),
        )

    @property
    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Prefer": "return=representation",
            "X-Admin-Secret": self.settings.admin_api_secret,
        }
        if self.settings.supabase_service_key:
            headers["apikey"] = self.settings.supabase_service_key
            headers["Authorization"] = f"Bearer {self.settings.supabase_service_key}"
        return headers

    async def close(self) -> None:
        await self._http_client.aclose()

    async def admin_insert(self, table_name: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert a row via admin-proxy Edge Function (bypasses RLS).

        Raises:
            DuplicateRecordError: a unique constraint rejected the row
        """
        url = f"/functions/v1/admin-proxy/{table_name}"

        logger.info(f"admin_insert: POST {url}")
        response = await self._http_client.post(url, headers=self._headers, json=data)
        logger.info(f"admin_insert: response status={response.status_code}")

        if response.status_code >= 400 and _is_unique_violation(response):
            logger.warning(f"admin_insert: unique violation on {table_name}")
            raise DuplicateRecordError(table_name, response.text)

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError:
            logger.error(f"admin_insert FAILED for {table_name}: body='{response.text}'")
            raise

        rows = _unwrap_rows(response.json())
        return rows[0] if rows else {}

    async def admin_update(
        self,
        table_name: str,
        record_id: str,
        data: Dict[str, Any],
        conditions: Optional[Filters] = None,
    ) -> List[Dict[str, Any]]:
        """
        Update one row via admin-proxy Edge Function (bypasses RLS).

        `conditions` are extra PostgREST filters; when they do not match the
        update touches nothing and an empty list is returned.
        """
        url = f"/functions/v1/admin-proxy/{table_name}/{record_id}"
        if conditions:
            url = f"{url}?{_build_query(conditions)}"

        logger.info(f"admin_update: PATCH {table_name}/{record_id[:8]}...")
        response = await self._http_client.patch(url, headers=self._headers, json=data)
        logger.info(f"admin_update: response status={response.status_code}")
        if response.status_code >= 400:
            logger.error(
                f"admin_update: FAILED for {table_name}/{record_id[:8]}..., body='{response.text}'"
            )
        response.raise_for_status()
        if not response.content:
            return []
        return _unwrap_rows(response.json())

    async def admin_select(
        self,
        table_name: str,
        filters: Filters,
        single: bool = False,
        order: Optional[str] = None,
    ) -> Union[Optional[Dict[str, Any]], List[Dict[str, Any]]]:
        """
        Select rows via admin-proxy Edge Function (bypasses RLS).
        """
        url = f"/functions/v1/admin-proxy/{table_name}?{_build_query(filters, order)}"

        logger.debug(f"admin_select: GET {url}")
        response = await self._http_client.get(url, headers=self._headers)

        if response.status_code != 200:
            logger.warning(
                f"admin_select: status={response.status_code} table={table_name} body='{response.text}'"
            )
        response.raise_for_status()

        rows = _unwrap_rows(response.json())
        if single:
            return rows[0] if rows else None
        return rows

    # Document operations
    async def get_document(self, document_id: str) -> Optional[Document]:
        data = await self.admin_select("documents", {"id": document_id}, single=True)
        return Document(**data) if data else None

    async def set_document_status(self, document_id: str, status: DocumentStatus) -> bool:
        """Move a document between non-terminal states. Never touches a completed document."""
        rows = await self.admin_update(
            "documents",
            document_id,
            {"status": status.value},
            conditions={"status": ("neq", DocumentStatus.COMPLETED.value)},
        )
        return bool(rows)

    async def mark_document_completed(
        self,
        document_id: str,
        signed_pdf_key: str,
        signed_pdf_sha256: str,
    ) -> bool:
        """
        Commit the final state of a document.

        Conditional on the document not being completed yet, so a concurrent
        finalization in another process cannot overwrite the first result.

        Returns:
            True if this call performed the transition
        """
        rows = await self.admin_update(
            "documents",
            document_id,
            {
                "status": DocumentStatus.COMPLETED.value,
                "signed_pdf_key": signed_pdf_key,
                "signed_pdf_sha256": signed_pdf_sha256,
            },
            conditions={"status": ("neq", DocumentStatus.COMPLETED.value)},
        )
        return bool(rows)

    async def set_document_archived(self, document_id: str, archived_at: Optional[datetime]) -> bool:
        rows = await self.admin_update(
            "documents",
            document_id,
            {"archived_at": to_iso(archived_at)},
            conditions={"status": ("neq", DocumentStatus.COMPLETED.value)},
        )
        return bool(rows)

    # Signer operations
    async def get_signers(self, document_id: str) -> List[Signer]:
        rows = await self.admin_select(
            "document_signers",
            {"document_id": document_id},
            order="order_index.asc",
        )
        return [Signer(**row) for row in rows]

    async def get_signer(self, signer_id: str) -> Optional[Signer]:
        data = await self.admin_select("document_signers", {"id": signer_id}, single=True)
        return Signer(**data) if data else None

    async def create_signer(self, signer: Signer) -> Signer:
        data = signer.model_dump(mode="json", exclude_none=True)
        row = await self.admin_insert("document_signers", data)
        return Signer(**(row or data))

    async def mark_signer_completed(self, signer_id: str) -> bool:
        """Flip a pending signer to completed. False if it was already completed."""
        rows = await self.admin_update(
            "document_signers",
            signer_id,
            {"status": SignerStatus.COMPLETED.value, "signed_at": utc_now().isoformat()},
            conditions={"status": SignerStatus.PENDING.value},
        )
        return bool(rows)

    # Field sources (template documents)
    async def get_signature_spots(self, template_id: str) -> List[Dict[str, Any]]:
        return await self.admin_select("signature_spots", {"template_id": template_id})

    async def get_template_fields(self, template_id: str) -> List[Dict[str, Any]]:
        return await self.admin_select("template_fields", {"template_id": template_id})

    # Collected inputs
    async def get_signature_assets(self, document_id: str) -> List[SignatureAsset]:
        rows = await self.admin_select(
            "signature_assets", {"document_id": document_id}, order="created_at.asc"
        )
        return [SignatureAsset(**row) for row in rows]

    async def create_signature_asset(self, asset: SignatureAsset) -> SignatureAsset:
        """Raises DuplicateRecordError if the spot already has an image."""
        data = asset.model_dump(mode="json", exclude_none=True)
        data.setdefault("created_at", utc_now().isoformat())
        row = await self.admin_insert("signature_assets", data)
        return SignatureAsset(**(row or data))

    async def get_text_field_values(self, document_id: str) -> List[TextFieldValue]:
        rows = await self.admin_select(
            "text_field_values", {"document_id": document_id}, order="created_at.asc"
        )
        return [TextFieldValue(**row) for row in rows]

    async def create_text_field_value(self, value: TextFieldValue) -> TextFieldValue:
        """Raises DuplicateRecordError if the spot already has a value."""
        data = value.model_dump(mode="json", exclude_none=True)
        data.setdefault("created_at", utc_now().isoformat())
        row = await self.admin_insert("text_field_values", data)
        return TextFieldValue(**(row or data))

    # Audit trail
    async def insert_audit_event(self, event: AuditEvent) -> AuditEvent:
        data = event.model_dump(mode="json", exclude_none=True)
        data.setdefault("created_at", utc_now().isoformat())
        row = await self.admin_insert("audit_events", data)
        return AuditEvent(**(row or data))

    async def list_audit_events(self, document_id: str) -> List[AuditEvent]:
        rows = await self.admin_select(
            "audit_events", {"document_id": document_id}, order="created_at.asc"
        )
        return [AuditEvent(**row) for row in rows]

    # Access tokens
    async def get_access_token(self, token_hash: str) -> Optional[AccessToken]:
        data = await self.admin_select("access_tokens", {"token_hash": token_hash}, single=True)
        return AccessToken(**data) if data else None

    async def create_access_token(self, token: AccessToken) -> AccessToken:
        """Raises DuplicateRecordError if the hash is already registered."""
        data = token.model_dump(mode="json")
        data["created_at"] = utc_now().isoformat()
        row = await self.admin_insert("access_tokens", data)
        return AccessToken(**(row or data))

    # Users and storage credentials
    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        data = await self.admin_select("users", {"id": user_id}, single=True)
        return UserAccount(**data) if data else None

    async def get_user_s3_credentials(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self.admin_select(
            "user_s3_credentials",
            {"user_id": user_id, "is_active": True},
            single=True,
        )

    async def list_user_s3_credentials(self, user_id: str) -> List[Dict[str, Any]]:
        return await self.admin_select("user_s3_credentials", {"user_id": user_id})

    async def get_oauth_credentials(self, user_id: str, provider: str) -> Optional[Dict[str, Any]]:
        return await self.admin_select(
            "storage_credentials",
            {"user_id": user_id, "provider": provider, "is_active": True},
            single=True,
        )

    async def list_storage_credentials(self, user_id: str) -> List[Dict[str, Any]]:
        return await self.admin_select("storage_credentials", {"user_id": user_id})

    async def update_oauth_tokens(self, credential_id: str, data: Dict[str, Any]) -> None:
        data = dict(data)
        data["updated_at"] = utc_now().isoformat()
        await self.admin_update("storage_credentials", credential_id, data)


# Singleton instance
_supabase_client: Optional[SupabaseClient] = None


def get_supabase_client() -> SupabaseClient:
    """Get the Supabase client singleton."""
    global _supabase_client
    if _supabase_client is None:
        _supabase_client = SupabaseClient()
    return _supabase_client
