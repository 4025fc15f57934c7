"""
Pytest configuration and fixtures.
"""
import base64
import io
import os
import sys
from datetime import timedelta
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import fitz
import pytest
from PIL import Image

# Add app to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.config import Settings, get_settings
from app.models import (
    AccessToken,
    AuditEvent,
    Document,
    DocumentStatus,
    SignatureAsset,
    Signer,
    SignerStatus,
    StorageProvider,
    TextFieldValue,
    UserAccount,
)
from app.services.audit import AuditLog
from app.storage.base import ObjectStorageBackend, StorageError, StorageObjectNotFound
from app.storage.resolver import PreferredBackend
from app.supabase_client import DuplicateRecordError
from app.utils.datetime_utils import utc_now
from app.utils.locks import DocumentLockRegistry

TEST_ENV = {
    "SIGNING_TOKEN_SALT": "test-salt",
    "GCS_BUCKET": "test-bucket",
    "ENVIRONMENT": "test",
    "SESSION_SECRET": "test-session-secret",
}


@pytest.fixture(autouse=True)
def _test_environment(monkeypatch):
    """Fresh settings from a known environment for every test."""
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings():
    return Settings(**{
        "SUPABASE_URL": "https://test.supabase.co",
        "ADMIN_API_SECRET": "test-admin-secret",
        "GCS_BUCKET": "test-bucket",
        "GCS_BUCKET_US": "test-bucket-us",
        "SESSION_SECRET": "test-session-secret",
        "WEBHOOK_SECRET": "test-webhook-secret",
        "RESEND_API_KEY": "test-resend-key",
        "SIGN_APP_URL": "https://sign.example.com",
        "SIGNING_TOKEN_SALT": "test-salt",
        "ENVIRONMENT": "test",
    })


@pytest.fixture
def sample_png_bytes():
    """Small RGBA signature-like image."""
    img = Image.new("RGBA", (120, 40), (255, 255, 255, 0))
    for x in range(10, 110):
        img.putpixel((x, 20), (0, 0, 0, 255))
    out = io.BytesIO()
    img.save(out, format="PNG")
    return out.getvalue()


@pytest.fixture
def sample_png_base64(sample_png_bytes):
    return base64.b64encode(sample_png_bytes).decode()


@pytest.fixture
def sample_pdf_bytes():
    """Two-page US Letter PDF."""
    doc = fitz.open()
    for number in (1, 2):
        page = doc.new_page(width=612, height=792)
        page.insert_text((72, 72), f"Agreement page {number}", fontsize=14)
    data = doc.tobytes()
    doc.close()
    return data


class InMemorySupabase:
    """Repository double with the SupabaseClient surface used by the engine."""

    def __init__(self):
        self.documents: Dict[str, Document] = {}
        self.signers: Dict[str, Signer] = {}
        self.assets: List[SignatureAsset] = []
        self.values: List[TextFieldValue] = []
        self.audit_events: List[AuditEvent] = []
        self.access_tokens: Dict[str, AccessToken] = {}
        self.users: Dict[str, UserAccount] = {}
        self.signature_spots: Dict[str, List[Dict[str, Any]]] = {}
        self.template_fields: Dict[str, List[Dict[str, Any]]] = {}
        self.s3_credentials: List[Dict[str, Any]] = []
        self.storage_credentials: List[Dict[str, Any]] = []
        self.oauth_updates: List[Dict[str, Any]] = []
        self._clock = utc_now()

    def _tick(self):
        self._clock += timedelta(seconds=1)
        return self._clock

    # Seeding helpers
    def add_document(self, document: Document) -> Document:
        self.documents[document.id] = document
        return document

    def add_signer(self, signer: Signer) -> Signer:
        self.signers[signer.id] = signer
        return signer

    # Documents
    async def get_document(self, document_id: str) -> Optional[Document]:
        doc = self.documents.get(document_id)
        return doc.model_copy(deep=True) if doc else None

    async def set_document_status(self, document_id: str, status: DocumentStatus) -> bool:
        doc = self.documents.get(document_id)
        if doc is None or doc.is_completed:
            return False
        self.documents[document_id] = doc.model_copy(update={"status": status})
        return True

    async def mark_document_completed(self, document_id: str, signed_pdf_key: str, signed_pdf_sha256: str) -> bool:
        doc = self.documents.get(document_id)
        if doc is None or doc.is_completed:
            return False
        self.documents[document_id] = doc.model_copy(update={
            "status": DocumentStatus.COMPLETED,
            "signed_pdf_key": signed_pdf_key,
            "signed_pdf_sha256": signed_pdf_sha256,
        })
        return True

    async def set_document_archived(self, document_id: str, archived_at) -> bool:
        doc = self.documents.get(document_id)
        if doc is None or doc.is_completed:
            return False
        self.documents[document_id] = doc.model_copy(update={"archived_at": archived_at})
        return True

    # Signers
    async def get_signers(self, document_id: str) -> List[Signer]:
        signers = [s for s in self.signers.values() if s.document_id == document_id]
        return sorted((s.model_copy() for s in signers), key=lambda s: s.order_index)

    async def get_signer(self, signer_id: str) -> Optional[Signer]:
        signer = self.signers.get(signer_id)
        return signer.model_copy() if signer else None

    async def create_signer(self, signer: Signer) -> Signer:
        self.signers[signer.id] = signer
        return signer

    async def mark_signer_completed(self, signer_id: str) -> bool:
        signer = self.signers.get(signer_id)
        if signer is None or signer.status != SignerStatus.PENDING:
            return False
        self.signers[signer_id] = signer.model_copy(update={
            "status": SignerStatus.COMPLETED,
            "signed_at": utc_now(),
        })
        return True

    # Field sources
    async def get_signature_spots(self, template_id: str) -> List[Dict[str, Any]]:
        return list(self.signature_spots.get(template_id, []))

    async def get_template_fields(self, template_id: str) -> List[Dict[str, Any]]:
        return list(self.template_fields.get(template_id, []))

    # Collected inputs
    async def get_signature_assets(self, document_id: str) -> List[SignatureAsset]:
        return [a for a in self.assets if a.document_id == document_id]

    async def create_signature_asset(self, asset: SignatureAsset) -> SignatureAsset:
        if any(a.document_id == asset.document_id and a.spot_key == asset.spot_key for a in self.assets):
            raise DuplicateRecordError("signature_assets", asset.spot_key)
        stored = asset.model_copy(update={"created_at": asset.created_at or self._tick()})
        self.assets.append(stored)
        return stored

    async def get_text_field_values(self, document_id: str) -> List[TextFieldValue]:
        return [v for v in self.values if v.document_id == document_id]

    async def create_text_field_value(self, value: TextFieldValue) -> TextFieldValue:
        if any(v.document_id == value.document_id and v.spot_key == value.spot_key for v in self.values):
            raise DuplicateRecordError("text_field_values", value.spot_key)
        stored = value.model_copy(update={"created_at": value.created_at or self._tick()})
        self.values.append(stored)
        return stored

    # Audit
    async def insert_audit_event(self, event: AuditEvent) -> AuditEvent:
        stored = event.model_copy(update={"created_at": event.created_at or self._tick()})
        self.audit_events.append(stored)
        return stored

    async def list_audit_events(self, document_id: str) -> List[AuditEvent]:
        return [e for e in self.audit_events if e.document_id == document_id]

    def events_of(self, document_id: str) -> List[str]:
        return [e.event for e in self.audit_events if e.document_id == document_id]

    # Access tokens
    async def get_access_token(self, token_hash: str) -> Optional[AccessToken]:
        return self.access_tokens.get(token_hash)

    async def create_access_token(self, token: AccessToken) -> AccessToken:
        if token.token_hash in self.access_tokens:
            raise DuplicateRecordError("access_tokens", token.token_hash[:8])
        self.access_tokens[token.token_hash] = token
        return token

    # Users and credentials
    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        return self.users.get(user_id)

    async def get_user_s3_credentials(self, user_id: str) -> Optional[Dict[str, Any]]:
        for row in self.s3_credentials:
            if row["user_id"] == user_id and row.get("is_active", True):
                return row
        return None

    async def list_user_s3_credentials(self, user_id: str) -> List[Dict[str, Any]]:
        return [row for row in self.s3_credentials if row["user_id"] == user_id]

    async def get_oauth_credentials(self, user_id: str, provider: str) -> Optional[Dict[str, Any]]:
        for row in self.storage_credentials:
            if row["user_id"] == user_id and row["provider"] == provider and row.get("is_active", True):
                return row
        return None

    async def list_storage_credentials(self, user_id: str) -> List[Dict[str, Any]]:
        return [row for row in self.storage_credentials if row["user_id"] == user_id]

    async def update_oauth_tokens(self, credential_id: str, data: Dict[str, Any]) -> None:
        self.oauth_updates.append({"id": credential_id, **data})


class InMemoryStorage(ObjectStorageBackend):
    """Object store double. Set `fail_uploads` to simulate an outage."""

    name = "memory"

    def __init__(self, name: str = "memory"):
        self.name = name
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}
        self.fail_uploads = False

    async def upload(self, data: bytes, key: str, content_type: str) -> str:
        if self.fail_uploads:
            raise StorageError(f"{self.name} unavailable", backend=self.name, key=key)
        self.objects[key] = data
        self.content_types[key] = content_type
        return key

    async def download(self, key: str) -> bytes:
        if key not in self.objects:
            raise StorageObjectNotFound(f"missing {key}", backend=self.name, key=key)
        return self.objects[key]

    async def get_signed_url(self, key: str, ttl_seconds: Optional[int] = None, filename: Optional[str] = None) -> str:
        if key not in self.objects:
            raise StorageObjectNotFound(f"missing {key}", backend=self.name, key=key)
        return f"https://storage.test/{self.name}/{key}?ttl={ttl_seconds}"

    async def exists(self, key: str) -> bool:
        return key in self.objects


@pytest.fixture
def fake_supabase():
    return InMemorySupabase()


@pytest.fixture
def internal_storage():
    return InMemoryStorage("fairsign")


@pytest.fixture
def external_storage():
    """Stand-in for an owner's own storage backend."""
    return InMemoryStorage("external")


@pytest.fixture
def mock_resolver(internal_storage):
    """Resolver whose internal and preferred backend are the in-memory store."""
    resolver = MagicMock()
    resolver.internal_backend.return_value = internal_storage
    resolver.resolve_preferred = AsyncMock(
        return_value=PreferredBackend(internal_storage, StorageProvider.FAIRSIGN)
    )
    return resolver


@pytest.fixture
def audit_log(fake_supabase):
    return AuditLog(fake_supabase)


@pytest.fixture
def locks():
    return DocumentLockRegistry()


@pytest.fixture
def mock_webhooks():
    dispatcher = MagicMock()
    dispatcher.compat_mode = False
    dispatcher.send_completed = AsyncMock(return_value=None)
    dispatcher.send_signer_completed = AsyncMock(return_value=None)
    return dispatcher


@pytest.fixture
def mock_email():
    service = MagicMock()
    sent = MagicMock(success=True, error=None)
    service.send_signing_request = AsyncMock(return_value=sent)
    service.send_completion = AsyncMock(return_value=sent)
    service.send_owner_completion = AsyncMock(return_value=sent)
    return service


def one_off_fields(roles=(None,)) -> List[Dict[str, Any]]:
    """One signature and one text field per role, top-left coordinates on page 1."""
    fields = []
    for index, role in enumerate(roles):
        suffix = role or "main"
        fields.append({
            "id": f"sig_{suffix}",
            "fieldType": "signature",
            "signerId": role,
            "page": 1,
            "x": 72,
            "y": 500 + index * 120,
            "width": 180,
            "height": 50,
        })
        fields.append({
            "id": f"name_{suffix}",
            "fieldType": "text",
            "signerId": role,
            "page": 1,
            "x": 300,
            "y": 500 + index * 120,
            "width": 200,
            "height": 24,
        })
    return fields


@pytest.fixture
def one_off_document(fake_supabase, internal_storage, sample_pdf_bytes):
    """Single-signer one-off document with its unsigned PDF in storage."""
    internal_storage.objects["documents/doc-1/unsigned.pdf"] = sample_pdf_bytes
    return fake_supabase.add_document(Document(
        id="doc-1",
        user_id="owner-1",
        status=DocumentStatus.SENT,
        unsigned_pdf_key="documents/doc-1/unsigned.pdf",
        data_json={
            "title": "Lease Agreement",
            "oneOffDocument": True,
            "tenantEmail": "tenant@example.com",
            "tenantName": "Tina Tenant",
            "fields": one_off_fields(),
        },
    ))


@pytest.fixture
def multi_signer_document(fake_supabase, internal_storage, sample_pdf_bytes):
    """One-off document with two ordered signers, "tenant" then "landlord"."""
    internal_storage.objects["documents/doc-2/unsigned.pdf"] = sample_pdf_bytes
    document = fake_supabase.add_document(Document(
        id="doc-2",
        user_id="owner-1",
        status=DocumentStatus.SENT,
        unsigned_pdf_key="documents/doc-2/unsigned.pdf",
        callback_url="https://hooks.example.com/fairsign",
        data_json={
            "title": "Two Party Contract",
            "oneOffDocument": True,
            "ownerEmail": "owner@example.com",
            "fields": one_off_fields(("tenant", "landlord")),
        },
    ))
    fake_supabase.add_signer(Signer(
        id="signer-tenant",
        document_id=document.id,
        email="tenant@example.com",
        name="Tina Tenant",
        role="tenant",
        token="tenant-token",
        order_index=0,
    ))
    fake_supabase.add_signer(Signer(
        id="signer-landlord",
        document_id=document.id,
        email="landlord@example.com",
        name="Larry Landlord",
        role="landlord",
        token="landlord-token",
        order_index=1,
    ))
    return document


@pytest.fixture
def fill_fields(fake_supabase, internal_storage, sample_png_bytes):
    """Submit the signature and name field of one role directly in the repository."""

    async def fill(document: Document, role: Optional[str] = None) -> None:
        suffix = role or "main"
        image_key = f"documents/{document.id}/signatures/sig_{suffix}.png"
        internal_storage.objects[image_key] = sample_png_bytes
        await fake_supabase.create_signature_asset(SignatureAsset(
            document_id=document.id,
            spot_key=f"sig_{suffix}",
            image_key=image_key,
            signer_role=role,
        ))
        await fake_supabase.create_text_field_value(TextFieldValue(
            document_id=document.id,
            spot_key=f"name_{suffix}",
            value=f"Name of {suffix}",
            signer_role=role,
        ))

    return fill


@pytest.fixture
def finalization_pipeline(settings, fake_supabase, mock_resolver, audit_log, mock_webhooks, mock_email):
    from app.pdf import AuditTrailGenerator, PDFStamper
    from app.services.finalization import FinalizationPipeline

    return FinalizationPipeline(
        settings=settings,
        supabase=fake_supabase,
        resolver=mock_resolver,
        audit=audit_log,
        stamper=PDFStamper(),
        trail_generator=AuditTrailGenerator(),
        webhooks=mock_webhooks,
        email=mock_email,
    )


@pytest.fixture
def template_document(fake_supabase, internal_storage, sample_pdf_bytes):
    """Template-based document: a legacy signature spot, a signer text field and an owner-filled field."""
    internal_storage.objects["documents/doc-tpl/unsigned.pdf"] = sample_pdf_bytes
    fake_supabase.signature_spots["tpl-1"] = [
        {"spot_key": "sig", "kind": "signature", "page": 1, "x": 72, "y": 500, "w": 180, "h": 50},
    ]
    fake_supabase.template_fields["tpl-1"] = [
        {"api_tag": "full_name", "field_type": "text", "page": 1,
         "x": 300, "y": 500, "width": 200, "height": 24},
        {"api_tag": "rent", "field_type": "text", "creator_fills": True, "page": 1,
         "x": 300, "y": 600, "width": 200, "height": 24},
    ]
    return fake_supabase.add_document(Document(
        id="doc-tpl",
        user_id="owner-1",
        template_id="tpl-1",
        status=DocumentStatus.SENT,
        unsigned_pdf_key="documents/doc-tpl/unsigned.pdf",
        data_json={
            "title": "Rental Application",
            "tenantEmail": "tenant@example.com",
            "creatorFieldValues": {"rent": "EUR 1200"},
        },
    ))
