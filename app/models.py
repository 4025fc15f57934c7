from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
import base64
import binascii


class BaseRequest(BaseModel):
    """Base class for all request models - ignores extra fields."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class BaseRecord(BaseModel):
    """Base class for database rows - unknown columns are ignored."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# Enums
class DocumentStatus(str, Enum):
    CREATED = "created"
    SENT = "sent"
    PARTIAL = "partial"
    COMPLETED = "completed"


class SignerStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class FieldType(str, Enum):
    SIGNATURE = "signature"
    INITIAL = "initial"
    TEXT = "text"
    DATE = "date"
    CHECKBOX = "checkbox"

    @property
    def is_image(self) -> bool:
        return self in (FieldType.SIGNATURE, FieldType.INITIAL)


class AccountTier(str, Enum):
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"
    ORG = "org"


class StorageProvider(str, Enum):
    FAIRSIGN = "fairsign"
    CUSTOM_S3 = "custom_s3"
    DROPBOX = "dropbox"
    BOX = "box"


class DataRegion(str, Enum):
    EU = "EU"
    US = "US"


class TokenScheme(int, Enum):
    """Where an access token was originally issued."""
    DOCUMENT = 1        # documents.signing_token, single-signer mode
    EMBEDDED = 2        # data_json.embeddedToken
    SIGNER = 3          # document_signers.token
    INLINE_SIGNER = 4   # data_json.signers[].token


class AuditEventType(str, Enum):
    DOCUMENT_CREATED = "document_created"
    DOCUMENT_VIEWED = "document_viewed"
    SIGNATURE_UPLOADED = "signature_uploaded"
    CONSENT_GIVEN = "consent_given"
    COMPLETED = "completed"
    EMAIL_SENT = "email_sent"
    REMINDER_SENT = "reminder_sent"
    COMPLETION_EMAIL_SENT = "completion_email_sent"
    EMBEDDED_LINK_REQUESTED = "embedded_link_requested"
    WEBHOOK_SENT = "webhook_sent"
    INTERNAL_DOWNLOAD = "internal_download"
    SIGNER_ADDED = "signer_added"
    TEXT_FIELD_SUBMITTED = "text_field_submitted"
    SIGNER_COMPLETED = "signer_completed"
    SIGNER_WEBHOOK_SENT = "signer_webhook_sent"
    NEXT_SIGNER_NOTIFIED = "next_signer_notified"
    STORAGE_FALLBACK = "storage_fallback"


# Database records
class Document(BaseRecord):
    id: str
    user_id: Optional[str] = None
    template_id: Optional[str] = None
    status: DocumentStatus = DocumentStatus.CREATED
    data_json: Dict[str, Any] = Field(default_factory=dict)
    callback_url: Optional[str] = None
    signing_token: Optional[str] = None
    unsigned_pdf_key: Optional[str] = None
    signed_pdf_key: Optional[str] = None
    signed_pdf_sha256: Optional[str] = None
    original_hash: Optional[str] = None
    storage_bucket: Optional[str] = None
    storage_region: Optional[str] = None
    archived_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @field_validator("data_json", mode="before")
    @classmethod
    def _none_to_dict(cls, v: Any) -> Dict[str, Any]:
        return v or {}

    @property
    def is_one_off(self) -> bool:
        return bool(self.data_json.get("oneOffDocument")) or not self.template_id

    @property
    def is_completed(self) -> bool:
        return self.status == DocumentStatus.COMPLETED

    @property
    def title(self) -> str:
        return self.data_json.get("title") or "Document"


class Signer(BaseRecord):
    id: str
    document_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    role: str = ""
    token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    status: SignerStatus = SignerStatus.PENDING
    signed_at: Optional[datetime] = None
    order_index: int = 0

    @property
    def is_completed(self) -> bool:
        return self.status == SignerStatus.COMPLETED


class SignatureAsset(BaseRecord):
    document_id: str
    spot_key: str
    image_key: str
    signer_role: Optional[str] = None
    signer_email: Optional[str] = None
    created_at: Optional[datetime] = None


class TextFieldValue(BaseRecord):
    document_id: str
    spot_key: str
    value: str
    field_type: FieldType = FieldType.TEXT
    signer_role: Optional[str] = None
    signer_email: Optional[str] = None
    created_at: Optional[datetime] = None


class AuditEvent(BaseRecord):
    document_id: str
    event: str
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    meta_json: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    @field_validator("meta_json", mode="before")
    @classmethod
    def _none_to_dict(cls, v: Any) -> Dict[str, Any]:
        return v or {}


class AccessToken(BaseRecord):
    token_hash: str
    document_id: str
    signer_id: Optional[str] = None
    scheme_version: TokenScheme


class UserAccount(BaseRecord):
    id: str
    email: Optional[str] = None
    account_type: AccountTier = AccountTier.FREE
    storage_provider: StorageProvider = StorageProvider.FAIRSIGN
    data_region: str = DataRegion.EU.value

    @field_validator("account_type", mode="before")
    @classmethod
    def _unknown_tier_is_free(cls, v: Any) -> Any:
        values = {t.value for t in AccountTier}
        return v if v in values else AccountTier.FREE.value

    @field_validator("storage_provider", mode="before")
    @classmethod
    def _unknown_provider_is_internal(cls, v: Any) -> Any:
        values = {p.value for p in StorageProvider}
        return v if v in values else StorageProvider.FAIRSIGN.value


# Request Models
class SignatureUploadRequest(BaseRequest):
    spot_key: str = Field(..., min_length=1, max_length=200, alias="spotKey")
    image_base64: str = Field(..., min_length=20, alias="imageBase64")

    @field_validator("image_base64")
    @classmethod
    def validate_image(cls, v: str) -> str:
        if v.startswith("data:"):
            _, _, v = v.partition(",")
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Invalid base64 image: {e}")
        return v

    def image_bytes(self) -> bytes:
        return base64.b64decode(self.image_base64)


class TextFieldRequest(BaseRequest):
    spot_key: str = Field(..., min_length=1, max_length=200, alias="spotKey")
    value: str = Field(..., max_length=5000)


class CompleteRequest(BaseRequest):
    consent: bool = False


# Response Models
class FieldView(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    spot_key: str = Field(..., serialization_alias="spotKey")
    field_type: FieldType = Field(..., serialization_alias="fieldType")
    page: int
    x: float
    y: float
    width: float
    height: float
    owner_signer_role: Optional[str] = Field(None, serialization_alias="signerRole")
    required: bool = True
    creator_fills: bool = Field(False, serialization_alias="creatorFills")
    label: Optional[str] = None
    placeholder: Optional[str] = None
    input_mode: Optional[str] = Field(None, serialization_alias="inputMode")
    value: Optional[str] = None
    is_completed: bool = Field(False, serialization_alias="isCompleted")


class SignerView(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    role: str = ""
    status: SignerStatus
    order_index: int = Field(0, serialization_alias="orderIndex")


class DocumentMetadataResponse(BaseModel):
    id: str
    title: str
    status: DocumentStatus
    is_one_off: bool = Field(..., serialization_alias="isOneOff")
    unsigned_pdf_url: Optional[str] = Field(None, serialization_alias="unsignedPdfUrl")
    fields: List[FieldView]
    required_spot_keys: List[str] = Field(..., serialization_alias="requiredSpotKeys")
    uploaded_spots: List[str] = Field(..., serialization_alias="uploadedSpots")
    signature_images: Dict[str, str] = Field(..., serialization_alias="signatureImages")
    text_values: Dict[str, str] = Field(..., serialization_alias="textValues")
    signer_id: Optional[str] = Field(None, serialization_alias="signerId")
    current_signer: Optional[SignerView] = Field(None, serialization_alias="currentSigner")
    signers: List[SignerView] = Field(default_factory=list)


class SpotSubmitResponse(BaseModel):
    success: bool = True
    spot_key: str = Field(..., serialization_alias="spotKey")


class CompleteResponse(BaseModel):
    success: bool = True
    document_id: str
    status: DocumentStatus
    message: Optional[str] = None
    sha256: Optional[str] = None
    pending_signers: Optional[List[Optional[str]]] = Field(None, serialization_alias="pendingSigners")


class AuditEventView(BaseModel):
    event: str
    label: str
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class StorageCredentialView(BaseModel):
    provider: StorageProvider
    label: Optional[str] = None
    endpoint: Optional[str] = None
    bucket: Optional[str] = None
    access_key: Optional[str] = None
    account_email: Optional[str] = None
    is_active: bool = True


# Error Response
class ErrorResponse(BaseModel):
    error: bool = True
    code: str
    message: str
    details: Optional[dict] = None
    request_id: Optional[str] = None
