"""
Configuration module - loads secrets from Google Secret Manager.
Falls back to environment variables for local development.
"""
import json
import os
import logging
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings
from pydantic import Field, model_validator, field_validator
from typing import List, Any

logger = logging.getLogger(__name__)

WEBHOOK_COMPAT_BOLDSIGN = "boldsign"


def get_secret_from_gcp(secret_id: str, project_id: Optional[str] = None) -> Optional[str]:
    """
    Fetch secret from Google Secret Manager.
    Returns None if not available (fallback to env vars).
    """
    try:
        from google.cloud import secretmanager

        client = secretmanager.SecretManagerServiceClient()
        project = project_id or os.environ.get("GCP_PROJECT_ID") or os.environ.get("GOOGLE_CLOUD_PROJECT")

        if not project:
            return None

        name = f"projects/{project}/secrets/{secret_id}/versions/latest"
        response = client.access_secret_version(request={"name": name})
        return response.payload.data.decode("UTF-8")
    except Exception as e:
        logger.debug(f"Could not fetch secret {secret_id} from Secret Manager: {e}")
        return None


class Settings(BaseSettings):
    """Application settings with Secret Manager integration."""

    # GCP
    gcp_project_id: str = Field(default="", alias="GCP_PROJECT_ID")
    use_secret_manager: bool = Field(default=False, alias="USE_SECRET_MANAGER")

    # Supabase (service role through the admin-proxy edge function)
    supabase_url: str = Field(default="", alias="SUPABASE_URL")
    supabase_service_key: str = Field(default="", alias="SUPABASE_SERVICE_KEY")
    admin_api_secret: str = Field(default="", alias="ADMIN_API_SECRET")

    # Internal storage (GCS)
    gcs_bucket: str = Field(default="", alias="GCS_BUCKET")
    gcs_bucket_eu: str = Field(default="", alias="GCS_BUCKET_EU")
    gcs_bucket_us: str = Field(default="", alias="GCS_BUCKET_US")
    gcs_location_eu: str = Field(default="europe-west1", alias="GCS_LOCATION_EU")
    gcs_location_us: str = Field(default="us-east1", alias="GCS_LOCATION_US")
    gcs_signed_url_expiration_minutes: int = Field(default=10, alias="GCS_SIGNED_URL_EXPIRATION_MINUTES")

    # Credential vault
    session_secret: str = Field(default="", alias="SESSION_SECRET")

    # External storage providers
    dropbox_app_key: str = Field(default="", alias="DROPBOX_APP_KEY")
    dropbox_app_secret: str = Field(default="", alias="DROPBOX_APP_SECRET")
    box_client_id: str = Field(default="", alias="BOX_CLIENT_ID")
    box_client_secret: str = Field(default="", alias="BOX_CLIENT_SECRET")

    # Webhooks
    webhook_secret: str = Field(default="", alias="WEBHOOK_SECRET")
    webhook_compat_mode: str = Field(
        default="",
        alias="WEBHOOK_COMPAT_MODE",
        description="Empty for native payloads, 'boldsign' for the compatible payload shape"
    )
    webhook_timeout_seconds: float = Field(default=10.0, alias="WEBHOOK_TIMEOUT_SECONDS")
    signed_pdf_url_ttl_seconds: int = Field(default=24 * 3600, alias="SIGNED_PDF_URL_TTL_SECONDS")

    # Resend (Email)
    resend_api_key: str = Field(default="", alias="RESEND_API_KEY")
    resend_from_email: str = Field(default="FairSign <noreply@fairsign.io>", alias="RESEND_FROM_EMAIL")

    # App
    app_base_url: str = Field(default="http://localhost:8000", alias="APP_BASE_URL")
    sign_app_url: str = Field(default="", alias="SIGN_APP_URL")
    signing_token_salt: str = Field(default="", alias="SIGNING_TOKEN_SALT")

    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # CORS
    allowed_origins: List[str] = Field(default=[], alias="ALLOWED_ORIGINS")

    @field_validator("allowed_origins", mode='before')
    @classmethod
    def _parse_allowed_origins(cls, v: Any) -> List[str]:
        """Parse ALLOWED_ORIGINS from JSON list, CSV, semicolon-separated string, or list."""
        if v is None:
            return []
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            s = v.strip()
            if not s:
                return []
            if s.startswith("["):
                try:
                    return json.loads(s)
                except json.JSONDecodeError:
                    pass
            # Semicolon is useful in Cloud Build where comma separates env vars
            parts = [p.strip() for p in s.replace(",", ";").split(";")]
            return [p for p in parts if p]
        return []

    @field_validator("webhook_compat_mode", mode='before')
    @classmethod
    def _normalize_compat_mode(cls, v: Any) -> str:
        return (v or "").strip().lower()

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if self.use_secret_manager:
            self._load_secrets_from_gcp()

    def _load_secrets_from_gcp(self):
        """Override settings with values from Secret Manager if available."""
        secret_mappings = {
            "supabase_url": "SUPABASE_URL",
            "supabase_service_key": "SUPABASE_SERVICE_KEY",
            "admin_api_secret": "ADMIN_API_SECRET",
            "gcs_bucket": "GCS_BUCKET",
            "session_secret": "SESSION_SECRET",
            "webhook_secret": "WEBHOOK_SECRET",
            "resend_api_key": "RESEND_API_KEY",
            "signing_token_salt": "SIGNING_TOKEN_SALT",
            "dropbox_app_secret": "DROPBOX_APP_SECRET",
            "box_client_secret": "BOX_CLIENT_SECRET",
        }

        for attr, secret_id in secret_mappings.items():
            secret_value = get_secret_from_gcp(secret_id, self.gcp_project_id)
            if secret_value:
                setattr(self, attr, secret_value)
                logger.info(f"Loaded {secret_id} from Secret Manager")

    @model_validator(mode='after')
    def validate_configuration(self) -> 'Settings':
        """Log configuration problems for the environment."""
        if self.environment == "production" and not self.app_base_url.startswith("https://"):
            logger.warning(
                f"Configuration Warning: APP_BASE_URL ('{self.app_base_url}') "
                f"does not start with 'https://' in a '{self.environment}' environment."
            )

        if not self.session_secret:
            logger.warning(
                "SESSION_SECRET is not set - external storage credentials cannot be "
                "decrypted and every user will be served from internal storage"
            )

        if not self.webhook_secret:
            logger.warning("WEBHOOK_SECRET is not set - outbound webhooks will be unsigned")

        if self.webhook_compat_mode and self.webhook_compat_mode != WEBHOOK_COMPAT_BOLDSIGN:
            logger.error(
                f"Unknown WEBHOOK_COMPAT_MODE '{self.webhook_compat_mode}', native payloads will be sent"
            )

        return self

    @property
    def compat_webhooks(self) -> bool:
        """True when webhooks use the third-party compatible payload shape."""
        return self.webhook_compat_mode == WEBHOOK_COMPAT_BOLDSIGN

    @property
    def default_bucket(self) -> str:
        return self.gcs_bucket_eu or self.gcs_bucket

    def get_sign_app_url(self) -> str:
        """
        Get the frontend signing app URL.

        This URL is used in signing emails sent to signers, so it must be the
        publicly accessible frontend URL. Falls back to app_base_url.
        """
        if self.sign_app_url:
            return self.sign_app_url.rstrip("/")

        if self.environment != "development":
            logger.warning(
                f"SIGN_APP_URL not set, falling back to APP_BASE_URL ({self.app_base_url}). "
                "This is likely incorrect for production!"
            )
        return self.app_base_url.rstrip("/")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# =============================================================================
# CORS Configuration
# =============================================================================

# Development origins (only in non-production)
DEV_CORS_ORIGINS = [
    "http://localhost:5173",
    "http://localhost:3000",
    "http://localhost:5000",
    "http://127.0.0.1:5173",
    "http://127.0.0.1:3000",
]


def get_cors_origins() -> List[str]:
    """
    Get list of allowed CORS origins.

    Combines:
    1. The signing frontend (SIGN_APP_URL)
    2. Origins from ALLOWED_ORIGINS env variable
    3. Development origins (if not in production)
    """
    settings = get_settings()
    origins = set(settings.allowed_origins)

    if settings.sign_app_url:
        origins.add(settings.sign_app_url.rstrip("/"))

    if settings.environment != "production":
        origins.update(DEV_CORS_ORIGINS)

    return list(origins)


def is_allowed_origin(origin: str) -> bool:
    """Check if an origin is allowed for CORS."""
    if not origin:
        return False

    if origin in get_cors_origins():
        return True

    settings = get_settings()
    if settings.environment != "production":
        if origin.startswith("http://localhost:") or origin.startswith("http://127.0.0.1:"):
            return True

    return False
