"""
Storage resolution: which bucket/region a document lives in, and where the
owner wants signed output copied.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import httpx

from app.config import get_settings, Settings
from app.models import AccountTier, DataRegion, StorageProvider, UserAccount
from app.storage.base import ObjectStorageBackend, StorageError
from app.storage.gcs import GCSStorageBackend, get_gcs_backend
from app.storage.oauth import BoxStorageBackend, DropboxStorageBackend, TokenRefreshCallback
from app.storage.s3 import S3Credentials, S3StorageBackend
from app.supabase_client import SupabaseClient, get_supabase_client
from app.vault import CredentialVault, VaultError, get_credential_vault

logger = logging.getLogger(__name__)

TIER_LEVELS = {
    AccountTier.FREE: 0,
    AccountTier.PRO: 1,
    AccountTier.ENTERPRISE: 2,
    AccountTier.ORG: 3,
}

DEFAULT_REGION = DataRegion.EU
REGION_SELECTION_TIER = AccountTier.ENTERPRISE
EXTERNAL_STORAGE_TIER = AccountTier.PRO


def has_minimum_tier(tier: Optional[AccountTier], minimum: AccountTier) -> bool:
    return TIER_LEVELS.get(tier or AccountTier.FREE, 0) >= TIER_LEVELS[minimum]


@dataclass
class StorageLocation:
    bucket: str
    region: str
    backend: ObjectStorageBackend


@dataclass
class PreferredBackend:
    backend: ObjectStorageBackend
    provider: StorageProvider
    fallback_reason: Optional[str] = None

    @property
    def is_fallback(self) -> bool:
        return self.fallback_reason is not None


class ResolutionError(Exception):
    """User's preferred provider cannot be used."""
    pass


def create_backend(
    provider: StorageProvider,
    user_id: str,
    settings: Settings,
    s3_credentials: Optional[S3Credentials] = None,
    access_token: Optional[str] = None,
    refresh_token: Optional[str] = None,
    token_expires_at: Optional[datetime] = None,
    on_token_refresh: Optional[TokenRefreshCallback] = None,
) -> ObjectStorageBackend:
    """Build the backend for a provider once its credentials are known."""
    if provider == StorageProvider.FAIRSIGN:
        return get_gcs_backend()

    if provider == StorageProvider.CUSTOM_S3:
        if s3_credentials is None:
            raise ResolutionError("Custom S3 storage requires credentials to be configured")
        return S3StorageBackend(user_id, s3_credentials)

    if not access_token:
        raise ResolutionError(f"{provider.value} storage requires OAuth credentials to be configured")

    if provider == StorageProvider.DROPBOX:
        return DropboxStorageBackend(
            user_id,
            access_token,
            client_id=settings.dropbox_app_key,
            client_secret=settings.dropbox_app_secret,
            refresh_token=refresh_token,
            token_expires_at=token_expires_at,
            on_token_refresh=on_token_refresh,
        )

    if provider == StorageProvider.BOX:
        return BoxStorageBackend(
            user_id,
            access_token,
            client_id=settings.box_client_id,
            client_secret=settings.box_client_secret,
            refresh_token=refresh_token,
            token_expires_at=token_expires_at,
            on_token_refresh=on_token_refresh,
        )

    raise ResolutionError(f"Unsupported storage provider: {provider}")


class StorageResolver:
    """Resolves regional buckets and per-user output backends."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        supabase: Optional[SupabaseClient] = None,
        vault: Optional[CredentialVault] = None,
    ):
        self.settings = settings or get_settings()
        self._supabase = supabase
        self._vault = vault

    @property
    def supabase(self) -> SupabaseClient:
        if self._supabase is None:
            self._supabase = get_supabase_client()
        return self._supabase

    @property
    def vault(self) -> CredentialVault:
        if self._vault is None:
            self._vault = get_credential_vault()
        return self._vault

    def bucket_for_region(self, region: DataRegion) -> str:
        if region == DataRegion.US and self.settings.gcs_bucket_us:
            return self.settings.gcs_bucket_us
        if region == DataRegion.US:
            logger.warning("GCS_BUCKET_US not configured, US data goes to the default bucket")
        return self.settings.default_bucket

    def internal_backend(self, bucket: Optional[str] = None) -> GCSStorageBackend:
        return get_gcs_backend(bucket or self.settings.default_bucket)

    async def resolve(self, user_id: Optional[str] = None) -> StorageLocation:
        """
        Bucket and region for a new document.

        Anonymous/API documents and accounts below the enterprise tier always
        use the default region. Higher tiers may pick a supported region.
        """
        region = DEFAULT_REGION
        if user_id:
            user = await self.supabase.get_user(user_id)
            region = self._region_for(user)

        bucket = self.bucket_for_region(region)
        return StorageLocation(bucket=bucket, region=region.value, backend=self.internal_backend(bucket))

    @staticmethod
    def _region_for(user: Optional[UserAccount]) -> DataRegion:
        if user is None or not has_minimum_tier(user.account_type, REGION_SELECTION_TIER):
            return DEFAULT_REGION
        try:
            return DataRegion((user.data_region or "").upper())
        except ValueError:
            logger.warning(f"Unsupported data region '{user.data_region}' for user {user.id}, using {DEFAULT_REGION.value}")
            return DEFAULT_REGION

    async def resolve_user_preferred_backend(self, user_id: Optional[str]) -> ObjectStorageBackend:
        return (await self.resolve_preferred(user_id)).backend

    async def resolve_preferred(self, user_id: Optional[str]) -> PreferredBackend:
        """
        Backend that receives the owner's copy of signed output.

        Never raises: any problem with an external provider (missing or
        undecryptable credentials, tier downgrade, provider outage while
        refreshing) resolves to the internal backend.
        """
        internal = self.internal_backend()
        if not user_id:
            return PreferredBackend(internal, StorageProvider.FAIRSIGN)

        try:
            user = await self.supabase.get_user(user_id)
        except httpx.HTTPError as e:
            logger.warning(f"Could not load user {user_id} for storage resolution: {e}")
            return PreferredBackend(internal, StorageProvider.FAIRSIGN, "user_lookup_failed")

        if user is None or user.storage_provider == StorageProvider.FAIRSIGN:
            return PreferredBackend(internal, StorageProvider.FAIRSIGN)

        provider = user.storage_provider
        if not has_minimum_tier(user.account_type, EXTERNAL_STORAGE_TIER):
            logger.warning(
                f"User {user_id} prefers {provider.value} but tier is {user.account_type.value}, "
                "using internal storage"
            )
            return PreferredBackend(internal, provider, "tier")

        try:
            backend = await self._build_external(user, provider)
        except (ResolutionError, VaultError, StorageError, httpx.HTTPError, KeyError, ValueError) as e:
            logger.warning(
                f"Falling back to internal storage for user {user_id} ({provider.value}): {e}"
            )
            return PreferredBackend(internal, provider, "credentials")

        logger.info(f"Resolved {provider.value} storage for user {user_id}")
        return PreferredBackend(backend, provider)

    async def _build_external(self, user: UserAccount, provider: StorageProvider) -> ObjectStorageBackend:
        if provider == StorageProvider.CUSTOM_S3:
            row = await self.supabase.get_user_s3_credentials(user.id)
            if not row:
                raise ResolutionError("No active custom S3 credentials")
            credentials = S3Credentials(
                endpoint=self.vault.decrypt(row["endpoint_encrypted"], user.id),
                bucket=self.vault.decrypt(row["bucket_encrypted"], user.id),
                access_key_id=self.vault.decrypt(row["access_key_id_encrypted"], user.id),
                secret_access_key=self.vault.decrypt(row["secret_access_key_encrypted"], user.id),
                region=row.get("region") or "auto",
                prefix=row.get("prefix") or "",
            )
            return create_backend(provider, user.id, self.settings, s3_credentials=credentials)

        row = await self.supabase.get_oauth_credentials(user.id, provider.value)
        if not row:
            raise ResolutionError(f"No active {provider.value} connection")
        return create_backend(
            provider,
            user.id,
            self.settings,
            access_token=self.vault.decrypt(row["access_token_encrypted"], user.id),
            refresh_token=self.vault.decrypt_optional(row.get("refresh_token_encrypted"), user.id),
            token_expires_at=row.get("token_expires_at"),
            on_token_refresh=self._persist_refreshed_tokens(row["id"], user.id),
        )

    def _persist_refreshed_tokens(self, credential_id: str, user_id: str) -> TokenRefreshCallback:
        async def on_token_refresh(access_token: str, refresh_token: Optional[str], expires_at: datetime) -> None:
            update = {
                "access_token_encrypted": self.vault.encrypt(access_token, user_id),
                "token_expires_at": expires_at.isoformat(),
            }
            if refresh_token:
                update["refresh_token_encrypted"] = self.vault.encrypt(refresh_token, user_id)
            await self.supabase.update_oauth_tokens(credential_id, update)
            logger.info(f"Persisted refreshed OAuth token for user {user_id}")

        return on_token_refresh


# Singleton instance
_storage_resolver: Optional[StorageResolver] = None


def get_storage_resolver() -> StorageResolver:
    """Get the storage resolver singleton."""
    global _storage_resolver
    if _storage_resolver is None:
        _storage_resolver = StorageResolver()
    return _storage_resolver
