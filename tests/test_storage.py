"""
Tests for storage resolution and the external backends.
"""
import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from botocore.exceptions import ClientError

from app.models import AccountTier, StorageProvider, UserAccount
from app.storage.base import StorageError, StorageObjectNotFound
from app.storage.gcs import GCSStorageBackend
from app.storage.oauth import BoxStorageBackend, DropboxStorageBackend
from app.storage.resolver import StorageResolver, create_backend, has_minimum_tier
from app.storage.s3 import S3Credentials, S3StorageBackend
from app.utils.datetime_utils import utc_now
from app.vault import CredentialVault


@pytest.fixture
def vault():
    return CredentialVault("test-session-secret")


@pytest.fixture
def resolver(settings, fake_supabase, vault):
    return StorageResolver(settings=settings, supabase=fake_supabase, vault=vault)


def add_user(fake_supabase, tier: AccountTier, provider=StorageProvider.FAIRSIGN, region="EU", user_id="user-1"):
    fake_supabase.users[user_id] = UserAccount(
        id=user_id,
        account_type=tier,
        storage_provider=provider,
        data_region=region,
    )


def add_s3_credentials(fake_supabase, vault, user_id="user-1", prefix="fairsign"):
    fake_supabase.s3_credentials.append({
        "id": "cred-s3",
        "user_id": user_id,
        "endpoint_encrypted": vault.encrypt("https://s3.example.com", user_id),
        "bucket_encrypted": vault.encrypt("user-bucket", user_id),
        "access_key_id_encrypted": vault.encrypt("AKIAEXAMPLEKEY", user_id),
        "secret_access_key_encrypted": vault.encrypt("very-secret", user_id),
        "region": "eu-central-1",
        "prefix": prefix,
        "is_active": True,
    })


class TestTiers:
    def test_ordering(self):
        assert has_minimum_tier(AccountTier.ORG, AccountTier.ENTERPRISE)
        assert has_minimum_tier(AccountTier.PRO, AccountTier.PRO)
        assert not has_minimum_tier(AccountTier.FREE, AccountTier.PRO)
        assert not has_minimum_tier(None, AccountTier.PRO)

    def test_unknown_tier_is_free(self):
        user = UserAccount(id="u", account_type="platinum")
        assert user.account_type == AccountTier.FREE


class TestRegionResolution:
    @pytest.mark.asyncio
    async def test_anonymous_uses_default_region(self, resolver):
        location = await resolver.resolve(None)

        assert location.region == "EU"
        assert location.bucket == "test-bucket"
        assert isinstance(location.backend, GCSStorageBackend)

    @pytest.mark.asyncio
    async def test_enterprise_may_select_us(self, resolver, fake_supabase):
        add_user(fake_supabase, AccountTier.ENTERPRISE, region="us")

        location = await resolver.resolve("user-1")

        assert location.region == "US"
        assert location.bucket == "test-bucket-us"

    @pytest.mark.asyncio
    async def test_pro_cannot_select_region(self, resolver, fake_supabase):
        add_user(fake_supabase, AccountTier.PRO, region="US")

        location = await resolver.resolve("user-1")

        assert location.region == "EU"

    @pytest.mark.asyncio
    async def test_unknown_region_falls_back(self, resolver, fake_supabase):
        add_user(fake_supabase, AccountTier.ORG, region="APAC")

        location = await resolver.resolve("user-1")

        assert location.region == "EU"


class TestPreferredBackend:
    @pytest.mark.asyncio
    async def test_no_user_is_internal(self, resolver):
        preferred = await resolver.resolve_preferred(None)

        assert preferred.provider == StorageProvider.FAIRSIGN
        assert preferred.is_fallback is False

    @pytest.mark.asyncio
    async def test_custom_s3_for_pro_user(self, resolver, fake_supabase, vault):
        add_user(fake_supabase, AccountTier.PRO, StorageProvider.CUSTOM_S3)
        add_s3_credentials(fake_supabase, vault)

        preferred = await resolver.resolve_preferred("user-1")

        assert preferred.is_fallback is False
        assert isinstance(preferred.backend, S3StorageBackend)
        assert preferred.backend.bucket == "user-bucket"
        assert preferred.backend.object_key("signed.pdf") == "fairsign/users/user-1/documents/signed.pdf"

    @pytest.mark.asyncio
    async def test_free_tier_falls_back(self, resolver, fake_supabase, vault):
        add_user(fake_supabase, AccountTier.FREE, StorageProvider.CUSTOM_S3)
        add_s3_credentials(fake_supabase, vault)

        preferred = await resolver.resolve_preferred("user-1")

        assert preferred.is_fallback is True
        assert preferred.fallback_reason == "tier"
        assert isinstance(preferred.backend, GCSStorageBackend)

    @pytest.mark.asyncio
    async def test_missing_credentials_fall_back(self, resolver, fake_supabase):
        add_user(fake_supabase, AccountTier.PRO, StorageProvider.DROPBOX)

        preferred = await resolver.resolve_preferred("user-1")

        assert preferred.fallback_reason == "credentials"
        assert preferred.provider == StorageProvider.DROPBOX

    @pytest.mark.asyncio
    async def test_undecryptable_credentials_fall_back(self, resolver, fake_supabase):
        add_user(fake_supabase, AccountTier.PRO, StorageProvider.CUSTOM_S3)
        add_s3_credentials(fake_supabase, CredentialVault("another-secret"))

        preferred = await resolver.resolve_preferred("user-1")

        assert preferred.is_fallback is True
        assert isinstance(preferred.backend, GCSStorageBackend)

    @pytest.mark.asyncio
    async def test_user_lookup_failure_falls_back(self, settings, vault):
        supabase = MagicMock()
        supabase.get_user = AsyncMock(side_effect=httpx.ConnectError("down"))
        resolver = StorageResolver(settings=settings, supabase=supabase, vault=vault)

        preferred = await resolver.resolve_preferred("user-1")

        assert preferred.fallback_reason == "user_lookup_failed"

    @pytest.mark.asyncio
    async def test_dropbox_tokens_refreshed_are_persisted(self, resolver, fake_supabase, vault):
        add_user(fake_supabase, AccountTier.PRO, StorageProvider.DROPBOX)
        fake_supabase.storage_credentials.append({
            "id": "cred-dbx",
            "user_id": "user-1",
            "provider": "dropbox",
            "access_token_encrypted": vault.encrypt("old-access", "user-1"),
            "refresh_token_encrypted": vault.encrypt("refresh-1", "user-1"),
            "token_expires_at": (utc_now() + timedelta(hours=2)).isoformat(),
            "is_active": True,
        })

        preferred = await resolver.resolve_preferred("user-1")
        assert isinstance(preferred.backend, DropboxStorageBackend)
        assert preferred.backend.access_token == "old-access"

        await preferred.backend.on_token_refresh("new-access", "refresh-2", utc_now())

        update = fake_supabase.oauth_updates[0]
        assert update["id"] == "cred-dbx"
        assert vault.decrypt(update["access_token_encrypted"], "user-1") == "new-access"
        assert vault.decrypt(update["refresh_token_encrypted"], "user-1") == "refresh-2"

    @pytest.mark.asyncio
    async def test_backend_only_shortcut(self, resolver, fake_supabase, vault):
        add_user(fake_supabase, AccountTier.ENTERPRISE, StorageProvider.CUSTOM_S3)
        add_s3_credentials(fake_supabase, vault)

        backend = await resolver.resolve_user_preferred_backend("user-1")

        assert isinstance(backend, S3StorageBackend)

    def test_create_backend_requires_oauth_token(self, settings):
        with pytest.raises(Exception, match="OAuth"):
            create_backend(StorageProvider.BOX, "user-1", settings)


class DropboxApi:
    """httpx mock transport handler recording calls."""

    def __init__(self, upload_statuses=(200,)):
        self.requests = []
        self.upload_statuses = list(upload_statuses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/oauth2/token":
            return httpx.Response(200, json={
                "access_token": "fresh-access",
                "refresh_token": "fresh-refresh",
                "expires_in": 14400,
            })
        if request.url.path == "/2/files/upload":
            status = self.upload_statuses.pop(0) if self.upload_statuses else 200
            if status != 200:
                return httpx.Response(status, text="expired_access_token")
            arg = json.loads(request.headers["Dropbox-API-Arg"])
            return httpx.Response(200, json={"path_display": arg["path"]})
        if request.url.path == "/2/files/download":
            return httpx.Response(409, text="path/not_found")
        return httpx.Response(404)


def dropbox_backend(api: DropboxApi, expires_at, on_refresh=None) -> DropboxStorageBackend:
    return DropboxStorageBackend(
        "user-1",
        "stale-access",
        client_id="app-key",
        client_secret="app-secret",
        refresh_token="refresh-1",
        token_expires_at=expires_at,
        on_token_refresh=on_refresh,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(api)),
    )


class TestOAuthBackends:
    @pytest.mark.asyncio
    async def test_refreshes_token_inside_buffer(self):
        api = DropboxApi()
        on_refresh = AsyncMock()
        backend = dropbox_backend(api, utc_now() + timedelta(minutes=2), on_refresh)

        path = await backend.upload(b"%PDF", "documents/doc-1/signed.pdf", "application/pdf")

        assert path == "/FairSign/documents/doc-1/signed.pdf"
        assert api.requests[0].url.path == "/oauth2/token"
        assert api.requests[1].headers["Authorization"] == "Bearer fresh-access"
        on_refresh.assert_awaited_once()
        assert on_refresh.await_args.args[:2] == ("fresh-access", "fresh-refresh")

    @pytest.mark.asyncio
    async def test_valid_token_not_refreshed(self):
        api = DropboxApi()
        backend = dropbox_backend(api, utc_now() + timedelta(hours=3))

        await backend.upload(b"%PDF", "signed.pdf", "application/pdf")

        assert [r.url.path for r in api.requests] == ["/2/files/upload"]
        assert api.requests[0].headers["Authorization"] == "Bearer stale-access"

    @pytest.mark.asyncio
    async def test_401_refreshes_and_retries(self):
        api = DropboxApi(upload_statuses=(401, 200))
        backend = dropbox_backend(api, utc_now() + timedelta(hours=3))

        await backend.upload(b"%PDF", "signed.pdf", "application/pdf")

        assert [r.url.path for r in api.requests] == ["/2/files/upload", "/oauth2/token", "/2/files/upload"]

    @pytest.mark.asyncio
    async def test_missing_file_raises_not_found(self):
        backend = dropbox_backend(DropboxApi(), utc_now() + timedelta(hours=3))

        with pytest.raises(StorageObjectNotFound):
            await backend.download("missing.pdf")

    def test_box_flattens_keys(self):
        assert BoxStorageBackend.file_name_for("documents/1/signed.pdf") == "documents_1_signed.pdf"


class TestS3Backend:
    def backend(self, client):
        credentials = S3Credentials(
            endpoint="https://s3.example.com",
            bucket="user-bucket",
            access_key_id="AKIA",
            secret_access_key="secret",
        )
        return S3StorageBackend("user-1", credentials, client=client)

    @pytest.mark.asyncio
    async def test_upload_uses_user_prefix(self):
        client = MagicMock()
        backend = self.backend(client)

        key = await backend.upload(b"%PDF", "signed.pdf", "application/pdf")

        assert key == "users/user-1/documents/signed.pdf"
        client.put_object.assert_called_once_with(
            Bucket="user-bucket", Key=key, Body=b"%PDF", ContentType="application/pdf"
        )

    @pytest.mark.asyncio
    async def test_missing_key_is_not_found(self):
        client = MagicMock()
        client.get_object.side_effect = ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject")
        backend = self.backend(client)

        with pytest.raises(StorageObjectNotFound):
            await backend.download("missing.pdf")

    @pytest.mark.asyncio
    async def test_other_errors_are_storage_errors(self):
        client = MagicMock()
        client.put_object.side_effect = ClientError({"Error": {"Code": "AccessDenied"}}, "PutObject")
        backend = self.backend(client)

        with pytest.raises(StorageError) as exc_info:
            await backend.upload(b"%PDF", "signed.pdf", "application/pdf")
        assert not isinstance(exc_info.value, StorageObjectNotFound)
