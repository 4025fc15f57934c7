"""
OAuth-connected storage providers (Dropbox, Box).

Access tokens are refreshed shortly before they expire (or after a 401) and
the new values are handed to `on_token_refresh` so the caller can persist
them re-encrypted.
"""
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from app.storage.base import ObjectStorageBackend, StorageError, StorageObjectNotFound
from app.utils.datetime_utils import expires_within, parse_db_timestamp, utc_now

logger = logging.getLogger(__name__)

# (new_access_token, new_refresh_token or None, expires_at)
TokenRefreshCallback = Callable[[str, Optional[str], datetime], Awaitable[None]]

REFRESH_BUFFER_SECONDS = 5 * 60
APP_FOLDER = "FairSign"


class OAuthStorageBackend(ObjectStorageBackend):
    """Token bookkeeping shared by OAuth providers."""

    token_url: str = ""
    default_expires_in: int = 3600

    def __init__(
        self,
        user_id: str,
        access_token: str,
        client_id: str,
        client_secret: str,
        refresh_token: Optional[str] = None,
        token_expires_at: Any = None,
        on_token_refresh: Optional[TokenRefreshCallback] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.user_id = user_id
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.token_expires_at = parse_db_timestamp(token_expires_at)
        self.client_id = client_id
        self.client_secret = client_secret
        self.on_token_refresh = on_token_refresh
        self.timeout = timeout
        self._http_client = http_client

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.request(method, url, **kwargs)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.request(method, url, **kwargs)

    async def _ensure_valid_token(self) -> None:
        if not self.refresh_token:
            return
        if expires_within(self.token_expires_at, REFRESH_BUFFER_SECONDS):
            await self._refresh_access_token()

    async def _refresh_access_token(self) -> None:
        if not self.refresh_token:
            raise StorageError("No refresh token available for token refresh", backend=self.name)
        if not self.client_id or not self.client_secret:
            raise StorageError(f"{self.name} OAuth client is not configured", backend=self.name)

        response = await self._send(
            "POST",
            self.token_url,
            data={
                "grant_type": "refresh_token",
                "refresh_token": self.refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
        )
        if response.status_code != 200:
            raise StorageError(
                f"Failed to refresh {self.name} token: {response.status_code} {response.text}",
                backend=self.name,
            )

        data = response.json()
        self.access_token = data["access_token"]
        new_refresh_token = data.get("refresh_token")
        if new_refresh_token:
            self.refresh_token = new_refresh_token
        self.token_expires_at = utc_now() + timedelta(
            seconds=int(data.get("expires_in") or self.default_expires_in)
        )
        logger.info(f"Refreshed {self.name} access token for user {self.user_id}")

        if self.on_token_refresh:
            await self.on_token_refresh(self.access_token, new_refresh_token, self.token_expires_at)

    async def _authorized(self, method: str, url: str, headers: Optional[Dict[str, str]] = None, **kwargs) -> httpx.Response:
        await self._ensure_valid_token()

        def with_auth() -> Dict[str, str]:
            merged = dict(headers or {})
            merged["Authorization"] = f"Bearer {self.access_token}"
            return merged

        response = await self._send(method, url, headers=with_auth(), **kwargs)
        if response.status_code == 401 and self.refresh_token:
            await self._refresh_access_token()
            response = await self._send(method, url, headers=with_auth(), **kwargs)
        return response

    def _fail(self, action: str, key: str, response: httpx.Response) -> StorageError:
        message = f"{self.name} {action} failed for {key}: {response.status_code} {response.text}"
        if response.status_code in (404, 409) and action in ("download", "link"):
            return StorageObjectNotFound(message, backend=self.name, key=key)
        return StorageError(message, backend=self.name, key=key)


class DropboxStorageBackend(OAuthStorageBackend):
    """Dropbox API v2, files under /FairSign/."""

    name = "dropbox"
    token_url = "https://api.dropboxapi.com/oauth2/token"
    default_expires_in = 14400

    API_URL = "https://api.dropboxapi.com/2"
    CONTENT_URL = "https://content.dropboxapi.com/2"

    def path_for(self, key: str) -> str:
        if key.startswith(f"/{APP_FOLDER}/"):
            return key
        return f"/{APP_FOLDER}/{key.lstrip('/')}"

    async def upload(self, data: bytes, key: str, content_type: str) -> str:
        path = self.path_for(key)
        response = await self._authorized(
            "POST",
            f"{self.CONTENT_URL}/files/upload",
            headers={
                "Content-Type": "application/octet-stream",
                "Dropbox-API-Arg": json.dumps({
                    "path": path,
                    "mode": "overwrite",
                    "autorename": False,
                    "mute": True,
                }),
            },
            content=data,
        )
        if response.status_code != 200:
            raise self._fail("upload", key, response)
        logger.info(f"Uploaded {len(data)} bytes to Dropbox {path}")
        return response.json().get("path_display") or path

    async def download(self, key: str) -> bytes:
        response = await self._authorized(
            "POST",
            f"{self.CONTENT_URL}/files/download",
            headers={"Dropbox-API-Arg": json.dumps({"path": self.path_for(key)})},
        )
        if response.status_code != 200:
            raise self._fail("download", key, response)
        return response.content

    async def get_signed_url(self, key: str, ttl_seconds: int, filename: Optional[str] = None) -> str:
        # Dropbox temporary links have a fixed four hour lifetime
        response = await self._authorized(
            "POST",
            f"{self.API_URL}/files/get_temporary_link",
            json={"path": self.path_for(key)},
        )
        if response.status_code != 200:
            raise self._fail("link", key, response)
        return response.json()["link"]

    async def exists(self, key: str) -> bool:
        response = await self._authorized(
            "POST",
            f"{self.API_URL}/files/get_metadata",
            json={"path": self.path_for(key)},
        )
        return response.status_code == 200

    async def delete(self, key: str) -> None:
        response = await self._authorized(
            "POST",
            f"{self.API_URL}/files/delete_v2",
            json={"path": self.path_for(key)},
        )
        if response.status_code != 200:
            raise self._fail("delete", key, response)


class BoxStorageBackend(OAuthStorageBackend):
    """
    Box API 2.0. Box addresses files by id, so keys are flattened into file
    names ("documents/1/signed.pdf" -> "documents_1_signed.pdf") inside one
    FairSign folder in the user's root.
    """

    name = "box"
    token_url = "https://api.box.com/oauth2/token"
    default_expires_in = 3600

    API_URL = "https://api.box.com/2.0"
    UPLOAD_URL = "https://upload.box.com/api/2.0"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._folder_id: Optional[str] = None

    @staticmethod
    def file_name_for(key: str) -> str:
        return key.strip("/").replace("/", "_")

    async def _ensure_folder(self) -> str:
        if self._folder_id:
            return self._folder_id

        listing = await self._authorized("GET", f"{self.API_URL}/folders/0/items?fields=id,name,type&limit=1000")
        if listing.status_code == 200:
            for item in listing.json().get("entries", []):
                if item.get("type") == "folder" and item.get("name") == APP_FOLDER:
                    self._folder_id = item["id"]
                    return self._folder_id

        created = await self._authorized(
            "POST",
            f"{self.API_URL}/folders",
            json={"name": APP_FOLDER, "parent": {"id": "0"}},
        )
        if created.status_code == 409:
            conflicts = created.json().get("context_info", {}).get("conflicts", [])
            if conflicts:
                self._folder_id = conflicts[0]["id"]
                return self._folder_id
        if created.status_code not in (200, 201):
            raise StorageError(f"Failed to create Box folder: {created.text}", backend=self.name)

        self._folder_id = created.json()["id"]
        return self._folder_id

    async def _find_file_id(self, key: str) -> Optional[str]:
        folder_id = await self._ensure_folder()
        response = await self._authorized(
            "GET", f"{self.API_URL}/folders/{folder_id}/items?fields=id,name,type&limit=1000"
        )
        if response.status_code != 200:
            return None
        name = self.file_name_for(key)
        for item in response.json().get("entries", []):
            if item.get("type") == "file" and item.get("name") == name:
                return item["id"]
        return None

    async def _require_file_id(self, key: str) -> str:
        file_id = await self._find_file_id(key)
        if not file_id:
            raise StorageObjectNotFound(f"File not found in Box: {key}", backend=self.name, key=key)
        return file_id

    async def upload(self, data: bytes, key: str, content_type: str) -> str:
        folder_id = await self._ensure_folder()
        name = self.file_name_for(key)
        existing_id = await self._find_file_id(key)

        files = {"file": (name, data, content_type)}
        if existing_id:
            url = f"{self.UPLOAD_URL}/files/{existing_id}/content"
            response = await self._authorized("POST", url, files=files)
        else:
            url = f"{self.UPLOAD_URL}/files/content"
            attributes = json.dumps({"name": name, "parent": {"id": folder_id}})
            response = await self._authorized("POST", url, data={"attributes": attributes}, files=files)

        if response.status_code not in (200, 201):
            raise self._fail("upload", key, response)
        entries = response.json().get("entries") or [{}]
        logger.info(f"Uploaded {len(data)} bytes to Box {APP_FOLDER}/{name}")
        return entries[0].get("id") or existing_id or name

    async def download(self, key: str) -> bytes:
        file_id = await self._require_file_id(key)
        response = await self._authorized("GET", f"{self.API_URL}/files/{file_id}/content")
        if response.status_code == 302 and response.headers.get("location"):
            response = await self._send("GET", response.headers["location"])
        if response.status_code != 200:
            raise self._fail("download", key, response)
        return response.content

    async def get_signed_url(self, key: str, ttl_seconds: int, filename: Optional[str] = None) -> str:
        file_id = await self._require_file_id(key)
        unshared_at = (utc_now() + timedelta(seconds=ttl_seconds)).isoformat()
        response = await self._authorized(
            "PUT",
            f"{self.API_URL}/files/{file_id}?fields=shared_link",
            json={"shared_link": {"access": "open", "unshared_at": unshared_at}},
        )
        if response.status_code != 200:
            raise self._fail("link", key, response)
        shared_link = response.json().get("shared_link") or {}
        link = shared_link.get("download_url") or shared_link.get("url")
        if not link:
            raise StorageError(f"Box returned no shared link for {key}", backend=self.name, key=key)
        return link

    async def exists(self, key: str) -> bool:
        return await self._find_file_id(key) is not None

    async def delete(self, key: str) -> None:
        file_id = await self._find_file_id(key)
        if not file_id:
            return
        response = await self._authorized("DELETE", f"{self.API_URL}/files/{file_id}")
        if response.status_code not in (204, 404):
            raise self._fail("delete", key, response)
