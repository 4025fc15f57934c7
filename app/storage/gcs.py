"""
Google Cloud Storage backend - the internal store.
Handles signed URLs, uploads, and downloads for one bucket.
"""
import logging
from datetime import timedelta
from typing import Dict, Optional
from urllib.parse import quote

import google.auth
from google.api_core import exceptions as gcs_exceptions
from google.auth.transport.requests import Request
from google.cloud import storage
from google.cloud.storage import Blob
from starlette.concurrency import run_in_threadpool

from app.config import get_settings, Settings
from app.storage.base import ObjectStorageBackend, StorageError, StorageObjectNotFound

logger = logging.getLogger(__name__)


def _encode_filename_for_header(filename: str) -> str:
    """
    Encode filename for Content-Disposition header (RFC 5987/RFC 6266).
    """
    try:
        filename.encode('ascii')
        safe_filename = filename.replace('"', '\\"')
        return f'attachment; filename="{safe_filename}"'
    except UnicodeEncodeError:
        encoded = quote(filename, safe='')
        ascii_fallback = ''.join(c if ord(c) < 128 else '_' for c in filename)
        return f"attachment; filename=\"{ascii_fallback}\"; filename*=UTF-8''{encoded}"


def validate_object_key(key: str) -> str:
    """Reject empty keys, absolute paths and traversal."""
    if not key:
        raise StorageError("Storage key cannot be empty", backend="gcs")
    if ".." in key.split("/"):
        raise StorageError("Path traversal not allowed", backend="gcs", key=key)
    if key.startswith("/"):
        raise StorageError("Absolute paths not allowed", backend="gcs", key=key)
    return key


class GCSStorageBackend(ObjectStorageBackend):
    """Google Cloud Storage bucket wrapper."""

    name = "fairsign"

    def __init__(
        self,
        bucket_name: str,
        settings: Optional[Settings] = None,
        client: Optional[storage.Client] = None,
    ):
        self.settings = settings or get_settings()
        self.bucket_name = bucket_name
        self._client = client
        self._bucket: Optional[storage.Bucket] = None

    @property
    def client(self) -> storage.Client:
        if self._client is None:
            self._client = storage.Client()
        return self._client

    @property
    def bucket(self) -> storage.Bucket:
        if self._bucket is None:
            if not self.bucket_name:
                raise StorageError("No internal bucket configured", backend=self.name)
            self._bucket = self.client.bucket(self.bucket_name)
        return self._bucket

    def _generate_iam_signed_url(
        self,
        blob: Blob,
        method: str,
        expiration_delta: timedelta,
        response_disposition: Optional[str] = None,
    ) -> str:
        """
        Generates a V4 signed URL using the runtime service account's identity (IAM).
        This is the recommended way for Cloud Run, App Engine, etc.
        """
        credentials, _ = google.auth.default()
        credentials.refresh(Request())

        return blob.generate_signed_url(
            version="v4",
            expiration=expiration_delta,
            method=method,
            response_disposition=response_disposition,
            service_account_email=credentials.service_account_email,
            access_token=credentials.token,
        )

    def _upload_sync(self, data: bytes, key: str, content_type: str) -> str:
        blob = self.bucket.blob(validate_object_key(key))
        blob.upload_from_string(data, content_type=content_type)
        logger.info(f"Uploaded {len(data)} bytes to gs://{self.bucket_name}/{key}")
        return key

    def _download_sync(self, key: str) -> bytes:
        blob = self.bucket.blob(validate_object_key(key))
        try:
            return blob.download_as_bytes()
        except gcs_exceptions.NotFound:
            raise StorageObjectNotFound(f"File not found in GCS: {key}", backend=self.name, key=key)

    def _signed_url_sync(self, key: str, ttl_seconds: int, filename: Optional[str]) -> str:
        blob = self.bucket.blob(validate_object_key(key))
        if not blob.exists():
            raise StorageObjectNotFound(f"File not found: {key}", backend=self.name, key=key)
        response_disposition = _encode_filename_for_header(filename) if filename else None
        return self._generate_iam_signed_url(
            blob=blob,
            method="GET",
            expiration_delta=timedelta(seconds=ttl_seconds),
            response_disposition=response_disposition,
        )

    async def upload(self, data: bytes, key: str, content_type: str) -> str:
        try:
            return await run_in_threadpool(self._upload_sync, data, key, content_type)
        except gcs_exceptions.GoogleAPIError as e:
            raise StorageError(f"GCS upload failed for {key}: {e}", backend=self.name, key=key) from e

    async def download(self, key: str) -> bytes:
        try:
            return await run_in_threadpool(self._download_sync, key)
        except gcs_exceptions.GoogleAPIError as e:
            raise StorageError(f"GCS download failed for {key}: {e}", backend=self.name, key=key) from e

    async def get_signed_url(
        self,
        key: str,
        ttl_seconds: Optional[int] = None,
        filename: Optional[str] = None,
    ) -> str:
        ttl = ttl_seconds or self.settings.gcs_signed_url_expiration_minutes * 60
        try:
            return await run_in_threadpool(self._signed_url_sync, key, ttl, filename)
        except gcs_exceptions.GoogleAPIError as e:
            raise StorageError(f"GCS signed URL failed for {key}: {e}", backend=self.name, key=key) from e

    async def exists(self, key: str) -> bool:
        blob = self.bucket.blob(validate_object_key(key))
        return await run_in_threadpool(blob.exists)

    async def delete(self, key: str) -> None:
        blob = self.bucket.blob(validate_object_key(key))
        try:
            await run_in_threadpool(blob.delete)
        except gcs_exceptions.NotFound:
            logger.info(f"Delete skipped, gs://{self.bucket_name}/{key} does not exist")


# One backend per bucket, shared across requests
_gcs_backends: Dict[str, GCSStorageBackend] = {}


def get_gcs_backend(bucket_name: Optional[str] = None) -> GCSStorageBackend:
    """Get the GCS backend for a bucket (default: the EU/default bucket)."""
    bucket = bucket_name or get_settings().default_bucket
    if bucket not in _gcs_backends:
        _gcs_backends[bucket] = GCSStorageBackend(bucket)
    return _gcs_backends[bucket]
