"""
S3-compatible backend for users who bring their own bucket
(AWS S3, Cloudflare R2, MinIO, Backblaze B2, ...).
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from starlette.concurrency import run_in_threadpool

from app.storage.base import ObjectStorageBackend, StorageError, StorageObjectNotFound

logger = logging.getLogger(__name__)

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


@dataclass
class S3Credentials:
    endpoint: str
    bucket: str
    access_key_id: str
    secret_access_key: str
    region: str = "auto"
    prefix: str = ""


class S3StorageBackend(ObjectStorageBackend):
    """
    Per-user S3 backend. Objects land under
    `{prefix}/users/{user_id}/documents/{key}` inside the user's bucket.
    """

    name = "custom_s3"

    def __init__(self, user_id: str, credentials: S3Credentials, client: Optional[Any] = None):
        self.user_id = user_id
        self.bucket = credentials.bucket
        self.prefix = (credentials.prefix or "").strip("/")
        self._client = client or boto3.client(
            "s3",
            endpoint_url=credentials.endpoint,
            region_name=credentials.region or "auto",
            aws_access_key_id=credentials.access_key_id,
            aws_secret_access_key=credentials.secret_access_key,
            config=Config(s3={"addressing_style": "path"}, signature_version="s3v4"),
        )

    def object_key(self, key: str) -> str:
        base = f"{self.prefix}/" if self.prefix else ""
        return f"{base}users/{self.user_id}/documents/{key.lstrip('/')}"

    def _wrap(self, action: str, key: str, error: Exception) -> StorageError:
        if isinstance(error, ClientError):
            code = str(error.response.get("Error", {}).get("Code", ""))
            if code in _MISSING_CODES:
                return StorageObjectNotFound(f"S3 object not found: {key}", backend=self.name, key=key)
        return StorageError(f"S3 {action} failed for {key}: {error}", backend=self.name, key=key)

    async def upload(self, data: bytes, key: str, content_type: str) -> str:
        object_key = self.object_key(key)
        try:
            await run_in_threadpool(
                self._client.put_object,
                Bucket=self.bucket,
                Key=object_key,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            raise self._wrap("upload", key, e) from e
        logger.info(f"Uploaded {len(data)} bytes to s3://{self.bucket}/{object_key}")
        return object_key

    async def download(self, key: str) -> bytes:
        try:
            response = await run_in_threadpool(
                self._client.get_object, Bucket=self.bucket, Key=self.object_key(key)
            )
            return await run_in_threadpool(response["Body"].read)
        except (BotoCoreError, ClientError) as e:
            raise self._wrap("download", key, e) from e

    async def get_signed_url(self, key: str, ttl_seconds: int, filename: Optional[str] = None) -> str:
        params = {"Bucket": self.bucket, "Key": self.object_key(key)}
        if filename:
            params["ResponseContentDisposition"] = f'attachment; filename="{filename}"'
        try:
            return await run_in_threadpool(
                self._client.generate_presigned_url,
                "get_object",
                Params=params,
                ExpiresIn=ttl_seconds,
            )
        except (BotoCoreError, ClientError) as e:
            raise self._wrap("presign", key, e) from e

    async def exists(self, key: str) -> bool:
        try:
            await run_in_threadpool(
                self._client.head_object, Bucket=self.bucket, Key=self.object_key(key)
            )
            return True
        except ClientError as e:
            if isinstance(self._wrap("head", key, e), StorageObjectNotFound):
                return False
            raise self._wrap("head", key, e) from e
        except BotoCoreError as e:
            raise self._wrap("head", key, e) from e

    async def delete(self, key: str) -> None:
        try:
            await run_in_threadpool(
                self._client.delete_object, Bucket=self.bucket, Key=self.object_key(key)
            )
        except (BotoCoreError, ClientError) as e:
            raise self._wrap("delete", key, e) from e
