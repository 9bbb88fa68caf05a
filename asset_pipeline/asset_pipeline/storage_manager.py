"""
S3 Storage Manager for the asset pipeline.

Wraps the object-storage collaborator the pipeline consumes:
- get / get_head (first N bytes) / put / copy / delete / exists
- Bucket is supplied per call (resolved per asset), with a configured default

Compatible with AWS S3, Cloudflare R2 and MinIO.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError, EndpointConnectionError, NoCredentialsError

from .config import get_storage_config

logger = logging.getLogger(__name__)

# S3 error codes worth retrying.
TRANSIENT_ERROR_CODES = {
    "RequestTimeout",
    "RequestTimeTooSkewed",
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "InternalError",
    "ServiceUnavailable",
    "500",
    "502",
    "503",
    "504",
}

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


class StorageManagerError(Exception):
    """Base exception for StorageManager errors."""

    def __init__(self, message: str, code: Optional[str] = None, transient: bool = False):
        self.code = code
        self.transient = transient
        super().__init__(message)


class ObjectNotFoundError(StorageManagerError):
    """Requested key does not exist."""


def _client_error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", "Unknown"))


def _wrap(exc: Exception, action: str, bucket: str, key: str) -> StorageManagerError:
    """Translate a botocore exception into a StorageManagerError."""
    if isinstance(exc, ClientError):
        code = _client_error_code(exc)
        if code in NOT_FOUND_CODES:
            return ObjectNotFoundError(f"S3 {action} failed: s3://{bucket}/{key} not found", code)
        return StorageManagerError(
            f"S3 {action} failed ({code}) for s3://{bucket}/{key}: {exc}",
            code,
            transient=code in TRANSIENT_ERROR_CODES,
        )
    if isinstance(exc, NoCredentialsError):
        return StorageManagerError(f"Invalid S3 credentials: {exc}", "NoCredentials")
    if isinstance(exc, EndpointConnectionError):
        return StorageManagerError(f"S3 {action} connection error: {exc}", "Connection", transient=True)
    return StorageManagerError(f"S3 {action} failed for s3://{bucket}/{key}: {exc}", transient=True)


class StorageManager:
    """
    Object storage client used by every stage.

    Usage:
        storage = StorageManager()
        data = storage.get(bucket, "temp/uploads/abc/original")
        storage.put(bucket, "assets/x/thumbnails/thumb/thumb.webp", payload, "image/webp")
        storage.copy(bucket, src_key, dst_key)
    """

    def __init__(
        self,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        default_bucket: Optional[str] = None,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        client: Any = None,
    ):
        cfg = get_storage_config()
        self.access_key = access_key or cfg.aws_access_key_id
        self.secret_key = secret_key or cfg.aws_secret_access_key
        self.default_bucket = default_bucket or cfg.default_bucket
        self.region = region or cfg.region
        self.endpoint_url = endpoint_url or cfg.endpoint_url
        self._client = client

    @property
    def client(self):
        """Lazy-initialize boto3 S3 client."""
        if self._client is None:
            client_kwargs: Dict[str, Any] = {
                "service_name": "s3",
                "region_name": self.region,
            }
            if self.access_key and self.secret_key:
                client_kwargs["aws_access_key_id"] = self.access_key
                client_kwargs["aws_secret_access_key"] = self.secret_key
            if self.endpoint_url:
                client_kwargs["endpoint_url"] = self.endpoint_url

            self._client = boto3.client(**client_kwargs)
            logger.debug(
                "Initialized S3 client: region=%s, endpoint=%s",
                self.region, self.endpoint_url or "default",
            )
        return self._client

    def _bucket(self, bucket: Optional[str]) -> str:
        resolved = bucket or self.default_bucket
        if not resolved:
            raise StorageManagerError("No bucket supplied and S3_BUCKET_NAME not configured")
        return resolved

    def get(self, bucket: Optional[str], key: str) -> bytes:
        """Download an object's full body."""
        bucket = self._bucket(bucket)
        try:
            response = self.client.get_object(Bucket=bucket, Key=key)
            return response["Body"].read()
        except (ClientError, BotoCoreError) as e:
            raise _wrap(e, "get", bucket, key) from e

    def get_head(self, bucket: Optional[str], key: str, length: int = 512) -> bytes:
        """Download the first `length` bytes of an object (for magic-byte sniffing)."""
        bucket = self._bucket(bucket)
        try:
            response = self.client.get_object(
                Bucket=bucket, Key=key, Range=f"bytes=0-{max(0, length - 1)}"
            )
            return response["Body"].read()
        except (ClientError, BotoCoreError) as e:
            raise _wrap(e, "get", bucket, key) from e

    def head(self, bucket: Optional[str], key: str) -> Dict[str, Any]:
        """Return size/content type of an object."""
        bucket = self._bucket(bucket)
        try:
            response = self.client.head_object(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise _wrap(e, "head", bucket, key) from e
        return {
            "size": response.get("ContentLength"),
            "content_type": response.get("ContentType"),
            "etag": (response.get("ETag") or "").strip('"') or None,
        }

    def put(
        self,
        bucket: Optional[str],
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> None:
        """Upload bytes with an explicit Content-Type."""
        bucket = self._bucket(bucket)
        try:
            self.client.put_object(Bucket=bucket, Key=key, Body=data, ContentType=content_type)
            logger.debug("Uploaded %d bytes to s3://%s/%s", len(data), bucket, key)
        except (ClientError, BotoCoreError) as e:
            raise _wrap(e, "put", bucket, key) from e

    def copy(self, bucket: Optional[str], source_key: str, dest_key: str) -> None:
        """Server-side copy within one bucket."""
        bucket = self._bucket(bucket)
        try:
            self.client.copy_object(
                Bucket=bucket,
                Key=dest_key,
                CopySource={"Bucket": bucket, "Key": source_key},
            )
            logger.debug("Copied s3://%s/%s -> %s", bucket, source_key, dest_key)
        except (ClientError, BotoCoreError) as e:
            raise _wrap(e, "copy", bucket, source_key) from e

    def delete(self, bucket: Optional[str], key: str) -> None:
        bucket = self._bucket(bucket)
        try:
            self.client.delete_object(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise _wrap(e, "delete", bucket, key) from e

    def exists(self, bucket: Optional[str], key: str) -> bool:
        """
        Check if an object exists.

        Returns:
            True if the object exists, False on 404
        """
        bucket = self._bucket(bucket)
        try:
            self.client.head_object(Bucket=bucket, Key=key)
            return True
        except ClientError as e:
            if _client_error_code(e) in NOT_FOUND_CODES:
                return False
            raise _wrap(e, "head", bucket, key) from e
        except BotoCoreError as e:
            raise _wrap(e, "head", bucket, key) from e


# ---------------------------------------------------------------------------
# Convenience functions
# ---------------------------------------------------------------------------

_default_manager: Optional[StorageManager] = None


def get_storage_manager() -> StorageManager:
    """Get or create the default StorageManager instance."""
    global _default_manager
    if _default_manager is None:
        _default_manager = StorageManager()
    return _default_manager


__all__ = [
    "StorageManager",
    "StorageManagerError",
    "ObjectNotFoundError",
    "get_storage_manager",
]
