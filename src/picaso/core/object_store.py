"""Durable object store backends for generated artwork.

Two backends implement the :class:`ObjectStore` protocol:

- :class:`LocalObjectStore` writes files below a directory that the API
  serves as static content.  Custom metadata is written to a ``.json``
  sidecar next to the image.
- :class:`S3ObjectStore` writes to an S3-compatible bucket (AWS S3,
  Cloudflare R2) through boto3.

Both translate backend failures into the store error classes in
:mod:`picaso.core.errors`.  Only :class:`~picaso.core.errors.StoreUnavailable`
is recoverable; quota and authorization failures abort the persistence chain
because no fallback strategy can work around them.
"""

from __future__ import annotations

import asyncio
import errno
import json
import logging
from pathlib import Path
from typing import Any, Protocol

from botocore.exceptions import BotoCoreError, ClientError

from picaso.core.errors import StoreQuotaExceeded, StoreUnauthorized, StoreUnavailable

logger = logging.getLogger(__name__)

_UNAUTHORIZED_CODES = {
    "AccessDenied",
    "AllAccessDisabled",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "ExpiredToken",
    "Unauthorized",
}
_QUOTA_CODES = {"QuotaExceeded", "EntityTooLarge", "ServiceQuotaExceededException"}
_NO_SPACE_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}


class ObjectStore(Protocol):
    """Write-only view of a durable object store."""

    async def write(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: dict[str, str],
    ) -> str:
        """Store ``data`` under ``key`` and return its public URL."""
        ...


class LocalObjectStore:
    """Object store backed by a local directory.

    Args:
        root_dir: Directory that object keys are resolved against.
        public_base_url: URL prefix the directory is served under.
    """

    def __init__(self, root_dir: Path, public_base_url: str) -> None:
        self.root_dir = Path(root_dir)
        self.public_base_url = public_base_url.rstrip("/")

    def _resolve(self, key: str) -> Path:
        path = (self.root_dir / key).resolve()
        root = self.root_dir.resolve()
        if root not in path.parents:
            raise StoreUnauthorized(f"Key escapes store root: {key}")
        return path

    def _write_sync(self, key: str, data: bytes, metadata: dict[str, str]) -> None:
        path = self._resolve(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
            with open(path.with_name(path.name + ".json"), "w", encoding="utf-8") as handle:
                json.dump(metadata, handle, indent=2, ensure_ascii=False)
        except PermissionError as e:
            raise StoreUnauthorized(f"Permission denied writing {key}") from e
        except OSError as e:
            if e.errno in _NO_SPACE_ERRNOS:
                raise StoreQuotaExceeded(f"No space left writing {key}") from e
            raise StoreUnavailable(f"Failed writing {key}: {e}") from e

    async def write(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: dict[str, str],
    ) -> str:
        await asyncio.to_thread(
            self._write_sync, key, data, {**metadata, "content_type": content_type}
        )
        logger.info(f"Stored {len(data)} bytes at {key}")
        return f"{self.public_base_url}/{key}"


class S3ObjectStore:
    """Object store backed by an S3-compatible bucket.

    Args:
        client: A boto3 S3 client.
        bucket: Target bucket name.
        public_base_url: Public URL prefix for objects in the bucket.
    """

    def __init__(self, client: Any, bucket: str, public_base_url: str) -> None:
        self._client = client
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")

    @classmethod
    def from_settings(
        cls,
        *,
        bucket: str,
        public_base_url: str,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
    ) -> "S3ObjectStore":
        """Create a store with a fresh boto3 client."""
        import boto3

        client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
        )
        return cls(client, bucket, public_base_url)

    async def write(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: dict[str, str],
    ) -> str:
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata=metadata,
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in _UNAUTHORIZED_CODES:
                raise StoreUnauthorized(f"Store rejected credentials ({code})") from e
            if code in _QUOTA_CODES:
                raise StoreQuotaExceeded(f"Store quota exceeded ({code})") from e
            raise StoreUnavailable(f"Store write failed ({code or 'unknown'})") from e
        except BotoCoreError as e:
            raise StoreUnavailable(f"Store unreachable: {e}") from e

        logger.info(f"Uploaded {len(data)} bytes to s3://{self.bucket}/{key}")
        return f"{self.public_base_url}/{key}"
