"""
Blob Storage — content-addressed S3 objects

Every uploaded file is stored exactly once under

    s3://<BUCKET>/documents/<sha256>/<sanitized-filename>

The key is derived server-side from the content digest (dms.core.addressing),
never accepted from the client, so identical bytes always resolve to the
same prefix and a key can never escape the documents/ partition.

The pipeline only needs three operations (put / get / delete); they are
declared on BlobStore so stages and tests depend on the interface, and
S3BlobStore implements them with aioboto3 (works against AWS, MinIO and
localstack via s3_endpoint_url).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import aioboto3
from botocore.exceptions import ClientError

from dms.core.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StoredBlob:
    """Returned by put(): what was written and where."""
    path:         str
    bucket:       str
    size_bytes:   int
    content_type: str
    etag:         str


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class BlobStore(ABC):
    """Minimal blob contract used by the pipeline."""

    @abstractmethod
    async def put(self, path: str, data: bytes, content_type: str) -> StoredBlob:
        """Write *data* at *path*, overwriting any existing object."""

    @abstractmethod
    async def get(self, path: str) -> bytes:
        """Return the object bytes. Raises FileNotFoundError when absent."""

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Remove the object. Deleting a missing object is not an error."""


# ---------------------------------------------------------------------------
# S3 implementation
# ---------------------------------------------------------------------------

class S3BlobStore(BlobStore):
    """
    Async S3 operations on a single bucket.

    One instance can be shared; each call opens a short-lived client from
    the aioboto3 session.
    """

    def __init__(self, bucket: str | None = None) -> None:
        self._bucket = bucket or settings.s3_bucket
        self._session = aioboto3.Session()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        """Return a scoped async S3 client context manager."""
        kwargs: dict = {"region_name": settings.aws_region}
        if settings.s3_endpoint_url:
            kwargs["endpoint_url"] = settings.s3_endpoint_url
        if settings.aws_access_key_id:
            # Local dev only; prod uses the task role
            kwargs["aws_access_key_id"] = settings.aws_access_key_id
            kwargs["aws_secret_access_key"] = settings.aws_secret_access_key
        return self._session.client("s3", **kwargs)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def put(self, path: str, data: bytes, content_type: str) -> StoredBlob:
        async with self._client() as s3:
            resp = await s3.put_object(
                Bucket=self._bucket,
                Key=path,
                Body=data,
                ContentType=content_type,
            )

        logger.info(
            "S3 upload ok | key=%s size=%d content_type=%s",
            path, len(data), content_type,
        )

        return StoredBlob(
            path=path,
            bucket=self._bucket,
            size_bytes=len(data),
            content_type=content_type,
            etag=resp.get("ETag", "").strip('"'),
        )

    async def get(self, path: str) -> bytes:
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=path)
                return await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404"):
                    raise FileNotFoundError(f"Object not found: {path}") from exc
                raise

    async def delete(self, path: str) -> None:
        async with self._client() as s3:
            await s3.delete_object(Bucket=self._bucket, Key=path)
        logger.info("S3 delete | key=%s", path)
