"""
S3 Artifact Store

Key layout:
    s3://<BUCKET>/<prefix>/<destination>/<UTC timestamp µs>-<uuid4 hex><ext>

The key is generated server-side and is independent of the uploaded file's
name (only the extension is kept), so two files with identical names in one
batch, or in two concurrent batches, can never overwrite each other.
The original filename travels as URL-encoded S3 object metadata.

Failure contract:
    put() raises StoreError for any upload failure. The coordinator then
    marks the unit failed and never calls the metadata persister for it.

list_objects()/delete() exist for the orphaned-artifact reconciliation sweep.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from urllib.parse import quote

import aioboto3

from docbatch.core.exceptions import StoreError

logger = logging.getLogger(__name__)

_SAFE_SEGMENT_RE = re.compile(r"[^a-zA-Z0-9._\-]")
_SAFE_EXT_RE     = re.compile(r"^\.[a-z0-9]{1,8}$")


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StoredObject:
    """One listed object, as returned by list_objects()."""
    key:           str
    size_bytes:    int
    last_modified: datetime


def _safe_segment(value: str) -> str:
    """Make an opaque identifier usable as a single key segment."""
    cleaned = _SAFE_SEGMENT_RE.sub("_", value.strip()).strip("._")
    return cleaned[:128] or "unassigned"


def _extension(suggested_name: str) -> str:
    parts = suggested_name.rsplit(".", 1)
    ext = f".{parts[-1].lower()}" if len(parts) == 2 else ""
    return ext if _SAFE_EXT_RE.match(ext) else ""


# ---------------------------------------------------------------------------
# S3 Artifact Store
# ---------------------------------------------------------------------------

class S3ArtifactStore:
    """
    Async S3 operations for batch artifacts.

    aioboto3 clients are not shared between coroutines; every call opens
    its own client from the session, so concurrent uploads are safe.
    """

    def __init__(
        self,
        bucket:       str,
        key_prefix:   str = "documents",
        region:       str = "ap-northeast-2",
        endpoint_url: str = "",
        session:      aioboto3.Session | None = None,
    ) -> None:
        self._bucket       = bucket
        self._prefix       = key_prefix.strip("/")
        self._region       = region
        self._endpoint_url = endpoint_url or None
        self._session      = session or aioboto3.Session()

    @property
    def bucket(self) -> str:
        return self._bucket

    @property
    def prefix(self) -> str:
        return self._prefix

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client(
            "s3",
            region_name=self._region,
            endpoint_url=self._endpoint_url,
        )

    def build_key(self, suggested_name: str, destination: str) -> str:
        """
        Collision-resistant key: submission time (µs) plus a random UUID.
        suggested_name contributes only its extension.
        """
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        return (
            f"{self._prefix}/{_safe_segment(destination)}/"
            f"{stamp}-{uuid.uuid4().hex}{_extension(suggested_name)}"
        )

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def put(
        self,
        data:           bytes,
        suggested_name: str,
        *,
        destination:    str,
        content_type:   str,
        metadata:       dict[str, str] | None = None,
    ) -> str:
        """
        Upload one artifact and return its storage key.

        Raises:
            StoreError: on any S3 / transport failure.
        """
        key = self.build_key(suggested_name, destination)

        try:
            async with self._client() as s3:
                await s3.put_object(
                    Bucket=self._bucket,
                    Key=key,
                    Body=data,
                    ContentType=content_type,
                    Metadata={
                        # S3 metadata must be ASCII; non-Latin filenames are URL-encoded
                        "original-name": quote(suggested_name, safe=""),
                        "destination":   quote(destination, safe=""),
                        **(metadata or {}),
                    },
                )
        except Exception as exc:
            logger.error(
                "S3 upload failed | bucket=%s key=%s file=%s error=%s",
                self._bucket, key, suggested_name, exc,
            )
            raise StoreError(f"Upload of '{suggested_name}' failed: {exc}") from exc

        logger.info(
            "S3 upload ok | bucket=%s key=%s size=%d",
            self._bucket, key, len(data),
        )
        return key

    async def list_objects(self, prefix: str | None = None) -> list[StoredObject]:
        """List every object under the given prefix (paginated)."""
        listing_prefix = f"{(prefix or self._prefix).strip('/')}/"
        objects: list[StoredObject] = []

        async with self._client() as s3:
            paginator = s3.get_paginator("list_objects_v2")
            async for page in paginator.paginate(Bucket=self._bucket, Prefix=listing_prefix):
                for entry in page.get("Contents", []):
                    objects.append(StoredObject(
                        key=entry["Key"],
                        size_bytes=entry.get("Size", 0),
                        last_modified=entry["LastModified"],
                    ))

        return objects

    async def delete(self, key: str) -> None:
        """Permanently remove one object."""
        async with self._client() as s3:
            await s3.delete_object(Bucket=self._bucket, Key=key)
        logger.warning("S3 hard delete | bucket=%s key=%s", self._bucket, key)


def build_artifact_store() -> S3ArtifactStore:
    from docbatch.core.config import settings

    return S3ArtifactStore(
        bucket=settings.s3_bucket,
        key_prefix=settings.s3_key_prefix,
        region=settings.aws_region,
        endpoint_url=settings.s3_endpoint_url,
    )
