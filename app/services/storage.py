"""Blob storage for uploaded referral documents (Google Cloud Storage).

The google-cloud-storage client is synchronous; calls run via asyncio.to_thread.
"""
import asyncio
import logging
import re
from abc import ABC, abstractmethod
from datetime import timedelta

from google.cloud import storage

logger = logging.getLogger(__name__)


def document_key(referral_id, document_id, filename: str) -> str:
    """Object key for an uploaded document: referrals/<referral>/<document>/<safe filename>."""
    safe = re.sub(r"[^A-Za-z0-9._-]+", "_", filename or "document").strip("._") or "document"
    return f"referrals/{referral_id}/{document_id}/{safe}"


class BlobStorage(ABC):
    """put / get / presigned_get over (bucket, key)."""

    @abstractmethod
    async def put(self, bucket: str, key: str, data: bytes, content_type: str | None = None) -> str:
        """Store bytes; returns a locator (gs://bucket/key)."""

    @abstractmethod
    async def get(self, bucket: str, key: str) -> bytes:
        """Fetch stored bytes."""

    @abstractmethod
    async def presigned_get(self, bucket: str, key: str, ttl_seconds: int = 3600) -> str:
        """Time-limited download URL."""


class GCSStorage(BlobStorage):
    def __init__(self, client: storage.Client | None = None):
        self._client = client

    @property
    def client(self) -> storage.Client:
        # Created lazily so importing the API without credentials works
        if self._client is None:
            self._client = storage.Client()
        return self._client

    def _blob(self, bucket: str, key: str):
        return self.client.bucket(bucket).blob(key)

    async def put(self, bucket: str, key: str, data: bytes, content_type: str | None = None) -> str:
        blob = self._blob(bucket, key)
        await asyncio.to_thread(blob.upload_from_string, data, content_type=content_type)
        logger.info("[storage] Uploaded %s bytes to gs://%s/%s", len(data), bucket, key)
        return f"gs://{bucket}/{key}"

    async def get(self, bucket: str, key: str) -> bytes:
        blob = self._blob(bucket, key)
        return await asyncio.to_thread(blob.download_as_bytes)

    async def presigned_get(self, bucket: str, key: str, ttl_seconds: int = 3600) -> str:
        blob = self._blob(bucket, key)
        return await asyncio.to_thread(
            blob.generate_signed_url,
            version="v4",
            expiration=timedelta(seconds=ttl_seconds),
            method="GET",
        )
