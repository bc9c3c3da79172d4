"""
Blob Store Client

Thin async facade over the object store that holds uploaded videos and
their thumbnails. Keys use "/" as a conventional separator; there is no
native rename, callers do read + write + delete.

Two backends:
- LocalBlobStore: filesystem tree under LOCAL_STORAGE_ROOT (dev, tests,
  and the local uploads mirror covered by repair scans)
- S3BlobStore: any S3-compatible endpoint via boto3

Blocking I/O runs in a worker thread with asyncio.to_thread so the
event loop stays responsive.
"""
import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import List, Optional

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from thumbkeeper.core.config import settings

logger = logging.getLogger(__name__)


class BlobNotFoundError(Exception):
    """The requested key does not exist. A definitive answer, not a failure."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Blob not found: {key}")


class BlobStoreError(Exception):
    """Transient or systemic failure talking to the blob store."""
    pass


def normalize_key(key: str) -> str:
    """
    Normalize a storage key.

    Strips leading/trailing separators and collapses empty segments.
    Rejects parent-directory segments.

    Raises:
        ValueError: If the key is empty or contains '..'
    """
    parts = [part for part in key.replace("\\", "/").split("/") if part and part != "."]
    if not parts:
        raise ValueError("Storage key must not be empty")
    if any(part == ".." for part in parts):
        raise ValueError(f"Storage key must not contain '..': {key!r}")
    return "/".join(parts)


class BlobStore(ABC):
    """Abstract blob store boundary."""

    name: str = "blob"

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str) -> None:
        """Store bytes under key, overwriting any existing object."""

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """
        Fetch bytes for key.

        Raises:
            BlobNotFoundError: Key does not exist
            BlobStoreError: Store unreachable or errored
        """

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete key. Deleting a missing key is not an error."""

    @abstractmethod
    async def list(self, prefix: str) -> List[str]:
        """List every key under prefix, sorted."""

    async def exists(self, key: str) -> bool:
        try:
            await self.get(key)
            return True
        except BlobNotFoundError:
            return False


class LocalBlobStore(BlobStore):
    """Filesystem-backed blob store."""

    name = "local"

    def __init__(self, root: Optional[str] = None):
        self.root = os.path.abspath(root or settings.LOCAL_STORAGE_ROOT)
        os.makedirs(self.root, exist_ok=True)

    def _path(self, key: str) -> str:
        return os.path.join(self.root, *normalize_key(key).split("/"))

    def _put_sync(self, key: str, data: bytes) -> None:
        path = self._path(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp_path = f"{path}.tmp-{os.getpid()}"
        with open(tmp_path, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)

    def _get_sync(self, key: str) -> bytes:
        path = self._path(key)
        if not os.path.isfile(path):
            raise BlobNotFoundError(key)
        with open(path, "rb") as f:
            return f.read()

    def _delete_sync(self, key: str) -> None:
        path = self._path(key)
        if os.path.isfile(path):
            os.remove(path)

    def _list_sync(self, prefix: str) -> List[str]:
        prefix = prefix.strip("/")
        base = os.path.join(self.root, *prefix.split("/")) if prefix else self.root
        if not os.path.isdir(base):
            return []

        keys = []
        for dirpath, _dirnames, filenames in os.walk(base):
            for filename in filenames:
                if ".tmp-" in filename:
                    continue
                full = os.path.join(dirpath, filename)
                keys.append(os.path.relpath(full, self.root).replace(os.sep, "/"))
        return sorted(keys)

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        try:
            await asyncio.to_thread(self._put_sync, key, data)
        except OSError as e:
            raise BlobStoreError(f"Failed to write {key}: {e}") from e

    async def get(self, key: str) -> bytes:
        try:
            return await asyncio.to_thread(self._get_sync, key)
        except BlobNotFoundError:
            raise
        except OSError as e:
            raise BlobStoreError(f"Failed to read {key}: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._delete_sync, key)
        except OSError as e:
            raise BlobStoreError(f"Failed to delete {key}: {e}") from e

    async def list(self, prefix: str) -> List[str]:
        try:
            return await asyncio.to_thread(self._list_sync, prefix)
        except OSError as e:
            raise BlobStoreError(f"Failed to list {prefix}: {e}") from e


class S3BlobStore(BlobStore):
    """S3-compatible blob store."""

    name = "s3"

    _NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}

    def __init__(self, bucket: Optional[str] = None, client=None):
        self.bucket = bucket or settings.S3_BUCKET
        if not self.bucket:
            raise ValueError("S3_BUCKET must be set for the s3 storage backend")

        if client is None:
            session = boto3.session.Session(
                aws_access_key_id=settings.S3_ACCESS_KEY,
                aws_secret_access_key=settings.S3_SECRET_KEY,
                region_name=settings.S3_REGION,
            )
            client = session.client(
                "s3",
                endpoint_url=settings.S3_ENDPOINT_URL,
                config=Config(signature_version="s3v4", retries={"max_attempts": 1}),
            )
        self.s3 = client

    def _put_sync(self, key: str, data: bytes, content_type: str) -> None:
        self.s3.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)

    def _get_sync(self, key: str) -> bytes:
        response = self.s3.get_object(Bucket=self.bucket, Key=key)
        return response["Body"].read()

    def _delete_sync(self, key: str) -> None:
        self.s3.delete_object(Bucket=self.bucket, Key=key)

    def _list_sync(self, prefix: str) -> List[str]:
        prefix = prefix.strip("/")
        if prefix:
            prefix += "/"
        paginator = self.s3.get_paginator("list_objects_v2")
        keys = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                keys.append(obj["Key"])
        return sorted(keys)

    @classmethod
    def _is_not_found(cls, error: ClientError) -> bool:
        code = str(error.response.get("Error", {}).get("Code", ""))
        return code in cls._NOT_FOUND_CODES

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        key = normalize_key(key)
        try:
            await asyncio.to_thread(self._put_sync, key, data, content_type)
        except (ClientError, BotoCoreError) as e:
            raise BlobStoreError(f"Failed to write {key}: {e}") from e

    async def get(self, key: str) -> bytes:
        key = normalize_key(key)
        try:
            return await asyncio.to_thread(self._get_sync, key)
        except ClientError as e:
            if self._is_not_found(e):
                raise BlobNotFoundError(key) from e
            raise BlobStoreError(f"Failed to read {key}: {e}") from e
        except BotoCoreError as e:
            raise BlobStoreError(f"Failed to read {key}: {e}") from e

    async def delete(self, key: str) -> None:
        key = normalize_key(key)
        try:
            await asyncio.to_thread(self._delete_sync, key)
        except ClientError as e:
            if self._is_not_found(e):
                return
            raise BlobStoreError(f"Failed to delete {key}: {e}") from e
        except BotoCoreError as e:
            raise BlobStoreError(f"Failed to delete {key}: {e}") from e

    async def list(self, prefix: str) -> List[str]:
        try:
            return await asyncio.to_thread(self._list_sync, prefix)
        except (ClientError, BotoCoreError) as e:
            raise BlobStoreError(f"Failed to list {prefix}: {e}") from e


# Global instance
_blob_store: Optional[BlobStore] = None


def get_blob_store() -> BlobStore:
    """
    Get the global blob store instance for the configured backend.

    Returns:
        BlobStore singleton
    """
    global _blob_store
    if _blob_store is None:
        if settings.STORAGE_BACKEND == "s3":
            _blob_store = S3BlobStore()
        else:
            _blob_store = LocalBlobStore()
        logger.info(
            "Blob store initialized",
            extra={"event_type": "blob_store_init", "backend": _blob_store.name}
        )
    return _blob_store


def reset_blob_store() -> None:
    """Reset the global blob store instance (for testing)."""
    global _blob_store
    _blob_store = None


def get_repair_stores() -> List[BlobStore]:
    """
    Stores covered by repair scans: the configured store plus the local
    uploads mirror when one is configured.
    """
    stores = [get_blob_store()]
    if settings.LOCAL_MIRROR_ROOT:
        stores.append(LocalBlobStore(settings.LOCAL_MIRROR_ROOT))
    return stores
