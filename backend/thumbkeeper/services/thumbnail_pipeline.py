"""
Thumbnail Pipeline

Produces and stores a displayable thumbnail for an uploaded video.

Flow for one asset:
1. If the source file is missing or empty, skip extraction entirely
2. Otherwise try each configured offset in order (optionally dropping
   offsets past the clip end); the first usable frame wins
3. If every offset fails, use the SVG placeholder
4. Write the primary thumbnail key (retried); optionally write the same
   bytes under the poster and legacy-duplicate keys (best effort)

Raster thumbnails are stored under ".jpg" keys, fallbacks under ".svg"
keys, never under the video's own extension.
"""
import asyncio
import io
import logging
import os
import posixpath
import tempfile
import time
import weakref
from typing import Dict, List, Optional, Tuple

from PIL import Image, UnidentifiedImageError

from thumbkeeper.core.config import settings
from thumbkeeper.core.metrics import record_thumbnail_generated
from thumbkeeper.core.retry import RETRY_STORAGE_WRITE, retry_async
from thumbkeeper.models.media import (
    MediaAsset,
    ThumbnailFormat,
    ThumbnailResult,
    ThumbnailRole,
    ThumbnailVariant,
)
from thumbkeeper.services.blob_store import BlobStore, BlobStoreError, get_blob_store
from thumbkeeper.services.fallback_thumbnail import (
    FALLBACK_CONTENT_TYPE,
    FALLBACK_EXTENSION,
    FALLBACK_HEIGHT,
    FALLBACK_WIDTH,
    generate_fallback,
)
from thumbkeeper.services.frame_extractor import FrameExtractor, get_frame_extractor
from thumbkeeper.services.key_resolver import KeyResolver, THUMBNAIL_EXTENSION, get_key_resolver
from thumbkeeper.utils.content_types import content_type_for, is_video_key

logger = logging.getLogger(__name__)

THUMBNAIL_CONTENT_TYPE = "image/jpeg"

# One lock per logical asset, shared by uploads, regeneration and repair
# scans. Entries disappear once no task holds or waits on the lock.
_asset_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def asset_lock(asset_id: str) -> asyncio.Lock:
    """Lock serializing every write to one logical asset's keys."""
    lock = _asset_locks.get(asset_id)
    if lock is None:
        lock = asyncio.Lock()
        _asset_locks[asset_id] = lock
    return lock


class ThumbnailStorageError(Exception):
    """The primary thumbnail key could not be written."""
    pass


class ThumbnailPipeline:
    """
    Drives extraction, fallback and storage for one asset at a time.

    Attributes:
        store: Blob store thumbnails are written to
        extractor: ffmpeg frame extractor
        resolver: Key naming conventions
        offsets: Ordered seek positions in seconds
        write_legacy_variants: Also write poster and legacy-duplicate keys
        probe_duration: Skip offsets past the clip end using ffprobe
    """

    def __init__(
        self,
        store: Optional[BlobStore] = None,
        extractor: Optional[FrameExtractor] = None,
        resolver: Optional[KeyResolver] = None,
        offsets: Optional[List[float]] = None,
        write_legacy_variants: Optional[bool] = None,
        probe_duration: Optional[bool] = None,
    ):
        self.store = store or get_blob_store()
        self.extractor = extractor or get_frame_extractor()
        self.resolver = resolver or get_key_resolver()
        self.offsets = list(offsets) if offsets is not None else settings.extraction_offsets_list
        self.write_legacy_variants = (
            write_legacy_variants if write_legacy_variants is not None
            else settings.WRITE_LEGACY_THUMBNAIL_VARIANTS
        )
        self.probe_duration = (
            probe_duration if probe_duration is not None else settings.EXTRACTION_PROBE_DURATION
        )

    async def plan_offsets(self, source_path: str) -> List[float]:
        """
        Offsets to try for a source file.

        With duration probing enabled, offsets at or past the clip end are
        dropped. A failed probe keeps the full list; a clip shorter than
        every offset gets a single attempt at 0.
        """
        if not self.probe_duration:
            return list(self.offsets)

        duration = await self.extractor.probe_duration(source_path)
        if duration is None:
            return list(self.offsets)

        usable = [offset for offset in self.offsets if offset < duration]
        if not usable:
            usable = [0.0]

        if len(usable) != len(self.offsets):
            logger.debug(
                f"Clip is {duration:.2f}s long, trying {len(usable)} of {len(self.offsets)} offsets",
                extra={
                    "event_type": "extraction_offsets_trimmed",
                    "source_path": source_path,
                    "duration_seconds": duration,
                    "offsets": usable,
                }
            )
        return usable

    async def extract_frame(self, source_path: str) -> Tuple[Optional[bytes], Optional[float], int]:
        """
        Try offsets strictly in order until one yields a usable frame.

        Returns:
            (frame bytes or None, offset used or None, attempts made)
        """
        offsets = await self.plan_offsets(source_path)
        attempts = 0

        with tempfile.TemporaryDirectory(prefix="thumbkeeper-") as tmp_dir:
            for offset in offsets:
                attempts += 1
                output_path = os.path.join(tmp_dir, f"frame-{attempts}.jpg")
                if await self.extractor.extract(source_path, output_path, offset):
                    with open(output_path, "rb") as f:
                        return f.read(), offset, attempts

        return None, None, attempts

    async def process(self, asset: MediaAsset, source_path: Optional[str]) -> ThumbnailResult:
        """
        Generate and store the thumbnail for an asset.

        Args:
            asset: The uploaded video
            source_path: Local copy of the video (may be missing or empty)

        Returns:
            ThumbnailResult listing every variant and key written

        Raises:
            ThumbnailStorageError: The primary key could not be written
        """
        start = time.monotonic()
        data: Optional[bytes] = None
        offset_used: Optional[float] = None
        attempts = 0

        if not source_path or not os.path.isfile(source_path) or os.path.getsize(source_path) == 0:
            logger.warning(
                f"Source for {asset.source_key} is missing or empty, using fallback thumbnail",
                extra={
                    "event_type": "thumbnail_source_unusable",
                    "source_key": asset.source_key,
                    "source_path": source_path,
                }
            )
        else:
            data, offset_used, attempts = await self.extract_frame(source_path)
            if data is None:
                logger.warning(
                    f"All {attempts} extraction attempts failed for {asset.source_key}, using fallback",
                    extra={
                        "event_type": "thumbnail_extraction_exhausted",
                        "source_key": asset.source_key,
                        "attempts": attempts,
                    }
                )

        is_fallback = data is None
        if is_fallback:
            data = generate_fallback()
            ext = FALLBACK_EXTENSION
            content_type = FALLBACK_CONTENT_TYPE
            thumb_format = ThumbnailFormat.VECTOR
            width, height = FALLBACK_WIDTH, FALLBACK_HEIGHT
        else:
            ext = THUMBNAIL_EXTENSION
            content_type = THUMBNAIL_CONTENT_TYPE
            thumb_format = ThumbnailFormat.RASTER
            width, height = self._dimensions(data)

        keys_by_role = self.resolver.thumbnail_keys(
            asset.source_key, ext, include_legacy=self.write_legacy_variants
        )
        written = await self._write_variants(keys_by_role, data, content_type)

        variants = [
            ThumbnailVariant(
                parent_asset_key=asset.source_key,
                role=role,
                format=thumb_format,
                data=data,
                is_fallback=is_fallback,
                keys=keys,
                width=width,
                height=height,
            )
            for role, keys in written.items()
            if keys
        ]

        record_thumbnail_generated(is_fallback)
        logger.info(
            f"Thumbnail stored for {asset.source_key}",
            extra={
                "event_type": "thumbnail_stored",
                "source_key": asset.source_key,
                "is_fallback": is_fallback,
                "offset_seconds": offset_used,
                "attempts": attempts,
                "keys": [key for keys in written.values() for key in keys],
                "size_bytes": len(data),
                "duration_ms": round((time.monotonic() - start) * 1000),
            }
        )

        return ThumbnailResult(
            asset=asset,
            variants=variants,
            is_fallback=is_fallback,
            offset_used=offset_used,
            attempts=attempts,
        )

    async def _write_variants(
        self,
        keys_by_role: Dict[str, List[str]],
        data: bytes,
        content_type: str,
    ) -> Dict[ThumbnailRole, List[str]]:
        written: Dict[ThumbnailRole, List[str]] = {role: [] for role in ThumbnailRole}

        for key in keys_by_role["primary"]:
            try:
                await retry_async(
                    self.store.put, key, data, content_type,
                    config=RETRY_STORAGE_WRITE,
                    operation_name="put_primary_thumbnail",
                )
            except (BlobStoreError, OSError) as e:
                raise ThumbnailStorageError(f"Failed to store thumbnail {key}: {e}") from e
            written[ThumbnailRole.PRIMARY].append(key)

        for role_name, role in (("poster", ThumbnailRole.POSTER), ("legacy_duplicate", ThumbnailRole.LEGACY_DUPLICATE)):
            for key in keys_by_role.get(role_name, []):
                try:
                    await self.store.put(key, data, content_type)
                except BlobStoreError as e:
                    logger.warning(
                        f"Failed to write {role.value} thumbnail {key}: {e}",
                        extra={
                            "event_type": "thumbnail_variant_write_failed",
                            "key": key,
                            "role": role.value,
                        }
                    )
                    continue
                written[role].append(key)

        return written

    @staticmethod
    def _dimensions(data: bytes) -> Tuple[Optional[int], Optional[int]]:
        try:
            with Image.open(io.BytesIO(data)) as img:
                return img.width, img.height
        except (UnidentifiedImageError, OSError) as e:
            logger.debug(f"Could not read thumbnail dimensions: {e}")
            return None, None

    async def ingest(self, filename: str, source_path: str, content_type: Optional[str] = None) -> ThumbnailResult:
        """
        Store an uploaded video under the current root and thumbnail it.

        Args:
            filename: Client-supplied name (directories are discarded)
            source_path: Local temporary copy of the upload
            content_type: Upload content type, derived from the name when absent

        Returns:
            ThumbnailResult for the stored video
        """
        name = posixpath.basename(filename.replace("\\", "/"))
        if not name or not is_video_key(name):
            raise ValueError(f"Unsupported video file name: {filename!r}")

        source_key = f"{self.resolver.primary_root}/{name}" if self.resolver.primary_root else name
        with open(source_path, "rb") as f:
            video = f.read()

        async with asset_lock(self.resolver.asset_id(source_key)):
            return await self._store_and_process(source_key, video, source_path, content_type)

    async def _store_and_process(
        self,
        source_key: str,
        video: bytes,
        source_path: str,
        content_type: Optional[str],
    ) -> ThumbnailResult:
        try:
            await retry_async(
                self.store.put, source_key, video, content_type or content_type_for(source_key),
                config=RETRY_STORAGE_WRITE,
                operation_name="put_video",
            )
        except (BlobStoreError, OSError) as e:
            raise ThumbnailStorageError(f"Failed to store video {source_key}: {e}") from e

        logger.info(
            f"Video stored: {source_key}",
            extra={"event_type": "video_stored", "source_key": source_key, "size_bytes": len(video)}
        )
        return await self.process(MediaAsset.from_key(source_key, len(video)), source_path)

    async def regenerate(self, ref: str) -> ThumbnailResult:
        """
        Re-run the pipeline for an already stored video.

        Raises:
            AssetNotFoundError: No stored video matches the reference
            StorageUnavailableError: The store failed during lookup
            ThumbnailStorageError: The primary key could not be written
        """
        candidates = [c for c in self.resolver.candidate_keys(ref) if is_video_key(c.key)]
        source_key, video = await self.resolver.probe(ref, candidates, self.store.get)

        logger.info(
            f"Regenerating thumbnail for {source_key}",
            extra={"event_type": "thumbnail_regenerate", "ref": ref, "source_key": source_key}
        )

        async with asset_lock(self.resolver.asset_id(source_key)):
            return await self.process_stored(source_key, video)

    async def process_stored(self, source_key: str, video: bytes) -> ThumbnailResult:
        """Thumbnail a stored video from its bytes. The caller holds the asset lock."""
        ext = posixpath.splitext(source_key)[1]
        with tempfile.TemporaryDirectory(prefix="thumbkeeper-") as tmp_dir:
            source_path = os.path.join(tmp_dir, f"source{ext}")
            with open(source_path, "wb") as f:
                f.write(video)
            return await self.process(MediaAsset.from_key(source_key, len(video)), source_path)


# Global instance
_thumbnail_pipeline: Optional[ThumbnailPipeline] = None


def get_thumbnail_pipeline() -> ThumbnailPipeline:
    """
    Get the global thumbnail pipeline instance.

    Returns:
        ThumbnailPipeline singleton
    """
    global _thumbnail_pipeline
    if _thumbnail_pipeline is None:
        _thumbnail_pipeline = ThumbnailPipeline()
    return _thumbnail_pipeline


def reset_thumbnail_pipeline() -> None:
    """Reset the global thumbnail pipeline instance (for testing)."""
    global _thumbnail_pipeline
    _thumbnail_pipeline = None
