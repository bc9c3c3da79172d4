"""
Storage Repair Scanner

Reconciles what the naming conventions expect with what actually exists
in storage. Safe to run repeatedly: a second run over repaired storage
changes nothing.

Three classes of drift are fixed:
    (a) objects with a video extension whose bytes are an image (typically
        an SVG placeholder saved as "clip.mov"): renamed to the extension
        matching their content by read + write + verify + delete-old
    (b) thumbnails that live only at non-canonical keys (legacy root,
        poster or "thumb-" names): copied to every canonical key that is
        missing. Existing canonical objects are never overwritten.
    (c) videos with no thumbnail under any naming convention: the thumbnail
        pipeline is run on the stored video bytes (a frame, or the SVG
        placeholder when extraction fails)

A rename whose target already exists with different bytes is a conflict:
it is counted as an error and both objects are left untouched.

Every write to an asset happens under the process-wide asset lock shared
with uploads and regeneration.

Usage:
    scanner = RepairScanner(get_blob_store())
    stats = await scanner.scan()
"""
import asyncio
import logging
import posixpath
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from thumbkeeper.core.config import settings
from thumbkeeper.core.metrics import record_repair_action, record_repair_scan
from thumbkeeper.services.blob_store import (
    BlobNotFoundError,
    BlobStore,
    BlobStoreError,
    get_repair_stores,
)
from thumbkeeper.services.fallback_thumbnail import is_fallback_content
from thumbkeeper.services.key_resolver import (
    AssetNotFoundError,
    KeyResolver,
    StorageUnavailableError,
    get_key_resolver,
)
from thumbkeeper.services.thumbnail_pipeline import ThumbnailPipeline, ThumbnailStorageError, asset_lock
from thumbkeeper.utils.content_types import (
    content_type_for,
    is_image_key,
    is_video_key,
    sniff_image_extension,
)

logger = logging.getLogger(__name__)


class RepairInProgressError(Exception):
    """A repair scan is already running in this process."""
    pass


@dataclass
class RepairStats:
    """Counts reported by a scan."""

    checked: int = 0
    fixed: int = 0
    skipped: int = 0
    errors: int = 0
    cancelled: bool = False
    dry_run: bool = False
    missing_thumbnails: List[str] = field(default_factory=list)
    fallback_thumbnails: List[str] = field(default_factory=list)

    def merge(self, other: "RepairStats") -> None:
        self.checked += other.checked
        self.fixed += other.fixed
        self.skipped += other.skipped
        self.errors += other.errors
        self.cancelled = self.cancelled or other.cancelled
        self.missing_thumbnails.extend(other.missing_thumbnails)
        self.fallback_thumbnails.extend(other.fallback_thumbnails)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "fixed": self.fixed,
            "skipped": self.skipped,
            "errors": self.errors,
            "cancelled": self.cancelled,
            "dry_run": self.dry_run,
            "missing_thumbnails": list(self.missing_thumbnails),
            "fallback_thumbnails": list(self.fallback_thumbnails),
        }


class RepairScanner:
    """
    Walks storage roots of one blob store and repairs naming drift.

    Assets are processed concurrently up to `workers`. Keys are grouped by
    logical asset so one worker owns every key of an asset, and that worker
    holds the shared asset lock while it writes.
    """

    def __init__(
        self,
        store: BlobStore,
        resolver: Optional[KeyResolver] = None,
        workers: Optional[int] = None,
        write_legacy_variants: Optional[bool] = None,
        pipeline: Optional[ThumbnailPipeline] = None,
    ):
        self.store = store
        self.resolver = resolver or get_key_resolver()
        self.workers = workers or settings.REPAIR_WORKERS
        self.write_legacy_variants = (
            write_legacy_variants if write_legacy_variants is not None
            else settings.WRITE_LEGACY_THUMBNAIL_VARIANTS
        )
        self._pipeline = pipeline

    @property
    def pipeline(self) -> ThumbnailPipeline:
        """Pipeline writing regenerated thumbnails into this scanner's store."""
        if self._pipeline is None:
            self._pipeline = ThumbnailPipeline(
                store=self.store,
                resolver=self.resolver,
                write_legacy_variants=self.write_legacy_variants,
            )
        return self._pipeline

    def default_roots(self) -> List[str]:
        """Primary root plus the most recent earlier root."""
        roots = [self.resolver.primary_root]
        legacy = [root for root in self.resolver.legacy_roots if root]
        if legacy:
            roots.append(legacy[0])
        return roots

    async def _list_keys(self, roots: List[str]) -> List[str]:
        keys = set()
        for root in roots:
            keys.update(await self.store.list(root))
        return sorted(keys)

    def _group_by_asset(self, keys: List[str]) -> Dict[str, List[str]]:
        groups: Dict[str, List[str]] = {}
        for key in keys:
            groups.setdefault(self.resolver.asset_id(key), []).append(key)
        return groups

    async def scan(
        self,
        roots: Optional[List[str]] = None,
        cancel_event: Optional[asyncio.Event] = None,
        dry_run: bool = False,
    ) -> RepairStats:
        """
        Scan roots and repair what can be repaired.

        Args:
            roots: Key prefixes to walk (defaults to primary + legacy root)
            cancel_event: When set, no further assets are started
            dry_run: Count what would change without writing

        Returns:
            RepairStats with checked/fixed/skipped/errors counts
        """
        roots = roots or self.default_roots()
        start = time.monotonic()
        stats = RepairStats(dry_run=dry_run)

        logger.info(
            f"Repair scan started on {self.store.name} store",
            extra={
                "event_type": "repair_scan_started",
                "store": self.store.name,
                "roots": roots,
                "dry_run": dry_run,
            }
        )

        try:
            keys = await self._list_keys(roots)
        except BlobStoreError as e:
            logger.error(
                f"Repair scan could not list {roots}: {e}",
                extra={"event_type": "repair_scan_list_failed", "store": self.store.name},
                exc_info=True,
            )
            stats.errors += 1
            return stats

        groups = self._group_by_asset(keys)
        semaphore = asyncio.Semaphore(self.workers)

        async def worker(asset_id: str, asset_keys: List[str]) -> RepairStats:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    return RepairStats(cancelled=True)
                async with asset_lock(asset_id):
                    return await self._repair_asset(asset_id, asset_keys, dry_run)

        results = await asyncio.gather(
            *(worker(asset_id, asset_keys) for asset_id, asset_keys in groups.items())
        )
        for result in results:
            stats.merge(result)

        duration = time.monotonic() - start
        record_repair_scan(duration)
        logger.info(
            f"Repair scan finished on {self.store.name} store: "
            f"{stats.checked} checked, {stats.fixed} fixed, {stats.skipped} skipped, {stats.errors} errors",
            extra={
                "event_type": "repair_scan_completed",
                "store": self.store.name,
                "duration_ms": round(duration * 1000),
                **stats.to_dict(),
            }
        )
        return stats

    async def _repair_asset(self, asset_id: str, keys: List[str], dry_run: bool) -> RepairStats:
        stats = RepairStats(dry_run=dry_run)

        for key in keys:
            stats.checked += 1
            try:
                if is_video_key(key):
                    outcome = await self._check_video_key(key, stats, dry_run)
                elif is_image_key(key) and self.resolver.is_derived_image(key):
                    outcome = await self._copy_to_canonical(key, None, dry_run)
                else:
                    outcome = "skipped"
            except BlobNotFoundError:
                # Deleted since listing
                outcome = "skipped"
            except (BlobStoreError, ThumbnailStorageError, OSError, ValueError) as e:
                logger.error(
                    f"Repair failed for {key}: {e}",
                    extra={"event_type": "repair_key_failed", "key": key, "asset_id": asset_id},
                    exc_info=True,
                )
                outcome = "error"

            if outcome == "fixed":
                stats.fixed += 1
            elif outcome == "skipped":
                stats.skipped += 1
            else:
                stats.errors += 1
            record_repair_action({"fixed": "repaired", "skipped": "skipped"}.get(outcome, outcome))

        return stats

    async def _check_video_key(self, key: str, stats: RepairStats, dry_run: bool) -> str:
        data = await self.store.get(key)
        image_ext = sniff_image_extension(data)

        if image_ext is None:
            return await self._ensure_thumbnail(key, data, stats, dry_run)

        target = posixpath.splitext(key)[0] + image_ext
        outcome = await self._rename(key, target, data, dry_run)

        if outcome == "fixed" and self.resolver.is_derived_image(target):
            await self._copy_to_canonical(target, data, dry_run)
        return outcome

    async def _rename(self, key: str, target: str, data: bytes, dry_run: bool) -> str:
        """
        Move `data` from key to target.

        Returns:
            "fixed", or "conflict" when target holds different bytes
        """
        try:
            existing: Optional[bytes] = await self.store.get(target)
        except BlobNotFoundError:
            existing = None

        if existing is not None and existing != data:
            logger.warning(
                f"Rename target {target} already exists with different content, leaving {key} untouched",
                extra={"event_type": "repair_conflict", "key": key, "target": target},
            )
            return "conflict"

        if dry_run:
            logger.info(
                f"Would rename {key} -> {target}",
                extra={"event_type": "repair_rename_planned", "key": key, "target": target},
            )
            return "fixed"

        if existing is None:
            await self.store.put(target, data, content_type_for(target))
            written = await self.store.get(target)
            if written != data:
                raise BlobStoreError(f"Verification failed after writing {target}")

        await self.store.delete(key)
        logger.info(
            f"Renamed {key} -> {target}",
            extra={
                "event_type": "repair_renamed",
                "key": key,
                "target": target,
                "size_bytes": len(data),
            }
        )
        return "fixed"

    async def _copy_to_canonical(self, key: str, data: Optional[bytes], dry_run: bool) -> str:
        ext = posixpath.splitext(key)[1].lower()
        keys_by_role = self.resolver.thumbnail_keys(key, ext, include_legacy=self.write_legacy_variants)
        targets = [
            target
            for role_keys in keys_by_role.values()
            for target in role_keys
            if target != key
        ]

        copied = []
        for target in targets:
            if await self.store.exists(target):
                continue

            if data is None:
                data = await self.store.get(key)
            if not dry_run:
                await self.store.put(target, data, content_type_for(target))
            copied.append(target)

        if not copied:
            return "skipped"

        logger.info(
            f"{'Would copy' if dry_run else 'Copied'} {key} to {len(copied)} canonical key(s)",
            extra={
                "event_type": "repair_copied",
                "key": key,
                "targets": copied,
                "dry_run": dry_run,
            }
        )
        return "fixed"

    async def _ensure_thumbnail(self, key: str, data: bytes, stats: RepairStats, dry_run: bool) -> str:
        """
        Regenerate the thumbnail of a video that has none.

        A video whose thumbnail is still the placeholder is reported in
        `fallback_thumbnails` and not regenerated.
        """
        if self.resolver.is_derived_image(key):
            return "skipped"

        try:
            _thumb_key, thumbnail = await self.resolver.resolve_thumbnail(key, self.store.get)
        except AssetNotFoundError:
            pass
        except StorageUnavailableError as e:
            logger.warning(
                f"Could not check thumbnail for {key}: {e}",
                extra={"event_type": "repair_thumbnail_check_failed", "key": key},
            )
            return "error"
        else:
            if is_fallback_content(thumbnail):
                stats.fallback_thumbnails.append(key)
            return "skipped"

        stats.missing_thumbnails.append(key)
        if dry_run:
            logger.info(
                f"Would regenerate thumbnail for {key}",
                extra={"event_type": "repair_regenerate_planned", "key": key},
            )
            return "fixed"

        result = await self.pipeline.process_stored(key, data)
        logger.info(
            f"Regenerated thumbnail for {key}",
            extra={
                "event_type": "repair_regenerated",
                "key": key,
                "is_fallback": result.is_fallback,
                "keys": result.keys,
            }
        )
        return "fixed"


# Process-wide scan coordination
_scan_lock: Optional[asyncio.Lock] = None
_cancel_event: Optional[asyncio.Event] = None
_last_stats: Optional[RepairStats] = None


async def run_repair_scan(
    roots: Optional[List[str]] = None,
    dry_run: bool = False,
    stores: Optional[List[BlobStore]] = None,
) -> RepairStats:
    """
    Scan every repair store (remote store plus optional local mirror).

    Raises:
        RepairInProgressError: Another scan is running
    """
    global _scan_lock, _cancel_event, _last_stats

    if _scan_lock is None:
        _scan_lock = asyncio.Lock()
    if _scan_lock.locked():
        raise RepairInProgressError("A repair scan is already running")

    async with _scan_lock:
        _cancel_event = asyncio.Event()
        stats = RepairStats(dry_run=dry_run)
        try:
            for store in stores or get_repair_stores():
                if _cancel_event.is_set():
                    stats.cancelled = True
                    break
                scanner = RepairScanner(store)
                stats.merge(await scanner.scan(roots=roots, cancel_event=_cancel_event, dry_run=dry_run))
        finally:
            _cancel_event = None

        _last_stats = stats
        return stats


def cancel_repair_scan() -> bool:
    """
    Ask the running scan to stop after the assets already in progress.

    Returns:
        True if a scan was running
    """
    if _cancel_event is None:
        return False
    _cancel_event.set()
    logger.info("Repair scan cancellation requested", extra={"event_type": "repair_scan_cancel"})
    return True


def is_repair_running() -> bool:
    return _scan_lock is not None and _scan_lock.locked()


def get_last_repair_stats() -> Optional[RepairStats]:
    return _last_stats


def reset_repair_state() -> None:
    """Reset scan coordination state (for testing)."""
    global _scan_lock, _cancel_event, _last_stats
    _scan_lock = None
    _cancel_event = None
    _last_stats = None
