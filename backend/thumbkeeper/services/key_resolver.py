"""
Key Resolver

Stored media has been written under several naming conventions over time:

    shared/uploads/clip.mov                  current root
    uploads/clip.mov, shared/clip.mov, clip.mov   earlier roots
    shared/uploads/thumbnails/clip.jpg       primary thumbnail
    shared/uploads/clip.poster.jpg           poster variant
    shared/uploads/thumbnails/thumb-clip.jpg legacy "thumb-" prefix
    shared/uploads/thumbnails/clip.mov       thumbnail stored under the video's extension

Given a logical reference, the resolver enumerates every plausible key in a
fixed priority order and probes them one by one until one exists.

Candidate tiers (lower first):
    1. canonical key under the current root
    2. same relative key under each earlier root
    3. role variants (thumbnails/ dir, .poster suffix, plain) for image refs
    4. "thumb-" prefix added/removed for image refs
    5. image names derived from a video-extension ref
    6. thumbnails written under the video's own extension (thumbnail
       lookups only, probed after the SVG fallback)
"""
import logging
import posixpath
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from thumbkeeper.core.config import settings
from thumbkeeper.core.logging_config import set_storage_key
from thumbkeeper.core.metrics import record_resolution
from thumbkeeper.models.media import StorageKeyCandidate
from thumbkeeper.services.blob_store import BlobNotFoundError, BlobStoreError, normalize_key
from thumbkeeper.services.circuit_breaker import CircuitOpenError
from thumbkeeper.utils.content_types import IMAGE_EXTENSIONS, VIDEO_EXTENSIONS

logger = logging.getLogger(__name__)

THUMBNAIL_DIR = "thumbnails"
THUMB_PREFIX = "thumb-"
POSTER_SUFFIX = ".poster"
THUMBNAIL_EXTENSION = ".jpg"


class AssetNotFoundError(Exception):
    """Every candidate key was probed and none exists."""

    def __init__(self, ref: str, tried: int = 0):
        self.ref = ref
        self.tried = tried
        super().__init__(f"No stored object for {ref!r} ({tried} candidates tried)")


class StorageUnavailableError(Exception):
    """The blob store could not answer; the asset may or may not exist."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


@dataclass(frozen=True)
class KeyPattern:
    """
    One naming convention.

    `template` is formatted with the fields produced by `_name_parts` plus
    `root`; `applies_to` restricts it to image or video references.
    """

    name: str
    tier: int
    template: str
    applies_to: str = "any"  # any, image, video


KEY_PATTERNS: Tuple[KeyPattern, ...] = (
    KeyPattern("canonical", 1, "{rel}"),
    KeyPattern("legacy_root", 2, "{rel}"),
    KeyPattern("thumbnail_dir", 3, "{dir}thumbnails/{stem}{ext}", "image"),
    KeyPattern("poster", 3, "{dir}{stem}.poster{ext}", "image"),
    KeyPattern("plain", 3, "{dir}{stem}{ext}", "image"),
    KeyPattern("thumb_prefix_toggled", 4, "{rel_dir}{toggled_name}", "image"),
    KeyPattern("thumb_prefix_thumbnail_dir", 4, "{dir}thumbnails/thumb-{stem}{ext}", "image"),
    KeyPattern("video_thumbnail", 5, "{dir}thumbnails/{stem}.jpg", "video"),
    KeyPattern("video_poster", 5, "{dir}{stem}.poster.jpg", "video"),
    KeyPattern("video_plain_image", 5, "{dir}{stem}.jpg", "video"),
    KeyPattern("video_thumb_prefix", 5, "{dir}thumbnails/thumb-{stem}.jpg", "video"),
    KeyPattern("video_fallback", 5, "{dir}thumbnails/{stem}.svg", "video"),
    KeyPattern("video_plain_fallback", 5, "{dir}{stem}.svg", "video"),
)

# Older uploads stored JPEG bytes under the video name inside thumbnails/.
# Only consulted when looking up the thumbnail of a video.
MISNAMED_THUMBNAIL_PATTERNS: Tuple[KeyPattern, ...] = (
    KeyPattern("video_ext_thumbnail", 6, "{dir}thumbnails/{stem}{ext}", "video"),
    KeyPattern("video_ext_thumb_prefix", 6, "{dir}thumbnails/thumb-{stem}{ext}", "video"),
)


def split_thumbnail_name(name: str) -> Tuple[str, str]:
    """
    Split a file name into (stem, extension), dropping role decorations.

    Example:
        >>> split_thumbnail_name("thumb-clip.poster.jpg")
        ('clip', '.jpg')
    """
    base, ext = posixpath.splitext(name)
    if base.startswith(THUMB_PREFIX):
        base = base[len(THUMB_PREFIX):]
    if base.endswith(POSTER_SUFFIX):
        base = base[:-len(POSTER_SUFFIX)]
    return base, ext.lower()


def _join(*parts: str) -> str:
    return "/".join(part.strip("/") for part in parts if part and part.strip("/"))


class KeyResolver:
    """
    Enumerates and probes storage key candidates.

    Attributes:
        primary_root: Root prefix used for new writes
        legacy_roots: Earlier root prefixes, most recent first; "" is the bare key
    """

    def __init__(
        self,
        primary_root: Optional[str] = None,
        legacy_roots: Optional[List[str]] = None,
    ):
        self.primary_root = (primary_root if primary_root is not None else settings.PRIMARY_ROOT).strip("/")
        roots = legacy_roots if legacy_roots is not None else settings.legacy_roots_list
        self.legacy_roots = [root.strip("/") for root in roots if root.strip("/") != self.primary_root]

    @property
    def roots(self) -> List[str]:
        """Every root, current first."""
        return [self.primary_root] + self.legacy_roots

    def relative_key(self, ref: str) -> str:
        """Strip any known root prefix from a reference."""
        key = normalize_key(ref)
        prefixes = sorted((root for root in self.roots if root), key=len, reverse=True)
        for prefix in prefixes:
            if key.startswith(prefix + "/"):
                return key[len(prefix) + 1:]
        return key

    def _name_parts(self, rel: str) -> Dict[str, str]:
        rel_dir, name = posixpath.split(rel)
        rel_dir = f"{rel_dir}/" if rel_dir else ""

        asset_dir = rel_dir
        if asset_dir == f"{THUMBNAIL_DIR}/":
            asset_dir = ""
        elif asset_dir.endswith(f"/{THUMBNAIL_DIR}/"):
            asset_dir = asset_dir[:-len(THUMBNAIL_DIR) - 1]

        stem, ext = split_thumbnail_name(name)
        if name.startswith(THUMB_PREFIX):
            toggled_name = name[len(THUMB_PREFIX):]
        else:
            toggled_name = THUMB_PREFIX + name

        return {
            "rel": rel,
            "rel_dir": rel_dir,
            "dir": asset_dir,
            "stem": stem,
            "ext": ext,
            "toggled_name": toggled_name,
        }

    def candidate_keys(self, ref: str) -> List[StorageKeyCandidate]:
        """
        Ordered, de-duplicated candidate keys for a logical reference.

        Deterministic: the same reference and configuration always yield
        the same list.

        Raises:
            ValueError: If the reference is empty or escapes the key space
        """
        fields = self._name_parts(self.relative_key(ref))
        return self._expand(KEY_PATTERNS, fields)

    @staticmethod
    def _kind(ext: str) -> str:
        return "image" if ext in IMAGE_EXTENSIONS else "video" if ext in VIDEO_EXTENSIONS else "other"

    def _expand(self, patterns: Tuple[KeyPattern, ...], fields: Dict[str, str]) -> List[StorageKeyCandidate]:
        kind = self._kind(fields["ext"])
        candidates: List[StorageKeyCandidate] = []
        seen = set()
        tier_positions: Dict[int, int] = {}

        for pattern in patterns:
            if pattern.applies_to != "any" and pattern.applies_to != kind:
                continue

            if pattern.name == "canonical":
                roots = [self.primary_root]
            elif pattern.name == "legacy_root":
                roots = self.legacy_roots
            else:
                roots = self.roots

            relative = pattern.template.format(**fields)
            for root in roots:
                key = _join(root, relative)
                if not key or key in seen:
                    continue
                seen.add(key)
                position = tier_positions.get(pattern.tier, 0)
                tier_positions[pattern.tier] = position + 1
                candidates.append(StorageKeyCandidate(
                    pattern=pattern.name,
                    key=key,
                    priority=pattern.tier * 100 + position,
                ))

        return candidates

    def asset_id(self, key: str) -> str:
        """
        Logical asset a key belongs to, independent of root and role.

        Example:
            "uploads/thumbnails/thumb-clip.jpg" and "shared/uploads/clip.mov"
            both map to "clip".
        """
        fields = self._name_parts(self.relative_key(key))
        return f"{fields['dir']}{fields['stem']}"

    def is_derived_image(self, key: str) -> bool:
        """True for thumbnail-role image keys (thumbnails/ dir, .poster or thumb- names)."""
        rel = self.relative_key(key)
        rel_dir, name = posixpath.split(rel)
        base = posixpath.splitext(name)[0]
        in_thumbnail_dir = rel_dir == THUMBNAIL_DIR or rel_dir.endswith(f"/{THUMBNAIL_DIR}")
        return in_thumbnail_dir or base.endswith(POSTER_SUFFIX) or base.startswith(THUMB_PREFIX)

    def thumbnail_ref_for(self, source_key: str) -> str:
        """Relative reference of the primary thumbnail for a video key."""
        rel = self.relative_key(source_key)
        fields = self._name_parts(rel)
        return f"{fields['dir']}{THUMBNAIL_DIR}/{fields['stem']}{THUMBNAIL_EXTENSION}"

    def thumbnail_candidates(self, source_key: str) -> List[StorageKeyCandidate]:
        """
        Candidates for a video's thumbnail: raster names first, then the
        SVG fallback names, then thumbnails stored under the video's own
        extension.
        """
        jpg_ref = self.thumbnail_ref_for(source_key)
        svg_ref = posixpath.splitext(jpg_ref)[0] + ".svg"
        groups = [self.candidate_keys(jpg_ref), self.candidate_keys(svg_ref)]

        fields = self._name_parts(self.relative_key(source_key))
        if self._kind(fields["ext"]) == "video":
            groups.append(self._expand(MISNAMED_THUMBNAIL_PATTERNS, fields))

        merged: List[StorageKeyCandidate] = []
        seen = set()
        for group, candidates in enumerate(groups):
            for candidate in candidates:
                if candidate.key in seen:
                    continue
                seen.add(candidate.key)
                merged.append(StorageKeyCandidate(
                    pattern=candidate.pattern,
                    key=candidate.key,
                    priority=group * 1000 + candidate.priority,
                ))
        return merged

    def thumbnail_keys(
        self,
        source_key: str,
        ext: str = THUMBNAIL_EXTENSION,
        include_legacy: bool = True,
    ) -> Dict[str, List[str]]:
        """
        Canonical write keys for a video's thumbnail, grouped by role.

        Returns:
            {"primary": [...], "poster": [...], "legacy_duplicate": [...]};
            poster and legacy lists are empty when include_legacy is False
        """
        rel = self.relative_key(source_key)
        fields = self._name_parts(rel)
        asset_dir, stem = fields["dir"], fields["stem"]

        keys = {
            "primary": [_join(self.primary_root, f"{asset_dir}{THUMBNAIL_DIR}/{stem}{ext}")],
            "poster": [],
            "legacy_duplicate": [],
        }
        if include_legacy:
            keys["poster"] = [_join(self.primary_root, f"{asset_dir}{stem}{POSTER_SUFFIX}{ext}")]
            keys["legacy_duplicate"] = [
                _join(self.primary_root, f"{asset_dir}{THUMBNAIL_DIR}/{THUMB_PREFIX}{stem}{ext}"),
                _join(self.primary_root, f"{asset_dir}{stem}{ext}"),
            ]
        return keys

    async def resolve(
        self,
        ref: str,
        reader: Callable[[str], Awaitable[bytes]],
    ) -> Tuple[str, bytes]:
        """
        Probe candidates for `ref` in priority order.

        Args:
            ref: Logical file reference
            reader: Async get(key) -> bytes (a blob store or breaker gateway)

        Returns:
            (resolved key, bytes)

        Raises:
            AssetNotFoundError: Every candidate answered "not found"
            StorageUnavailableError: Breaker open, or a miss that may be hiding
                behind a failed probe
        """
        return await self.probe(ref, self.candidate_keys(ref), reader)

    async def resolve_thumbnail(
        self,
        source_key: str,
        reader: Callable[[str], Awaitable[bytes]],
    ) -> Tuple[str, bytes]:
        return await self.probe(source_key, self.thumbnail_candidates(source_key), reader)

    async def probe(
        self,
        ref: str,
        candidates: List[StorageKeyCandidate],
        reader: Callable[[str], Awaitable[bytes]],
    ) -> Tuple[str, bytes]:
        transient_error: Optional[Exception] = None
        probes = 0
        set_storage_key(None)

        for candidate in candidates:
            probes += 1
            try:
                data = await reader(candidate.key)
            except BlobNotFoundError:
                continue
            except CircuitOpenError as e:
                record_resolution("unavailable", probes)
                logger.warning(
                    f"Storage unavailable while resolving {ref}",
                    extra={
                        "event_type": "key_resolution_unavailable",
                        "ref": ref,
                        "probes": probes,
                        "retry_after": e.retry_after,
                    }
                )
                raise StorageUnavailableError(str(e), retry_after=e.retry_after) from e
            except (BlobStoreError, TimeoutError) as e:
                transient_error = e
                logger.debug(
                    f"Probe failed for {candidate.key}: {e}",
                    extra={
                        "event_type": "key_probe_failed",
                        "ref": ref,
                        "key": candidate.key,
                        "error_type": type(e).__name__,
                    }
                )
                continue

            set_storage_key(candidate.key)
            record_resolution("hit", probes)
            logger.debug(
                f"Resolved {ref} to {candidate.key}",
                extra={
                    "event_type": "key_resolved",
                    "ref": ref,
                    "key": candidate.key,
                    "pattern": candidate.pattern,
                    "probes": probes,
                }
            )
            return candidate.key, data

        if transient_error is not None:
            record_resolution("unavailable", probes)
            raise StorageUnavailableError(
                f"Could not resolve {ref!r}: storage errors during lookup ({transient_error})"
            ) from transient_error

        record_resolution("not_found", probes)
        logger.info(
            f"No stored object for {ref}",
            extra={"event_type": "key_resolution_miss", "ref": ref, "probes": probes}
        )
        raise AssetNotFoundError(ref, probes)


# Global instance
_key_resolver: Optional[KeyResolver] = None


def get_key_resolver() -> KeyResolver:
    global _key_resolver
    if _key_resolver is None:
        _key_resolver = KeyResolver()
    return _key_resolver


def reset_key_resolver() -> None:
    """Reset the global key resolver instance (for testing)."""
    global _key_resolver
    _key_resolver = None
