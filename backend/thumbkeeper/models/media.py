"""
Media domain models.

Plain dataclasses; nothing here is persisted by this service. Stored
objects are identified only by their blob store keys.
"""

import posixpath
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


class ThumbnailRole(str, Enum):
    """Where a thumbnail sits among the keys written for one asset."""

    PRIMARY = "primary"
    POSTER = "poster"
    LEGACY_DUPLICATE = "legacy_duplicate"


class ThumbnailFormat(str, Enum):
    RASTER = "raster"
    VECTOR = "vector"


@dataclass(frozen=True)
class MediaAsset:
    """An uploaded video, identified by its logical storage key."""

    source_key: str
    original_extension: str
    size_bytes: int

    @classmethod
    def from_key(cls, source_key: str, size_bytes: int = 0) -> "MediaAsset":
        return cls(
            source_key=source_key,
            original_extension=posixpath.splitext(source_key)[1].lower(),
            size_bytes=size_bytes,
        )


@dataclass
class ThumbnailVariant:
    """
    One generated thumbnail.

    The same bytes may be written under several keys when legacy variants
    are enabled; `keys` lists every key actually written for this role.
    """

    parent_asset_key: str
    role: ThumbnailRole
    format: ThumbnailFormat
    data: bytes
    is_fallback: bool
    keys: List[str] = field(default_factory=list)
    width: Optional[int] = None
    height: Optional[int] = None
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class StorageKeyCandidate:
    """A plausible storage key for a logical reference. Lower priority is tried first."""

    pattern: str
    key: str
    priority: int


@dataclass
class ThumbnailResult:
    """Outcome of one pipeline run for an asset."""

    asset: MediaAsset
    variants: List[ThumbnailVariant]
    is_fallback: bool
    offset_used: Optional[float] = None
    attempts: int = 0

    @property
    def primary(self) -> ThumbnailVariant:
        return next(v for v in self.variants if v.role == ThumbnailRole.PRIMARY)

    @property
    def keys(self) -> List[str]:
        return [key for variant in self.variants for key in variant.keys]
