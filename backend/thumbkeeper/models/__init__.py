"""Media domain models"""
from thumbkeeper.models.media import (
    MediaAsset,
    StorageKeyCandidate,
    ThumbnailFormat,
    ThumbnailResult,
    ThumbnailRole,
    ThumbnailVariant,
)

__all__ = [
    "MediaAsset",
    "StorageKeyCandidate",
    "ThumbnailFormat",
    "ThumbnailResult",
    "ThumbnailRole",
    "ThumbnailVariant",
]
