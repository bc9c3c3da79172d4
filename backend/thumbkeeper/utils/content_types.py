"""Content-type mapping and image signature sniffing for stored blobs"""
import posixpath
from typing import Optional

DEFAULT_CONTENT_TYPE = "application/octet-stream"

CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".webm": "video/webm",
    ".avi": "video/x-msvideo",
}

VIDEO_EXTENSIONS = (".mp4", ".mov", ".webm", ".avi")
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg")

# Leading bytes inspected when sniffing
SNIFF_WINDOW = 100


def extension_of(key: str) -> str:
    """Lower-cased extension of the last key segment, including the dot."""
    return posixpath.splitext(key)[1].lower()


def content_type_for(key: str) -> str:
    """
    Derive a content type from a storage key's extension.

    Example:
        >>> content_type_for("shared/uploads/thumbnails/clip.JPG")
        'image/jpeg'
        >>> content_type_for("notes.txt")
        'application/octet-stream'
    """
    return CONTENT_TYPES.get(extension_of(key), DEFAULT_CONTENT_TYPE)


def is_video_key(key: str) -> bool:
    return extension_of(key) in VIDEO_EXTENSIONS


def is_image_key(key: str) -> bool:
    return extension_of(key) in IMAGE_EXTENSIONS


def sniff_image_extension(data: bytes) -> Optional[str]:
    """
    Detect an image format from leading bytes.

    Args:
        data: Blob contents (only the first SNIFF_WINDOW bytes are examined)

    Returns:
        Extension such as ".svg" or ".jpg", or None if the bytes are not a
        recognized image
    """
    head = data[:SNIFF_WINDOW]
    if head.startswith(b"\xff\xd8\xff"):
        return ".jpg"
    if head.startswith(b"\x89PNG\r\n\x1a\n"):
        return ".png"
    if head.startswith(b"GIF8"):
        return ".gif"
    if head.startswith(b"RIFF") and head[8:12] == b"WEBP":
        return ".webp"
    if b"<svg" in head:
        return ".svg"
    return None
