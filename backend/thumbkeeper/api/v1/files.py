"""
File Serving API

Resolves logical file references against every historical storage naming
convention and streams back the stored bytes.

Routes:
    GET /files/{ref}              direct blob store lookup
    GET /emergency/{ref}          lookup through the circuit breaker (fast failure)
    GET /thumbnails/{source_key}  thumbnail for a stored video, through the breaker

A reference that matches nothing is a 404. A lookup that could not be
completed because storage is failing is a 503 with Retry-After, so clients
can tell "gone" from "try again later".
"""
import logging
import math
import posixpath

from fastapi import APIRouter, HTTPException, Response, status

from thumbkeeper.core.config import settings
from thumbkeeper.core.logging_config import sanitize_log_value
from thumbkeeper.services.blob_store import get_blob_store
from thumbkeeper.services.circuit_breaker import get_storage_gateway
from thumbkeeper.services.key_resolver import (
    AssetNotFoundError,
    StorageUnavailableError,
    get_key_resolver,
)
from thumbkeeper.utils.content_types import content_type_for, is_video_key, sniff_image_extension

logger = logging.getLogger(__name__)

router = APIRouter(tags=["files"])

CACHE_CONTROL = "public, max-age=86400"


def blob_response(key: str, data: bytes) -> Response:
    """
    Bytes with a content type derived from the resolved key's extension.

    Image bytes stored under a video name are served with their real type.
    """
    media_type = content_type_for(key)
    if is_video_key(key):
        image_ext = sniff_image_extension(data)
        if image_ext:
            media_type = content_type_for(posixpath.splitext(key)[0] + image_ext)
    return Response(
        content=data,
        media_type=media_type,
        headers={
            "Cache-Control": CACHE_CONTROL,
            "X-Storage-Key": key,
        }
    )


def unavailable(error: StorageUnavailableError) -> HTTPException:
    retry_after = error.retry_after if error.retry_after else settings.BREAKER_COOLDOWN_SECONDS
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Storage temporarily unavailable",
        headers={"Retry-After": str(max(1, math.ceil(retry_after)))},
    )


def not_found(ref: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"File not found: {ref}"
    )


@router.get("/files/{ref:path}")
async def get_file(ref: str):
    """
    Serve a stored file by logical reference.

    Example:
        GET /api/v1/files/uploads/clip.mov
        -> bytes of shared/uploads/clip.mov (or the first legacy key that exists)
    """
    resolver = get_key_resolver()
    try:
        key, data = await resolver.resolve(ref, get_blob_store().get)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid file reference")
    except AssetNotFoundError:
        raise not_found(ref)
    except StorageUnavailableError as e:
        logger.warning(
            f"Storage unavailable serving {sanitize_log_value(ref)}",
            extra={"event_type": "file_serve_unavailable", "ref": ref, "error_message": str(e)}
        )
        raise unavailable(e)

    return blob_response(key, data)


@router.get("/emergency/{ref:path}")
async def get_file_emergency(ref: str):
    """
    Serve a stored file through the circuit breaker.

    Each probe read has a hard sub-second timeout; when the breaker is open
    the request fails immediately with 503 instead of waiting on storage.
    """
    resolver = get_key_resolver()
    try:
        key, data = await resolver.resolve(ref, get_storage_gateway().get)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid file reference")
    except AssetNotFoundError:
        raise not_found(ref)
    except StorageUnavailableError as e:
        raise unavailable(e)

    return blob_response(key, data)


@router.get("/thumbnails/{source_key:path}")
async def get_thumbnail(source_key: str):
    """
    Serve the thumbnail of a stored video.

    Looks for the raster thumbnail under every naming convention, then the
    SVG placeholder.

    Example:
        GET /api/v1/thumbnails/shared/uploads/clip.mov
        -> image/jpeg bytes of shared/uploads/thumbnails/clip.jpg
    """
    resolver = get_key_resolver()
    try:
        key, data = await resolver.resolve_thumbnail(source_key, get_storage_gateway().get)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid file reference")
    except AssetNotFoundError:
        raise not_found(source_key)
    except StorageUnavailableError as e:
        raise unavailable(e)

    return blob_response(key, data)
