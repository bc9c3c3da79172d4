"""
Media API

Upload videos and (re)generate their thumbnails.
"""
import logging
import os
import tempfile
from pathlib import Path

from fastapi import APIRouter, File, HTTPException, UploadFile, status

from thumbkeeper.api.v1.files import unavailable
from thumbkeeper.models.media import ThumbnailResult
from thumbkeeper.schemas.media import ThumbnailResultResponse, ThumbnailVariantResponse
from thumbkeeper.services.key_resolver import AssetNotFoundError, StorageUnavailableError
from thumbkeeper.services.thumbnail_pipeline import ThumbnailStorageError, get_thumbnail_pipeline

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/media",
    tags=["media"]
)


def _to_response(result: ThumbnailResult) -> ThumbnailResultResponse:
    return ThumbnailResultResponse(
        source_key=result.asset.source_key,
        is_fallback=result.is_fallback,
        offset_used=result.offset_used,
        attempts=result.attempts,
        variants=[
            ThumbnailVariantResponse(
                role=variant.role.value,
                format=variant.format.value,
                is_fallback=variant.is_fallback,
                keys=variant.keys,
                width=variant.width,
                height=variant.height,
                size_bytes=len(variant.data),
                generated_at=variant.generated_at,
            )
            for variant in result.variants
        ],
    )


def _storage_failed(error: ThumbnailStorageError) -> HTTPException:
    logger.error(f"Thumbnail storage failed: {error}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Failed to store thumbnail",
    )


@router.post("", response_model=ThumbnailResultResponse, status_code=status.HTTP_201_CREATED)
async def upload_video(file: UploadFile = File(...)):
    """
    Store an uploaded video and generate its thumbnail.

    A thumbnail is always produced: when no frame can be extracted the SVG
    placeholder is stored instead and `is_fallback` is true.
    """
    if not file.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="File name is required")

    suffix = os.path.splitext(file.filename)[1]
    with tempfile.NamedTemporaryFile(delete=False, suffix=suffix) as tmp:
        content = await file.read()
        tmp.write(content)
        tmp_path = Path(tmp.name)

    try:
        result = await get_thumbnail_pipeline().ingest(file.filename, str(tmp_path), file.content_type)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ThumbnailStorageError as e:
        raise _storage_failed(e)
    finally:
        tmp_path.unlink(missing_ok=True)

    return _to_response(result)


@router.post("/{source_key:path}/thumbnail", response_model=ThumbnailResultResponse)
async def regenerate_thumbnail(source_key: str):
    """
    Re-extract the thumbnail of an already stored video.

    Useful for videos listed in a repair scan's `fallback_thumbnails`, or
    any video whose source has been replaced.
    """
    try:
        result = await get_thumbnail_pipeline().regenerate(source_key)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid file reference")
    except AssetNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Video not found: {source_key}")
    except StorageUnavailableError as e:
        raise unavailable(e)
    except ThumbnailStorageError as e:
        raise _storage_failed(e)

    return _to_response(result)
