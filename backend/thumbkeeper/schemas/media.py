"""
Media API Schemas

Pydantic response schemas for thumbnail generation, repair and storage
diagnostics endpoints.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class ThumbnailVariantResponse(BaseModel):
    """One stored thumbnail variant."""
    role: str = Field(..., description="primary, poster or legacy_duplicate")
    format: str = Field(..., description="raster or vector")
    is_fallback: bool
    keys: List[str] = Field(default_factory=list, description="Storage keys written for this role")
    width: Optional[int] = None
    height: Optional[int] = None
    size_bytes: int
    generated_at: datetime


class ThumbnailResultResponse(BaseModel):
    """
    Result of generating a thumbnail for one video

    Example:
        {
            "source_key": "shared/uploads/clip.mov",
            "is_fallback": false,
            "offset_used": 1.0,
            "attempts": 1,
            "variants": [...]
        }
    """
    source_key: str
    is_fallback: bool
    offset_used: Optional[float] = Field(None, description="Seek offset of the extracted frame")
    attempts: int = Field(..., description="Extraction attempts made")
    variants: List[ThumbnailVariantResponse]


class RepairScanRequest(BaseModel):
    roots: Optional[List[str]] = Field(
        None, description="Key prefixes to scan (defaults to the primary and latest legacy root)"
    )
    dry_run: bool = Field(False, description="Report changes without writing")


class RepairScanResponse(BaseModel):
    """
    Repair scan summary

    Example:
        {
            "checked": 120,
            "fixed": 3,
            "skipped": 116,
            "errors": 1,
            "cancelled": false,
            "dry_run": false,
            "missing_thumbnails": ["shared/uploads/clip7.mov"],
            "fallback_thumbnails": ["shared/uploads/clip2.mov"]
        }
    """
    checked: int
    fixed: int
    skipped: int
    errors: int
    cancelled: bool = False
    dry_run: bool = False
    missing_thumbnails: List[str] = Field(
        default_factory=list, description="Videos that had no thumbnail (regenerated unless dry run)"
    )
    fallback_thumbnails: List[str] = Field(
        default_factory=list, description="Videos whose thumbnail is still the SVG placeholder"
    )


class RepairStatusResponse(BaseModel):
    running: bool
    last_scan: Optional[RepairScanResponse] = None


class RepairCancelResponse(BaseModel):
    cancelled: bool = Field(..., description="True if a running scan was asked to stop")


class KeyCandidateResponse(BaseModel):
    pattern: str
    key: str
    priority: int


class KeyCandidatesResponse(BaseModel):
    ref: str
    candidates: List[KeyCandidateResponse]


class BreakerStatusResponse(BaseModel):
    """Circuit breaker guarding the blob store read path."""
    name: str
    state: str = Field(..., description="closed, open or half_open")
    consecutive_failures: int
    last_failure_timestamp: Optional[datetime] = None
    failure_threshold: int
    cooldown_seconds: float
    retry_after: float = Field(..., description="Seconds until a probe is allowed (0 unless open)")
