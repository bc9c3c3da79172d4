"""
Repair API

Trigger, cancel and inspect storage repair scans.
"""
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, status

from thumbkeeper.schemas.media import (
    RepairCancelResponse,
    RepairScanRequest,
    RepairScanResponse,
    RepairStatusResponse,
)
from thumbkeeper.services.repair_scanner import (
    RepairInProgressError,
    cancel_repair_scan,
    get_last_repair_stats,
    is_repair_running,
    run_repair_scan,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/repair",
    tags=["repair"]
)


@router.post("/scan", response_model=RepairScanResponse)
async def trigger_repair_scan(request: Optional[RepairScanRequest] = None):
    """
    Run a repair scan and return its counts.

    Example:
        POST /api/v1/repair/scan
        {"dry_run": true}

        Response:
        {"checked": 42, "fixed": 2, "skipped": 40, "errors": 0, ...}
    """
    request = request or RepairScanRequest()
    try:
        stats = await run_repair_scan(roots=request.roots, dry_run=request.dry_run)
    except RepairInProgressError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return RepairScanResponse(**stats.to_dict())


@router.post("/cancel", response_model=RepairCancelResponse)
async def cancel_scan():
    """Stop the running scan after the assets already in progress."""
    return RepairCancelResponse(cancelled=cancel_repair_scan())


@router.get("/status", response_model=RepairStatusResponse)
async def get_repair_status():
    last = get_last_repair_stats()
    return RepairStatusResponse(
        running=is_repair_running(),
        last_scan=RepairScanResponse(**last.to_dict()) if last else None,
    )
