"""
Storage diagnostics API

Lets operators see which keys a reference would be looked up under and
what state the read-path circuit breaker is in.
"""
from fastapi import APIRouter, HTTPException, Query, status

from thumbkeeper.schemas.media import BreakerStatusResponse, KeyCandidateResponse, KeyCandidatesResponse
from thumbkeeper.services.circuit_breaker import get_circuit_breaker
from thumbkeeper.services.key_resolver import get_key_resolver

router = APIRouter(
    prefix="/storage",
    tags=["storage"]
)


@router.get("/candidates", response_model=KeyCandidatesResponse)
async def list_candidates(
    ref: str = Query(..., description="Logical file reference"),
    thumbnail: bool = Query(False, description="List thumbnail candidates for a video reference"),
):
    """Candidate keys for a reference, in probe order."""
    resolver = get_key_resolver()
    try:
        candidates = resolver.thumbnail_candidates(ref) if thumbnail else resolver.candidate_keys(ref)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return KeyCandidatesResponse(
        ref=ref,
        candidates=[
            KeyCandidateResponse(pattern=c.pattern, key=c.key, priority=c.priority)
            for c in candidates
        ],
    )


@router.get("/breaker", response_model=BreakerStatusResponse)
async def get_breaker_status():
    snapshot = get_circuit_breaker().snapshot()
    return BreakerStatusResponse(
        name=snapshot.name,
        state=snapshot.state.value,
        consecutive_failures=snapshot.consecutive_failures,
        last_failure_timestamp=snapshot.last_failure_timestamp,
        failure_threshold=snapshot.failure_threshold,
        cooldown_seconds=snapshot.cooldown_seconds,
        retry_after=snapshot.retry_after,
    )
