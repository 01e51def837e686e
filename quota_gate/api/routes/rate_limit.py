from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from quota_gate.core.rate_limit import get_admission_result
from quota_gate.schemas.rate_limit import RateLimitStatusResponse, RateLimitWindowStatus
from quota_gate.services.limiter import AdmissionResult

router = APIRouter(tags=["Rate Limit"])


@router.get("/rate-limit/status", response_model=RateLimitStatusResponse)
async def rate_limit_status(
    result: AdmissionResult | None = Depends(get_admission_result),
) -> RateLimitStatusResponse:
    """Return the caller's quota usage as counted for this very request.

    The status call is itself admitted like any other request, so it consumes
    one unit of both windows.

    Raises:
        HTTPException: 404 when admission control is disabled.
    """
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Rate limiting is disabled.",
        )

    decision = result.decision
    return RateLimitStatusResponse(
        subject_type=result.subject.kind,
        tier=result.subject.tier,
        allowed=decision.allowed,
        warning=decision.warning,
        degraded=result.degraded,
        hourly=RateLimitWindowStatus(
            limit=decision.limit,
            used=decision.hourly_count,
            remaining=decision.remaining,
            reset_at=decision.reset_at_hourly,
        ),
        burst=RateLimitWindowStatus(
            limit=decision.burst_limit,
            used=decision.burst_count,
            remaining=decision.burst_remaining,
            reset_at=decision.reset_at_burst,
        ),
    )
