from __future__ import annotations

from fastapi import APIRouter, Request

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check() -> dict:
    """Health check endpoint.

    Returns a simple status response to verify the API is operational.
    Used by load balancers and monitoring systems to determine service health.

    Returns:
        dict: A dictionary with a single "status" key set to "ok".
    """

    return {"status": "ok"}


@router.get("/health/ready")
async def readiness_check(request: Request) -> dict:
    """Readiness check including the shared counter store.

    An unreachable store does not make the instance unready: requests are
    still admitted through the per-instance fallback counter, so the status
    is reported as "degraded" with HTTP 200.
    """

    store = getattr(request.app.state, "counter_store", None)
    limiter = getattr(request.app.state, "admission_limiter", None)
    degraded_mode = bool(limiter and limiter.degraded)

    if store is None:
        return {"status": "ok", "store": "disabled", "degraded_mode": degraded_mode}

    store_up = await store.ping()
    return {
        "status": "ok" if store_up and not degraded_mode else "degraded",
        "store": "up" if store_up else "down",
        "degraded_mode": degraded_mode,
    }
