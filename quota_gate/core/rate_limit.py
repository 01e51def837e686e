"""Admission control wiring for the HTTP layer.

This module turns AdmissionLimiter decisions into request pipeline effects:

- allowed: the downstream handler runs and the X-RateLimit-* headers are
  attached to its response;
- rejected: a 429 with ``Retry-After`` is returned and the handler never runs;
- limiter failure: a 503 is returned (fail closed). It is logged and counted
  separately from 429s so operators can tell the two apart.

Usage:
    app.middleware("http")(build_rate_limit_middleware(limiter, resolver))
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Iterable

from fastapi import Request, Response

from quota_gate.adapters.rate_limit.login_guard import LoginAttemptGuard
from quota_gate.core.errors import (
    AdmissionInternalError,
    RateLimitExceededError,
    ValidationAppError,
)
from quota_gate.core.exception_handlers import build_error_response
from quota_gate.core.metrics import record_decision
from quota_gate.services.identity import UNKNOWN_ORIGIN, IdentityResolver
from quota_gate.services.limiter import AdmissionLimiter, AdmissionResult

logger = logging.getLogger(__name__)

CallNext = Callable[[Request], Awaitable[Response]]


def _log_extra(result: AdmissionResult) -> dict:
    decision = result.decision
    return {
        "subject_type": result.subject.kind,
        "subject_id": result.subject.id,
        "tier": result.subject.tier.value,
        "hourly_count": decision.hourly_count,
        "burst_count": decision.burst_count,
        "limit": decision.limit,
        "burst_limit": decision.burst_limit,
        "degraded": result.degraded,
    }


def _fail_closed(request: Request, exc: Exception) -> Response:
    if not isinstance(exc, AdmissionInternalError):
        exc = AdmissionInternalError(
            code="rate_limiter_unavailable",
            message="Rate limiting is temporarily unavailable",
            details={"reason": type(exc).__name__},
        )

    logger.error(
        "rate_limit.internal_error",
        extra={
            "error_code": exc.code,
            "reason": (exc.details or {}).get("reason"),
            "request_path": request.url.path,
        },
    )
    record_decision("error", "unknown")
    return build_error_response(exc)


def _reject(result: AdmissionResult, headers: dict[str, str]) -> Response:
    decision = result.decision
    retry_after = decision.retry_after or 1

    logger.warning(
        "rate_limit.exceeded",
        extra={**_log_extra(result), "retry_after_s": retry_after},
    )
    record_decision("rejected", result.subject.tier.value)

    exc = RateLimitExceededError(
        code="rate_limit_exceeded",
        message="Rate limit exceeded. Try again later.",
        details={
            "tier": result.subject.tier.value,
            "limit": decision.limit,
            "burst_limit": decision.burst_limit,
            "retry_after": retry_after,
        },
    )
    return build_error_response(exc, headers={**headers, "Retry-After": str(retry_after)})


def build_rate_limit_middleware(
    limiter: AdmissionLimiter,
    resolver: IdentityResolver,
    *,
    include_headers: bool = True,
    exempt_paths: Iterable[str] = (),
) -> Callable[[Request, CallNext], Awaitable[Response]]:
    """Create the HTTP middleware enforcing admission control.

    Args:
        limiter: Limiter that counts and decides.
        resolver: Maps requests to rate limit subjects.
        include_headers: Attach X-RateLimit-* headers to responses.
        exempt_paths: Paths that bypass admission control entirely.

    Returns:
        Middleware function for ``app.middleware("http")``.
    """
    exempt = tuple(p.rstrip("/") for p in exempt_paths if p.rstrip("/"))

    def is_exempt(path: str) -> bool:
        return any(path == p or path.startswith(p + "/") for p in exempt)

    async def rate_limit_middleware(request: Request, call_next: CallNext) -> Response:
        if is_exempt(request.url.path):
            return await call_next(request)

        try:
            subject = resolver.resolve(request)
            result = await limiter.admit(subject)
        except Exception as exc:  # fail closed on anything in the decision path
            return _fail_closed(request, exc)

        decision = result.decision
        headers = decision.headers() if include_headers else {}

        if not decision.allowed:
            return _reject(result, headers)

        if decision.warning:
            logger.warning("rate_limit.warning", extra=_log_extra(result))
            record_decision("warned", result.subject.tier.value)
        else:
            logger.info("rate_limit.allowed", extra=_log_extra(result))
            record_decision("allowed", result.subject.tier.value)

        request.state.rate_limit = result
        response = await call_next(request)
        for name, value in headers.items():
            response.headers[name] = value
        return response

    return rate_limit_middleware


def get_admission_result(request: Request) -> AdmissionResult | None:
    """FastAPI dependency returning the admission result of this request, if any."""
    return getattr(request.state, "rate_limit", None)


async def enforce_login_guard(request: Request) -> None:
    """FastAPI dependency limiting attempts on authentication routes per client IP.

    Usage:
        @router.post("/auth/login", dependencies=[Depends(enforce_login_guard)])

    Raises:
        ValidationAppError: If the client address cannot be determined.
        RateLimitExceededError: If the client is over its attempt budget or blocked.
    """
    guard: LoginAttemptGuard = request.app.state.login_guard
    resolver: IdentityResolver = request.app.state.identity_resolver

    client_ip = resolver.network_origin(request)
    if client_ip == UNKNOWN_ORIGIN:
        raise ValidationAppError(
            code="invalid_input",
            message="Client address could not be determined",
        )

    result = guard.consume(client_ip)
    if result.allowed:
        return

    retry_after = result.retry_after_seconds or 1
    logger.warning(
        "rate_limit.login_blocked",
        extra={"client_ip": client_ip, "retry_after_s": retry_after},
    )
    raise RateLimitExceededError(
        code="rate_limit_exceeded",
        message="Too many attempts. Please try again later.",
        details={"limit": result.limit, "retry_after": retry_after},
    )
