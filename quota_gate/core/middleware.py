"""HTTP middleware for request ID propagation and correlation.

Every request/response pair carries a correlation id so admission decisions
(allowed, rejected, degraded, failed closed) can be traced in the logs of the
instance that made them.

The middleware:
- Accepts the incoming request id header or generates a UUID
- Stores request_id in contextvars for access throughout the request lifecycle
- Injects request_id and the total duration into response headers
- Clears context after request completion to prevent context leaks

Usage:
    app.middleware("http")(request_id_middleware)
"""

from __future__ import annotations

import time
import uuid

from fastapi import Request, Response

from quota_gate.core.config import settings
from quota_gate.core.logging import clear_request_id, set_request_id


def _request_id_header(request: Request) -> str:
    app_settings = getattr(request.app.state, "settings", None) or settings
    return app_settings.log.request_id_header


async def request_id_middleware(request: Request, call_next) -> Response:
    """HTTP middleware for request ID generation and propagation.

    Registered last so it wraps admission control: rejections and fail-closed
    responses get a request id too.

    Args:
        request: The incoming HTTP request object.
        call_next: The next middleware/route handler in the stack.

    Returns:
        Response: The response from the next handler with request_id and
            duration headers added.
    """

    header_name = _request_id_header(request)
    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    set_request_id(request_id)
    start = time.perf_counter()
    try:
        response: Response = await call_next(request)
    finally:
        clear_request_id()

    duration_ms = (time.perf_counter() - start) * 1000
    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
    return response
