"""Application-level exception types.

This module defines domain errors used across services/adapters, enabling
consistent error handling, logging, and API responses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients.

    Fields are optional to keep backward compatibility while encouraging
    consistent shapes across the codebase.
    """

    code: str
    message: str
    hint: str
    tier: str
    limit: int
    burst_limit: int
    hourly_count: int
    burst_count: int
    reset_at: int
    burst_reset_at: int
    retry_after: int
    reason: str
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when request input validation fails."""


class ConfigurationAppError(AppError):
    """Raised when a tier policy or other startup configuration is malformed."""


class RateLimitExceededError(AppError):
    """Raised when a caller exhausts one of its quota windows."""


class AdmissionInternalError(AppError):
    """Raised when the admission decision cannot be made at all.

    Callers must fail closed: this is never a reason to let a request through.
    """
