"""Resolve the rate limit subject of a request.

Authenticated callers are limited per principal id and their tier; anonymous
callers per network address on the default tier. Authentication itself happens
upstream: the identity provider leaves a verified principal on
``request.state.principal`` and this module only reads it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from starlette.requests import Request

from quota_gate.schemas.rate_limit import Principal, Tier
from quota_gate.services.policy import parse_tier

logger = logging.getLogger(__name__)

UNKNOWN_ORIGIN = "unknown"


@dataclass(frozen=True)
class RateSubject:
    """Who is being counted, and under which tier.

    Attributes:
        id: Namespaced identifier: ``user:<principal id>`` or ``ip:<address>``.
        tier: Tier whose policy applies.
    """

    id: str
    tier: Tier

    @property
    def kind(self) -> str:
        return self.id.split(":", 1)[0]


def _principal_fields(principal: Any) -> tuple[str | None, str | None]:
    if isinstance(principal, Principal):
        return principal.id, principal.tier
    if isinstance(principal, Mapping):
        return principal.get("id"), principal.get("tier")
    return getattr(principal, "id", None), getattr(principal, "tier", None)


class IdentityResolver:
    """Build a RateSubject from request context.

    Deterministic: the same request context always yields the same subject.
    """

    def __init__(self, *, default_tier: Tier = Tier.FREE, trust_forwarded_for: bool = False) -> None:
        self._default_tier = default_tier
        self._trust_forwarded_for = trust_forwarded_for

    def network_origin(self, request: Request) -> str:
        """Return the caller's address, honoring X-Forwarded-For only when trusted."""
        if self._trust_forwarded_for:
            forwarded = request.headers.get("x-forwarded-for", "")
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
        return request.client.host if request.client else UNKNOWN_ORIGIN

    def resolve(self, request: Request) -> RateSubject:
        """Return the subject for this request.

        Args:
            request: Incoming request; may carry ``state.principal``.

        Returns:
            RateSubject for the principal, or for the network origin with the
            default tier when no verified principal is present.
        """
        principal = getattr(request.state, "principal", None)
        if principal is not None:
            principal_id, tier_name = _principal_fields(principal)
            if principal_id:
                return RateSubject(
                    id=f"user:{principal_id}",
                    tier=parse_tier(tier_name, self._default_tier),
                )
            logger.debug("rate_limit.principal_without_id")

        return RateSubject(id=f"ip:{self.network_origin(request)}", tier=self._default_tier)
