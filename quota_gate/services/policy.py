"""Tier policy table.

Maps subscription tiers to quota policies. Built once at startup from the
built-in defaults plus optional overrides from settings; lookups never fail.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from pydantic import ValidationError

from quota_gate.core.config import RateLimitSettings
from quota_gate.core.errors import ConfigurationAppError
from quota_gate.schemas.rate_limit import DEFAULT_TIER_POLICIES, Tier, TierPolicy

logger = logging.getLogger(__name__)


def parse_tier(name: object, default: Tier = Tier.FREE) -> Tier:
    """Resolve a tier name to a Tier, falling back to ``default``.

    This is the only place raw tier strings are interpreted.

    Args:
        name: Tier name as issued by the identity provider (case-insensitive).
            Values that are not strings are treated as unrecognized.
        default: Tier to use for missing or unrecognized names.

    Returns:
        The matching Tier, or ``default`` with a warning logged.
    """
    if isinstance(name, Tier):
        return name
    if name is None:
        return default

    if isinstance(name, str):
        try:
            return Tier(name.strip().lower())
        except ValueError:
            pass

    logger.warning(
        "rate_limit.unknown_tier",
        extra={"tier": str(name)[:50], "fallback_tier": default.value},
    )
    return default


def _build_policy(tier: Tier, override: Mapping[str, Any]) -> TierPolicy:
    """Merge an override onto the built-in policy for ``tier``.

    Raises:
        ConfigurationAppError: If the merged policy is invalid.
    """
    if not isinstance(override, Mapping):
        raise ConfigurationAppError(
            code="invalid_tier_policy",
            message=f"Rate limit policy for tier '{tier.value}' must be an object",
            details={"tier": tier.value, "hint": f"got {type(override).__name__}"},
        )

    base = DEFAULT_TIER_POLICIES[tier].model_dump()
    try:
        return TierPolicy.model_validate({**base, **override})
    except ValidationError as exc:
        raise ConfigurationAppError(
            code="invalid_tier_policy",
            message=f"Invalid rate limit policy for tier '{tier.value}'",
            details={"tier": tier.value, "hint": str(exc.errors()[0].get("msg", ""))},
        ) from exc


class PolicyTable:
    """Immutable mapping from Tier to TierPolicy with a default tier."""

    def __init__(
        self,
        policies: Mapping[Tier, TierPolicy] | None = None,
        *,
        default_tier: Tier = Tier.FREE,
    ) -> None:
        merged = dict(DEFAULT_TIER_POLICIES)
        if policies:
            merged.update(policies)
        self._policies: dict[Tier, TierPolicy] = merged
        self._default_tier = default_tier

    @property
    def default_tier(self) -> Tier:
        return self._default_tier

    @classmethod
    def from_settings(cls, rate_limit_settings: RateLimitSettings) -> "PolicyTable":
        """Build the table from settings without ever failing startup.

        Overrides for unknown tiers are ignored and malformed overrides are
        replaced by the built-in policy; both are logged as warnings.
        """
        default_tier = parse_tier(rate_limit_settings.default_tier)

        policies: dict[Tier, TierPolicy] = {}
        for name, override in rate_limit_settings.tiers.items():
            try:
                tier = Tier(name.strip().lower())
            except ValueError:
                logger.warning(
                    "rate_limit.policy_config_invalid",
                    extra={"tier": name, "reason": "unknown_tier"},
                )
                continue

            try:
                policies[tier] = _build_policy(tier, override)
            except ConfigurationAppError as exc:
                logger.warning(
                    "rate_limit.policy_config_invalid",
                    extra={
                        "tier": tier.value,
                        "reason": exc.code,
                        "hint": (exc.details or {}).get("hint"),
                        "using": "built_in_default",
                    },
                )

        return cls(policies, default_tier=default_tier)

    def lookup(self, tier: Tier | str | None) -> TierPolicy:
        """Return the policy for a tier; unknown names get the default tier's policy."""
        return self._policies[parse_tier(tier, self._default_tier)]

    def as_dict(self) -> dict[str, TierPolicy]:
        return {tier.value: policy for tier, policy in self._policies.items()}
