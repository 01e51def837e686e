from __future__ import annotations

"""Application factory for FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers and the
admission limiter) to improve testability: tests build isolated apps with
their own settings and counter store instead of sharing global state.

Middleware order (outermost first): request id → identity (installed by the
embedding service, sets ``request.state.principal``) → admission control.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_client import make_asgi_app

from quota_gate.adapters.rate_limit.base import AbstractWindowCounter
from quota_gate.adapters.rate_limit.in_memory import InMemoryWindowCounter
from quota_gate.adapters.rate_limit.login_guard import LoginAttemptGuard
from quota_gate.adapters.rate_limit.redis_store import RedisWindowCounter, create_redis_client
from quota_gate.api.routes import health_router, rate_limit_router
from quota_gate.core.config import Settings, settings
from quota_gate.core.exception_handlers import setup_exception_handlers
from quota_gate.core.logging import configure_logging
from quota_gate.core.middleware import request_id_middleware
from quota_gate.core.openapi import apply_openapi_customizations
from quota_gate.core.rate_limit import build_rate_limit_middleware
from quota_gate.services.identity import IdentityResolver
from quota_gate.services.limiter import AdmissionLimiter
from quota_gate.services.policy import PolicyTable

logger = logging.getLogger(__name__)


def build_counter_store(cfg: Settings) -> AbstractWindowCounter | None:
    """Create the shared Redis counter, or None when Redis is disabled."""
    if not cfg.redis.enabled:
        logger.warning(
            "rate_limit.shared_store_disabled",
            extra={"scope": "per_instance_limits"},
        )
        return None

    return RedisWindowCounter(
        create_redis_client(cfg.redis),
        key_prefix=cfg.rate_limit.key_prefix,
        command_timeout=cfg.redis.command_timeout_seconds,
    )


def build_admission_limiter(cfg: Settings, store: AbstractWindowCounter | None) -> AdmissionLimiter:
    """Assemble the limiter from settings and a counter store."""
    return AdmissionLimiter(
        policies=PolicyTable.from_settings(cfg.rate_limit),
        store=store,
        fallback=InMemoryWindowCounter(max_entries=cfg.rate_limit.fallback_max_entries),
        cooldown_seconds=cfg.rate_limit.fallback_cooldown_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Close the shared store connection pool on shutdown."""
    yield

    store = getattr(app.state, "counter_store", None)
    if isinstance(store, RedisWindowCounter):
        await store.close()


def create_app(
    app_settings: Settings | None = None,
    *,
    counter_store: AbstractWindowCounter | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        app_settings: Settings to use; defaults to the global settings.
        counter_store: Shared counter store to use instead of building a
            Redis client from settings (tests, custom backends).

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    cfg = app_settings or settings

    # Logging first so subsequent init logs are formatted as desired
    configure_logging(cfg.log)

    app = FastAPI(
        title=cfg.app.title,
        description=(
            "Admission control for the benchmarking API: tiered quotas enforced "
            "over an hourly and a burst window, counted in Redis with a "
            "per-instance fallback when Redis is unreachable."
        ),
        version="0.1.0",
        debug=cfg.app.debug,
        lifespan=lifespan,
    )

    store = counter_store if counter_store is not None else build_counter_store(cfg)
    limiter = build_admission_limiter(cfg, store)
    resolver = IdentityResolver(
        default_tier=limiter.policies.default_tier,
        trust_forwarded_for=cfg.rate_limit.trust_forwarded_for,
    )

    app.state.settings = cfg
    app.state.counter_store = store
    app.state.admission_limiter = limiter
    app.state.identity_resolver = resolver
    app.state.login_guard = LoginAttemptGuard(
        points=cfg.rate_limit.login_points,
        duration_seconds=cfg.rate_limit.login_duration_seconds,
        block_seconds=cfg.rate_limit.login_block_seconds,
    )

    # Middleware (last registered runs first)
    if cfg.rate_limit.enabled:
        app.middleware("http")(
            build_rate_limit_middleware(
                limiter,
                resolver,
                include_headers=cfg.rate_limit.include_headers,
                exempt_paths=cfg.rate_limit.exempt_paths,
            )
        )
    app.middleware("http")(request_id_middleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(rate_limit_router, prefix="/v1")
    app.include_router(health_router)
    app.mount("/metrics", make_asgi_app())

    # OpenAPI customizations (tags, rate limit responses)
    apply_openapi_customizations(app, exempt_paths=cfg.rate_limit.exempt_paths)

    logger.info(
        "app.created",
        extra={
            "rate_limit_enabled": cfg.rate_limit.enabled,
            "shared_store": store is not None,
            "default_tier": limiter.policies.default_tier.value,
        },
    )
    return app
