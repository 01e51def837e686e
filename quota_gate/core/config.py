"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Map environments to their respective .env files (relative to PROJECT_ROOT)
ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

# Select the .env file for the current environment
_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file and os.getenv("TESTING", "").lower() != "true":
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    title: str = Field(
        "Quota Gate",
        description="Service name shown in OpenAPI docs",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field(
        "json",
        description="Log format: 'json' (structured) or 'plain'",
    )
    output: str = Field(
        "stdout",
        description="Log destination: 'stdout' or 'file'",
    )
    file_path: str | None = Field(
        None,
        description="Log file path when output is 'file'",
    )
    max_bytes: int = Field(
        10 * 1024 * 1024,
        description="Rotate log file after this many bytes (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(
        5,
        description="Number of rotated log files to keep",
        ge=0,
    )
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to read/propagate the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class RedisSettings(BaseSettings):
    """Shared counter store (Redis) connection configuration."""

    enabled: bool = Field(
        True,
        description="Use Redis for cluster-wide counters; false forces the local counter",
    )
    url: str = Field(
        "redis://localhost:6379/0",
        description="Redis connection URL",
    )
    password: str | None = Field(
        None,
        description="Redis password (overrides the one embedded in the URL)",
    )
    connect_timeout_seconds: float = Field(
        1.0,
        description="Socket connect timeout in seconds",
        gt=0,
    )
    command_timeout_seconds: float = Field(
        0.25,
        description="Upper bound for one counter round trip; exceeding it triggers fallback",
        gt=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        case_sensitive=False,
    )


class RateLimitSettings(BaseSettings):
    """Tiered admission control configuration."""

    enabled: bool = Field(
        True,
        description="Enable admission control for all non-exempt routes",
    )
    include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* headers on responses",
    )
    default_tier: str = Field(
        "free",
        description="Tier used for anonymous callers and unrecognized tier names",
    )
    key_prefix: str = Field(
        "ratelimit:",
        description="Namespace prefix for counter keys in Redis",
    )
    tiers: dict[str, Any] = Field(
        default_factory=dict,
        description=(
            "Per-tier policy overrides as JSON, e.g. "
            '{"pro": {"limit": 2000, "burst_limit": 80}}'
        ),
    )
    trust_forwarded_for: bool = Field(
        False,
        description="Derive the caller address from X-Forwarded-For (behind a trusted proxy only)",
    )
    exempt_paths: list[str] = Field(
        default_factory=lambda: ["/health", "/health/ready", "/metrics"],
        description="Paths never subject to admission control",
    )
    fallback_cooldown_seconds: float = Field(
        30.0,
        description="How long to skip Redis after a failure before probing it again",
        ge=0,
    )
    fallback_max_entries: int = Field(
        100_000,
        description="Upper bound on keys held by the local fallback counter",
        ge=2,
    )
    login_points: int = Field(
        10,
        description="Attempts allowed per client IP on auth routes within login_duration_seconds",
        ge=1,
    )
    login_duration_seconds: int = Field(
        1,
        description="Window for counting auth route attempts",
        ge=1,
    )
    login_block_seconds: int = Field(
        15 * 60,
        description="Block duration once a client exceeds the auth route limit",
        ge=1,
    )

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if required settings are missing.

    Environments:
    - development: Local development (DEBUG=true)
    - testing: Automated tests (uses .env.testing)
    - staging: Pre-production (uses .env.staging)
    - production: Production deployment (uses .env.production)
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=AppSettings)
    log: LogSettings = Field(default_factory=LogSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
