"""OpenAPI metadata and customization utilities.

Provides a helper to enrich the generated OpenAPI schema with:
- Tags metadata
- The 429 / 503 responses and X-RateLimit-* headers that admission control
  adds to every non-exempt operation

This keeps documentation concerns decoupled from the app factory.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable

from fastapi import FastAPI

_RATE_LIMIT_HEADERS = {
    "X-RateLimit-Limit": "Requests allowed per sustained (hourly) window.",
    "X-RateLimit-Remaining": "Requests left in the sustained window.",
    "X-RateLimit-Reset": "UNIX epoch seconds when the sustained window resets.",
    "X-RateLimit-Burst-Limit": "Requests allowed per burst window.",
    "X-RateLimit-Burst-Remaining": "Requests left in the burst window.",
    "X-RateLimit-Burst-Reset": "UNIX epoch seconds when the burst window resets.",
}


def _header_docs(names: Iterable[str]) -> Dict[str, Any]:
    return {
        name: {"description": _RATE_LIMIT_HEADERS[name], "schema": {"type": "integer"}}
        for name in names
    }


def apply_openapi_customizations(app: FastAPI, *, exempt_paths: Iterable[str] = ()) -> None:
    """Patch FastAPI's OpenAPI generation to document admission control.

    - Adds tags metadata if not present
    - Documents the 429 (quota exceeded) and 503 (limiter unavailable)
      responses on every operation not under an exempt path
    """

    original_openapi = app.openapi
    exempt = tuple(p.rstrip("/") for p in exempt_paths if p.rstrip("/"))

    def custom_openapi() -> Dict[str, Any]:
        schema = original_openapi()

        # Tags metadata
        tags = schema.setdefault("tags", [])
        existing_tag_names = {t.get("name") for t in tags}
        desired_tags = [
            {
                "name": "Rate Limit",
                "description": "Quota usage of the calling subject.",
            },
            {
                "name": "Health",
                "description": "Liveness and readiness checks.",
            },
        ]
        for tag in desired_tags:
            if tag["name"] not in existing_tag_names:
                tags.append(tag)

        paths = schema.get("paths", {})
        for path, methods in paths.items():
            if any(path == p or path.startswith(p + "/") for p in exempt):
                continue
            for method_obj in methods.values():
                if not isinstance(method_obj, dict):
                    continue
                responses = method_obj.setdefault("responses", {})
                responses.setdefault(
                    "429",
                    {
                        "description": "Quota exceeded in the hourly or burst window.",
                        "headers": {
                            "Retry-After": {
                                "description": "Seconds to wait before retrying.",
                                "schema": {"type": "integer"},
                            },
                            **_header_docs(_RATE_LIMIT_HEADERS),
                        },
                    },
                )
                responses.setdefault(
                    "503",
                    {"description": "Admission control failed; the request was rejected."},
                )

        return schema

    app.openapi = custom_openapi  # type: ignore[assignment]
