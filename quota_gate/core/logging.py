"""Structured logging for admission decisions.

Every admission event is logged as a short event name (``rate_limit.exceeded``)
plus structured fields passed through ``extra``. This module owns what those
fields may contain once they leave the process:

- credentials (API keys, auth headers, Redis passwords) are replaced by
  ``[REDACTED]``;
- caller identifiers (``subject_id``, ``client_ip``) are never written raw:
  they are replaced by a stable pseudonym (``subject_hash``, ``client_hash``)
  so one caller's decisions can still be correlated across log lines;
- the current request id is attached from a context variable.

Call sites log the raw identifier and rely on the handler filter to
pseudonymize it.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from logging import LogRecord
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterable, Mapping

from quota_gate.core.config import LogSettings, settings

_request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

REDACTED = "[REDACTED]"

# Credential-bearing fields, matched case-insensitively at any nesting depth
SENSITIVE_KEYS_DEFAULT: frozenset[str] = frozenset(
    {
        "api_key",
        "x-api-key",
        "authorization",
        "token",
        "secret",
        "password",
        "cookie",
        "set-cookie",
        "redis_url",
        "redis_password",
        "x-forwarded-for",
    }
)

# Caller identifiers and the field their pseudonym is written to
PSEUDONYMIZED_KEYS: Mapping[str, str] = {
    "subject_id": "subject_hash",
    "client_ip": "client_hash",
}

# Attributes every LogRecord carries; everything else came in through ``extra``
_RECORD_ATTRS = frozenset(
    vars(LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}

# Marks handlers installed by configure_logging so a reconfigure replaces only them
_OWNED_HANDLER_ATTR = "_quota_gate_handler"


def set_request_id(request_id: str | None) -> None:
    _request_id_var.set(request_id)


def get_request_id() -> str | None:
    return _request_id_var.get()


def clear_request_id() -> None:
    _request_id_var.set(None)


def hash_identifier(value: str) -> str:
    """Pseudonymize a caller identifier (``user:42``, ``ip:10.0.0.1``).

    Stable across processes so logs from several instances correlate.
    """

    return hashlib.sha256(value.encode()).hexdigest()[:16]


def _scrub(value: Any, sensitive_keys: frozenset[str]) -> Any:
    """Return ``value`` with credentials redacted and identifiers hashed."""

    if isinstance(value, Mapping):
        scrubbed: dict[Any, Any] = {}
        for key, item in value.items():
            name = str(key).lower()
            if name in PSEUDONYMIZED_KEYS:
                scrubbed[PSEUDONYMIZED_KEYS[name]] = None if item is None else hash_identifier(str(item))
            elif name in sensitive_keys:
                scrubbed[key] = REDACTED
            else:
                scrubbed[key] = _scrub(item, sensitive_keys)
        return scrubbed
    if isinstance(value, (list, tuple)):
        return type(value)(_scrub(v, sensitive_keys) for v in value)
    return value


def record_fields(record: LogRecord) -> dict[str, Any]:
    """Return the structured fields a record was logged with."""

    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


class RequestIdFilter(logging.Filter):
    """Attach request_id from context when absent on the record."""

    def filter(self, record: LogRecord) -> bool:  # noqa: D401
        if getattr(record, "request_id", None) is None:
            request_id = get_request_id()
            if request_id:
                record.request_id = request_id
        return True


class SensitiveDataFilter(logging.Filter):
    """Scrub structured fields in place before any formatter sees them.

    Raw identifiers are removed from the record, not just masked, so a
    formatter that prints every attribute cannot leak them.
    """

    def __init__(self, sensitive_keys: Iterable[str] | None = None) -> None:
        super().__init__()
        self.sensitive_keys = frozenset(
            k.lower() for k in (sensitive_keys or SENSITIVE_KEYS_DEFAULT)
        )

    def filter(self, record: LogRecord) -> bool:  # noqa: D401
        fields = record_fields(record)
        for key in fields:
            delattr(record, key)
        for key, value in _scrub(fields, self.sensitive_keys).items():
            setattr(record, key, value)
        return True


def _timestamp(record: LogRecord) -> str:
    return datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()


class JsonFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, event, then fields."""

    def __init__(self, *, ensure_ascii: bool = True) -> None:
        super().__init__()
        self.ensure_ascii = ensure_ascii

    def format(self, record: LogRecord) -> str:  # noqa: D401
        payload: dict[str, Any] = {
            "timestamp": _timestamp(record),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        payload.update(record_fields(record))
        if "request_id" not in payload and get_request_id():
            payload["request_id"] = get_request_id()
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str, ensure_ascii=self.ensure_ascii)


class KeyValueFormatter(logging.Formatter):
    """Human-readable line with the structured fields appended as key=value."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s %(message)s")

    def format(self, record: LogRecord) -> str:  # noqa: D401
        line = super().format(record)
        fields = record_fields(record)
        if not fields:
            return line
        pairs = " ".join(f"{key}={fields[key]}" for key in sorted(fields))
        return f"{line} {pairs}"


def _build_handler(log_settings: LogSettings) -> logging.Handler:
    if log_settings.output.lower() != "file":
        return logging.StreamHandler(sys.stdout)

    path = Path(log_settings.file_path or "logs/quota_gate.log")
    path.parent.mkdir(parents=True, exist_ok=True)
    if log_settings.max_bytes:
        return RotatingFileHandler(
            path,
            maxBytes=log_settings.max_bytes,
            backupCount=log_settings.backup_count,
            encoding="utf-8",
        )
    return logging.FileHandler(path, encoding="utf-8")


def configure_logging(log_settings: LogSettings | None = None) -> logging.Handler:
    """Install the scrubbing handler on the root logger.

    Calling it again (one call per app built) replaces the handler installed
    by the previous call; handlers added by anyone else are left in place.

    Args:
        log_settings: Optional log settings; defaults to global settings if omitted.

    Returns:
        The installed handler.
    """

    cfg = log_settings or settings.log

    handler = _build_handler(cfg)
    setattr(handler, _OWNED_HANDLER_ATTR, True)
    handler.addFilter(RequestIdFilter())
    handler.addFilter(SensitiveDataFilter())
    handler.setFormatter(
        KeyValueFormatter() if cfg.format.lower() == "plain" else JsonFormatter()
    )

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if getattr(existing, _OWNED_HANDLER_ATTR, False):
            root_logger.removeHandler(existing)
            existing.close()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, cfg.level.upper(), logging.INFO))

    return handler
