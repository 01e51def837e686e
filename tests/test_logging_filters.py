"""Tests for sensitive data filtering and formatting in logs."""

from __future__ import annotations

import json
import logging
from io import StringIO
from logging.handlers import RotatingFileHandler

from quota_gate.core.config import LogSettings
from quota_gate.core.logging import (
    JsonFormatter,
    KeyValueFormatter,
    SensitiveDataFilter,
    configure_logging,
    hash_identifier,
)


def _capture(name: str, formatter: logging.Formatter | None = None) -> tuple[logging.Logger, StringIO]:
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    logger.handlers.clear()
    logger.propagate = False

    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.addFilter(SensitiveDataFilter())
    handler.setFormatter(formatter or JsonFormatter())
    logger.addHandler(handler)
    return logger, stream


def test_sensitive_filter_redacts_credentials():
    """Ensure SensitiveDataFilter redacts credential fields."""

    logger, stream = _capture("test_redaction")

    logger.info(
        "test_event",
        extra={
            "authorization": "Bearer sk-secret-123",
            "redis_password": "hunter2",
            "safe_field": "visible",
        },
    )

    output = stream.getvalue()

    assert "sk-secret-123" not in output
    assert "hunter2" not in output
    assert "[REDACTED]" in output
    assert "visible" in output


def test_caller_identifiers_are_pseudonymized():
    """Raw subject ids and addresses are replaced by their stable hash."""

    logger, stream = _capture("test_identifier_pseudonyms")

    logger.warning(
        "rate_limit.exceeded",
        extra={
            "subject_id": "user:alice@example.com",
            "client_ip": "203.0.113.7",
            "x-forwarded-for": "198.51.100.1",
            "burst_count": 11,
        },
    )

    output = stream.getvalue()
    record = json.loads(output)

    assert "alice@example.com" not in output
    assert "203.0.113.7" not in output
    assert "198.51.100.1" not in output
    assert "subject_id" not in record
    assert "client_ip" not in record
    assert record["subject_hash"] == hash_identifier("user:alice@example.com")
    assert record["client_hash"] == hash_identifier("203.0.113.7")
    assert record["x-forwarded-for"] == "[REDACTED]"
    assert record["burst_count"] == 11


def test_same_caller_correlates_across_lines():
    logger, stream = _capture("test_identifier_correlation")

    logger.info("rate_limit.allowed", extra={"subject_id": "ip:10.0.0.1"})
    logger.info("rate_limit.exceeded", extra={"subject_id": "ip:10.0.0.1"})

    first, second = (json.loads(line) for line in stream.getvalue().splitlines())
    assert first["subject_hash"] == second["subject_hash"]
    assert first["event"] == "rate_limit.allowed"


def test_sensitive_filter_allows_decision_fields():
    """Verify admission telemetry passes through unmodified."""

    logger, stream = _capture("test_safe_fields")

    logger.info(
        "rate_limit.allowed",
        extra={
            "request_id": "req-123",
            "subject_type": "user",
            "tier": "pro",
            "hourly_count": 17,
            "degraded": False,
        },
    )

    record = json.loads(stream.getvalue())

    assert record["request_id"] == "req-123"
    assert record["tier"] == "pro"
    assert record["hourly_count"] == 17
    assert record["degraded"] is False
    assert "[REDACTED]" not in stream.getvalue()


def test_sensitive_filter_scrubs_nested_dicts():
    """Ensure nested sensitive fields are redacted and identifiers hashed."""

    logger, stream = _capture("test_nested")

    logger.info(
        "nested_event",
        extra={
            "headers": {
                "authorization": "secret-key",
                "user-agent": "pytest",
            },
            "caller": {"client_ip": "10.1.2.3", "kind": "ip"},
        },
    )

    output = stream.getvalue()

    assert "secret-key" not in output
    assert "10.1.2.3" not in output
    assert "[REDACTED]" in output
    assert "pytest" in output
    assert hash_identifier("10.1.2.3") in output


def test_key_value_formatter_appends_fields():
    logger, stream = _capture("test_plain", KeyValueFormatter())

    logger.warning("rate_limit.warning", extra={"tier": "free", "subject_id": "user:9"})

    line = stream.getvalue().strip()
    assert "WARNING test_plain rate_limit.warning" in line
    assert line.endswith(f"subject_hash={hash_identifier('user:9')} tier=free")
    assert "user:9" not in line


def test_json_formatter_includes_exception():
    logger, stream = _capture("test_exc")

    try:
        raise RuntimeError("store exploded")
    except RuntimeError:
        logger.exception("rate_limit.internal_error")

    record = json.loads(stream.getvalue())
    assert record["event"] == "rate_limit.internal_error"
    assert "RuntimeError" in record["exc_info"]


def test_hash_identifier_is_stable_and_opaque():
    assert hash_identifier("ip:10.0.0.1") == hash_identifier("ip:10.0.0.1")
    assert hash_identifier("ip:10.0.0.1") != hash_identifier("ip:10.0.0.2")
    assert "10.0.0.1" not in hash_identifier("ip:10.0.0.1")
    assert len(hash_identifier("user:42")) == 16


class TestConfigureLogging:
    def test_reconfigure_replaces_only_its_own_handler(self):
        root = logging.getLogger()
        foreign = logging.NullHandler()
        root.addHandler(foreign)
        level = root.level
        try:
            first = configure_logging(LogSettings(format="plain"))
            second = configure_logging(LogSettings(format="json"))

            assert foreign in root.handlers
            assert second in root.handlers
            assert first not in root.handlers
            assert isinstance(second.formatter, JsonFormatter)
        finally:
            root.removeHandler(foreign)
            root.removeHandler(second)
            root.setLevel(level)

    def test_file_output_with_rotation(self, tmp_path):
        root = logging.getLogger()
        level = root.level
        log_file = tmp_path / "logs" / "quota_gate.log"
        handler = configure_logging(
            LogSettings(output="file", file_path=str(log_file), max_bytes=4096, backup_count=2)
        )
        try:
            assert isinstance(handler, RotatingFileHandler)

            logging.getLogger("quota_gate.test").warning(
                "rate_limit.degraded_mode_entered", extra={"reason": "timeout"}
            )
            handler.flush()

            record = json.loads(log_file.read_text(encoding="utf-8").splitlines()[-1])
            assert record["event"] == "rate_limit.degraded_mode_entered"
            assert record["reason"] == "timeout"
        finally:
            root.removeHandler(handler)
            handler.close()
            root.setLevel(level)
