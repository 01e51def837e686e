from __future__ import annotations

from fastapi.testclient import TestClient

from quota_gate.core.app_factory import create_app
from quota_gate.core.config import LogSettings, Settings


client = TestClient(create_app())


def test_preserves_incoming_request_id_header():
    incoming_id = "test-request-id-123"
    resp = client.get("/health", headers={"X-Request-ID": incoming_id})

    assert resp.status_code == 200
    assert resp.headers.get("X-Request-ID") == incoming_id


def test_generates_request_id_when_missing():
    resp = client.get("/health")

    assert resp.status_code == 200
    generated = resp.headers.get("X-Request-ID")
    assert generated
    assert isinstance(generated, str)
    assert len(generated) > 0

    duration = resp.headers.get("X-Request-Duration-ms")
    assert duration is not None


def test_rejections_carry_request_id_in_header_and_body():
    local = TestClient(create_app())

    for _ in range(10):
        local.get("/v1/rate-limit/status")
    resp = local.get("/v1/rate-limit/status", headers={"X-Request-ID": "req-429"})

    assert resp.status_code == 429
    assert resp.headers.get("X-Request-ID") == "req-429"
    assert resp.json()["error"]["request_id"] == "req-429"


def test_request_id_header_is_configurable():
    cfg = Settings(log=LogSettings(request_id_header="X-Correlation-ID", format="plain"))
    local = TestClient(create_app(cfg))

    resp = local.get("/health", headers={"X-Correlation-ID": "corr-1"})

    assert resp.headers.get("X-Correlation-ID") == "corr-1"
