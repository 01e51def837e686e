"""Prometheus metrics for admission control."""

from prometheus_client import Counter, Gauge, Histogram

# Decision metrics
DECISIONS = Counter(
    "quota_gate_decisions_total",
    "Admission decisions by outcome",
    ["outcome", "tier"],  # outcome: allowed, warned, rejected, error
)

# Degraded mode metrics
DEGRADED_MODE_ACTIVATIONS = Counter(
    "quota_gate_degraded_mode_activations_total",
    "Times the shared counter store became unavailable and fallback took over",
)

FALLBACK_REQUESTS = Counter(
    "quota_gate_fallback_requests_total",
    "Requests counted by the per-instance fallback counter",
)

DEGRADED_MODE = Gauge(
    "quota_gate_degraded_mode",
    "Whether this instance is counting locally (1) or via the shared store (0)",
)

STORE_LATENCY = Histogram(
    "quota_gate_store_latency_seconds",
    "Shared counter store round trip latency in seconds",
    ["result"],  # ok, unavailable
    buckets=[0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
)


def record_decision(outcome: str, tier: str) -> None:
    """Record an admission decision outcome."""
    DECISIONS.labels(outcome=outcome, tier=tier).inc()


def record_degraded_mode_entered() -> None:
    """Record the start of a degraded-mode episode."""
    DEGRADED_MODE_ACTIVATIONS.inc()
    DEGRADED_MODE.set(1)


def record_degraded_mode_exited() -> None:
    """Record the end of a degraded-mode episode."""
    DEGRADED_MODE.set(0)


def record_fallback_request() -> None:
    """Record one request counted by the fallback counter."""
    FALLBACK_REQUESTS.inc()


def observe_store_latency(seconds: float, result: str) -> None:
    """Record the duration of one store round trip."""
    STORE_LATENCY.labels(result=result).observe(seconds)
