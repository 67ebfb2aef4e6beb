"""
Prometheus metrics for CreativeWriter API.
Exposed at /metrics from main.py.
"""

from prometheus_client import CollectorRegistry, Counter, Histogram

registry = CollectorRegistry(auto_describe=True)

# ────────────────────────────────────────────────
# HTTP
# ────────────────────────────────────────────────
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
    registry=registry,
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path"],
    registry=registry,
)

# ────────────────────────────────────────────────
# Metering & Billing
# ────────────────────────────────────────────────
usage_decisions_total = Counter(
    "usage_decisions_total",
    "Usage gate decisions",
    ["feature", "outcome"],
    registry=registry,
)
usage_gate_fail_open_total = Counter(
    "usage_gate_fail_open_total",
    "Requests let through because the usage check itself failed",
    ["feature"],
    registry=registry,
)
webhook_events_total = Counter(
    "payment_webhook_events_total",
    "Payment gateway webhook events",
    ["event", "outcome"],
    registry=registry,
)
payments_verified_total = Counter(
    "payments_verified_total",
    "Synchronous payment verifications",
    ["outcome"],
    registry=registry,
)
