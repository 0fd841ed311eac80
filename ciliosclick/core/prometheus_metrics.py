"""
Prometheus metrics integration for the CíliosClick provisioning service.

Exports metrics in Prometheus format for monitoring and alerting.
"""
from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

# Webhook intake
webhook_deliveries_total = Counter(
    "ciliosclick_webhook_deliveries_total",
    "Total webhook deliveries by event and outcome",
    ["event", "outcome"],
)

webhook_signature_failures_total = Counter(
    "ciliosclick_webhook_signature_failures_total",
    "Total webhook deliveries rejected by authentication",
    ["source"],
)

webhook_processing_duration_seconds = Histogram(
    "ciliosclick_webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

# Account pool
allocations_total = Counter(
    "ciliosclick_allocations_total",
    "Total allocation attempts",
    ["result"],  # result: allocated, duplicate, exhausted
)

releases_total = Counter(
    "ciliosclick_releases_total",
    "Total release attempts",
    ["result"],  # result: released, not_found
)

pool_accounts = Gauge(
    "ciliosclick_pool_accounts",
    "Pre-provisioned accounts by status",
    ["status"],
)

# Storage
storage_retries_total = Counter(
    "ciliosclick_storage_retries_total",
    "Retries after transient storage errors",
    ["operation"],
)

# Credentials email
notifications_total = Counter(
    "ciliosclick_notifications_total",
    "Credentials emails by result",
    ["template", "status"],  # status: sent, failed, skipped
)


def get_metrics_response():
    """
    Get Prometheus metrics in text format.

    Returns:
        Tuple of (metrics_text, content_type)
    """
    return generate_latest(), CONTENT_TYPE_LATEST
