"""
Prometheus metrics for production observability.

Metrics tracked:
- Request latency (histogram) and count (counter) per endpoint
- Active requests (gauge)
- Webhook events by kind and outcome (counter)
- Signature rejections by reason (counter)
- Usage minutes recorded per plan (counter)
- Duration estimation path (counter) and probe latency (histogram)
- Quota-exceeded signals (counter)
- Conditional write conflicts (counter)

Integration:
- Exposed via /metrics endpoint (Prometheus scraping)
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# ============================================================================
# REQUEST METRICS
# ============================================================================

http_request_duration_seconds = Histogram(
    "minute_ledger_http_request_duration_seconds",
    "HTTP request latency in seconds",
    labelnames=["method", "endpoint", "status_code"],
    buckets=(
        0.001,  # 1ms
        0.005,  # 5ms
        0.010,  # 10ms
        0.025,  # 25ms
        0.050,  # 50ms
        0.100,  # 100ms
        0.250,  # 250ms
        0.500,  # 500ms
        1.000,  # 1s
        2.500,  # 2.5s
        5.000,  # 5s (probe timeout)
    ),
)

http_requests_total = Counter(
    "minute_ledger_http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status_code"],
)

http_requests_active = Gauge(
    "minute_ledger_http_requests_active",
    "Number of in-flight HTTP requests",
    labelnames=["method", "endpoint"],
)

# ============================================================================
# WEBHOOK METRICS
# ============================================================================

webhook_events_total = Counter(
    "minute_ledger_webhook_events_total",
    "Dispatched webhook events",
    labelnames=["kind", "outcome"],  # outcome: success, ignored, duplicate, failure
)

webhook_signature_rejections_total = Counter(
    "minute_ledger_webhook_signature_rejections_total",
    "Webhook deliveries rejected before dispatch",
    labelnames=["reason"],  # missing_credential, signature_mismatch, stale, malformed
)

# ============================================================================
# USAGE METRICS
# ============================================================================

usage_minutes_recorded_total = Counter(
    "minute_ledger_usage_minutes_recorded_total",
    "Transcription minutes added to the ledger",
    labelnames=["plan_type"],
)

quota_exceeded_total = Counter(
    "minute_ledger_quota_exceeded_total",
    "Increments that left a user at or over the monthly quota",
    labelnames=["plan_type"],
)

upload_quota_rejections_total = Counter(
    "minute_ledger_upload_quota_rejections_total",
    "Uploads refused at registration or completion",
    labelnames=["plan_type", "reason"],  # reason: quota, file_size, file_type, bitrate
)

write_conflicts_total = Counter(
    "minute_ledger_write_conflicts_total",
    "Conditional writes that lost a race and were retried",
    labelnames=["record_type"],  # billing, usage
)

# ============================================================================
# DURATION ESTIMATION METRICS
# ============================================================================

duration_estimates_total = Counter(
    "minute_ledger_duration_estimates_total",
    "Upload duration estimates by path",
    labelnames=["path"],  # probe, bitrate_estimate
)

duration_probe_seconds = Histogram(
    "minute_ledger_duration_probe_seconds",
    "ffprobe wall time",
    labelnames=["success"],
    buckets=(0.010, 0.050, 0.100, 0.250, 0.500, 1.000, 2.500, 5.000),
)

# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def track_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """
    Track HTTP request metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        endpoint: API endpoint path
        status_code: HTTP status code
        duration_seconds: Request duration in seconds
    """
    http_request_duration_seconds.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code,
    ).observe(duration_seconds)

    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code,
    ).inc()


def track_webhook_event(kind: str, outcome: str) -> None:
    """
    Track a dispatched webhook event.

    Args:
        kind: Event kind (subscription.created, ...)
        outcome: success, ignored, duplicate or failure
    """
    webhook_events_total.labels(kind=kind, outcome=outcome).inc()


def track_signature_rejection(reason: str) -> None:
    webhook_signature_rejections_total.labels(reason=reason).inc()


def track_usage_minutes(plan_type: str, minutes: int) -> None:
    """Track minutes added to the ledger."""
    if minutes > 0:
        usage_minutes_recorded_total.labels(plan_type=plan_type).inc(minutes)


def track_quota_exceeded(plan_type: str) -> None:
    quota_exceeded_total.labels(plan_type=plan_type).inc()


def track_upload_rejection(plan_type: str, reason: str) -> None:
    upload_quota_rejections_total.labels(plan_type=plan_type, reason=reason).inc()


def track_write_conflict(record_type: str) -> None:
    write_conflicts_total.labels(record_type=record_type).inc()


def track_duration_estimate(path: str) -> None:
    """Track which estimation path produced an upload duration."""
    duration_estimates_total.labels(path=path).inc()


def track_duration_probe(duration_seconds: float, success: bool) -> None:
    duration_probe_seconds.labels(success=str(success).lower()).observe(duration_seconds)


# ============================================================================
# METRICS ENDPOINT
# ============================================================================


def generate_metrics() -> tuple[bytes, str]:
    """
    Generate Prometheus metrics in exposition format (bytes).

    Returns:
        tuple: (metrics_bytes, content_type)
    """
    metrics_data = generate_latest(REGISTRY)
    return metrics_data, CONTENT_TYPE_LATEST
