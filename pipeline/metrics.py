"""
Prometheus metrics for the transcoding workers.

Exposed at /metrics by worker.health_server in Prometheus text format.
"""

from prometheus_client import Counter, Gauge, Histogram, Info, generate_latest

APP_INFO = Info("vsp", "VSP transcoder information")

# =============================================================================
# Job Metrics
# =============================================================================

JOBS_TOTAL = Counter(
    "vsp_jobs_total",
    "Total transcoding job deliveries by outcome",
    ["queue", "outcome"],  # started, completed, redelivered, dead_lettered
)

JOBS_ACTIVE = Gauge(
    "vsp_jobs_active",
    "Number of jobs currently being processed",
    ["queue"],
)

JOB_DURATION_SECONDS = Histogram(
    "vsp_job_duration_seconds",
    "Wall time of one job delivery in seconds",
    ["queue", "result"],  # success, failure
    buckets=[30, 60, 120, 300, 600, 1200, 1800, 3600, 7200],
)

RENDITION_DURATION_SECONDS = Histogram(
    "vsp_rendition_duration_seconds",
    "Encode time of one rendition in seconds",
    ["rendition"],
    buckets=[10, 30, 60, 120, 300, 600, 1200, 3600],
)

DEAD_LETTER_ADMISSION_FAILURES_TOTAL = Counter(
    "vsp_dead_letter_admission_failures_total",
    "Dead-letter writes that failed (message left pending)",
    ["queue"],
)

# =============================================================================
# Storage Metrics
# =============================================================================

STORAGE_OPERATIONS_TOTAL = Counter(
    "vsp_storage_operations_total",
    "Total storage operations",
    ["operation", "result"],  # operation: fetch, put, delete. result: success, failed
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics in text format."""
    return generate_latest()


def init_app_info(version: str = "0.1.0"):
    """Initialize application info metric."""
    APP_INFO.info({"version": version, "app": "vsp-transcoder"})
