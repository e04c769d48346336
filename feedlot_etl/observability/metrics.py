"""
Prometheus metrics collection for the feedlot ETL engine

Counters and histograms for file lifecycle, retry/dead-letter activity,
upsert outcomes and alerting.
"""
from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

# Global registry for metrics
REGISTRY = CollectorRegistry()


# =======================
# FILE LIFECYCLE METRICS
# =======================

state_transitions_total = Counter(
    name="etl_state_transitions_total",
    documentation="Total number of file state transitions",
    labelnames=["from_state", "to_state"],
    registry=REGISTRY,
)

invalid_transitions_total = Counter(
    name="etl_invalid_transitions_total",
    documentation="Transitions rejected because the stored state did not match",
    labelnames=["to_state"],
    registry=REGISTRY,
)

files_processed_total = Counter(
    name="etl_files_processed_total",
    documentation="Total number of files that reached a terminal state",
    labelnames=["pipeline", "final_state"],
    registry=REGISTRY,
)

file_processing_duration_seconds = Histogram(
    name="etl_file_processing_duration_seconds",
    documentation="Wall time spent processing a single file",
    labelnames=["pipeline"],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 600.0],
    registry=REGISTRY,
)

# =======================
# RETRY / DEAD LETTER METRICS
# =======================

retry_attempts_total = Counter(
    name="etl_retry_attempts_total",
    documentation="Total number of attempts made by the retry executor",
    labelnames=["entity_type", "outcome"],  # outcome: success, retry, failed, dead_letter, cancelled
    registry=REGISTRY,
)

errors_total = Counter(
    name="etl_errors_total",
    documentation="Total number of classified errors",
    labelnames=["error_kind"],
    registry=REGISTRY,
)

dead_letter_enqueued_total = Counter(
    name="etl_dead_letter_enqueued_total",
    documentation="Total number of entities sent to the dead letter queue",
    labelnames=["entity_type", "error_kind"],
    registry=REGISTRY,
)

dead_letter_queue_size = Gauge(
    name="etl_dead_letter_queue_size",
    documentation="Unresolved dead letter entries at the last monitoring sample",
    labelnames=["organization_id"],
    registry=REGISTRY,
)

# =======================
# WAREHOUSE METRICS
# =======================

upsert_actions_total = Counter(
    name="etl_upsert_actions_total",
    documentation="Upsert outcomes per fact table",
    labelnames=["table", "action"],  # action: inserted, updated, skipped, pending
    registry=REGISTRY,
)

pending_entries_created_total = Counter(
    name="etl_pending_entries_created_total",
    documentation="Pending dimension entries created on lookup miss",
    labelnames=["dimension"],
    registry=REGISTRY,
)

rows_processed_total = Counter(
    name="etl_rows_processed_total",
    documentation="Rows handled by the orchestrator",
    labelnames=["pipeline", "status"],  # status: processed, failed, pending
    registry=REGISTRY,
)

# =======================
# ALERTING METRICS
# =======================

alerts_raised_total = Counter(
    name="etl_alerts_raised_total",
    documentation="Alerts raised by the monitoring service",
    labelnames=["alert_type", "severity"],
    registry=REGISTRY,
)

alert_delivery_failures_total = Counter(
    name="etl_alert_delivery_failures_total",
    documentation="Alert sink invocations that raised",
    registry=REGISTRY,
)


# =======================
# HELPER FUNCTIONS
# =======================

def generate_metrics() -> bytes:
    """Generate Prometheus metrics in text format"""
    return generate_latest(REGISTRY)


def start_metrics_server(port: int) -> None:
    """Serve the registry over HTTP on a daemon thread."""
    start_http_server(port, registry=REGISTRY)


def increment_counter(counter: Counter, value: float = 1.0, **labels) -> None:
    """
    Increment a counter metric

    Args:
        counter: Prometheus Counter metric
        value: Amount to increment (default: 1.0)
        **labels: Label values for the metric
    """
    if labels:
        counter.labels(**labels).inc(value)
    else:
        counter.inc(value)


def set_gauge(gauge: Gauge, value: float, **labels) -> None:
    gauge.labels(**labels).set(value)


def observe_histogram(histogram: Histogram, value: float, **labels) -> None:
    histogram.labels(**labels).observe(value)


def get_sample_value(name: str, labels: dict[str, str] | None = None) -> float:
    """
    Read the current value of a sample from the registry (0.0 when unset)

    Args:
        name: Sample name, e.g. "etl_upsert_actions_total"
        labels: Label values identifying the sample
    """
    value = REGISTRY.get_sample_value(name, labels or {})
    return value or 0.0
