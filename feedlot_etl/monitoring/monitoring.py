"""
Monitoring and alerting over retry, dead-letter and processing health.

Alerts are delivered synchronously to every registered sink; a failing sink
is logged and never affects the others.
"""

import math
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Literal

from pydantic import BaseModel, Field

from ..core.models.file_record import FileRecord, FileState
from ..observability.logger import get_logger
from ..observability.metrics import (
    alert_delivery_failures_total,
    alerts_raised_total,
    dead_letter_queue_size,
    increment_counter,
    set_gauge,
)
from ..retry.retry_logic import RetryLogicService
from ..warehouse.run_log import count_errors_since
from ..warehouse.store import TableStore, eq, gte, lt, not_null

logger = get_logger(__name__)

AlertType = Literal["dead_letter_queue_full", "high_retry_rate", "stale_processing", "error_spike"]
Severity = Literal["low", "medium", "high", "critical"]
HealthStatus = Literal["healthy", "warning", "critical"]

DURATION_SAMPLE_LIMIT = 1000
STALE_SAMPLE_SIZE = 5


class AlertThresholds(BaseModel):
    """
    Attributes:
        dead_letter_queue_max_size: Unresolved DLQ entries that raise an alert
        max_retry_rate: Retry rate (percent) that raises an alert
        max_processing_duration_ms: Slowest acceptable file processing time
        error_spike_threshold: Error-level log entries per hour
        stale_processing_timeout_ms: Time a file may stay in a working state
    """

    dead_letter_queue_max_size: int = 100
    max_retry_rate: float = 30.0
    max_processing_duration_ms: int = 1_800_000
    error_spike_threshold: int = 50
    stale_processing_timeout_ms: int = 3_600_000


DEFAULT_ALERT_THRESHOLDS = AlertThresholds()


class ProcessingDuration(BaseModel):
    p50: float = 0
    p95: float = 0
    p99: float = 0


class MonitoringMetrics(BaseModel):
    organization_id: str
    active_retries: int
    dead_letter_queue_size: int
    success_rate: float
    average_retries: float
    errors_by_type: dict[str, int]
    alerts_last_24h: int
    processing_duration: ProcessingDuration
    stale_entities: int
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class MonitoringAlert(BaseModel):
    type: AlertType
    severity: Severity
    message: str
    organization_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class HealthCheck(BaseModel):
    status: HealthStatus
    issues: list[str]
    metrics: MonitoringMetrics


AlertSink = Callable[[MonitoringAlert], None]


def percentile(sorted_values: list[float], pct: float) -> float:
    """Nearest-rank percentile of an ascending list; 0 when empty."""
    if not sorted_values:
        return 0
    index = math.ceil(len(sorted_values) * pct / 100) - 1
    return sorted_values[max(0, index)]


class MonitoringService:
    """
    Aggregates health metrics for an organization and raises alerts.
    """

    def __init__(
        self,
        store: TableStore,
        retry_service: RetryLogicService,
        thresholds: AlertThresholds | None = None
    ):
        self.store = store
        self.retry_service = retry_service
        self.thresholds = thresholds or DEFAULT_ALERT_THRESHOLDS
        self._sinks: list[AlertSink] = []
        self._sinks_lock = threading.Lock()

    # =======================
    # SINKS
    # =======================

    def register_sink(self, sink: AlertSink) -> None:
        with self._sinks_lock:
            self._sinks.append(sink)

    def unregister_sink(self, sink: AlertSink) -> None:
        with self._sinks_lock:
            if sink in self._sinks:
                self._sinks.remove(sink)

    def _send_alert(self, alert: MonitoringAlert) -> None:
        logger.warning(
            f"ETL alert [{alert.severity.upper()}]: {alert.message}",
            extra={
                "alert_type": alert.type,
                "severity": alert.severity,
                "organization_id": alert.organization_id,
            }
        )
        increment_counter(alerts_raised_total, alert_type=alert.type, severity=alert.severity)

        with self._sinks_lock:
            sinks = list(self._sinks)
        for sink in sinks:
            try:
                sink(alert)
            except Exception as e:
                increment_counter(alert_delivery_failures_total)
                logger.error(
                    "Failed to send alert notification",
                    extra={"alert_type": alert.type, "error": str(e)},
                    exc_info=True
                )

    # =======================
    # METRICS
    # =======================

    def get_metrics(self, organization_id: str) -> MonitoringMetrics:
        now = datetime.now(timezone.utc)
        stats = self.retry_service.get_retry_statistics(organization_id)
        dead_letters = self.retry_service.dead_letters
        set_gauge(dead_letter_queue_size, stats.dead_letter_queue_size, organization_id=organization_id)

        return MonitoringMetrics(
            organization_id=organization_id,
            active_retries=stats.active_retries,
            dead_letter_queue_size=stats.dead_letter_queue_size,
            success_rate=stats.success_rate,
            average_retries=stats.average_retries,
            errors_by_type=dead_letters.errors_by_kind(organization_id),
            alerts_last_24h=dead_letters.count_created_since(organization_id, now - timedelta(hours=24)),
            processing_duration=self._processing_duration(organization_id, now),
            stale_entities=len(self.get_stale_files(organization_id)),
            timestamp=now,
        )

    def _processing_duration(self, organization_id: str, now: datetime) -> ProcessingDuration:
        """Percentiles (ms) of processing time for files completed in the last 24h."""
        rows = self.store.select(
            FileRecord.TABLE,
            [
                eq("organization_id", organization_id),
                not_null("completed_at"),
                not_null("processing_started_at"),
                gte("processing_started_at", now - timedelta(hours=24)),
            ],
            order_by="processing_started_at",
            descending=True,
            limit=DURATION_SAMPLE_LIMIT
        )
        durations = sorted(
            (row["completed_at"] - row["processing_started_at"]).total_seconds() * 1000
            for row in rows
        )
        return ProcessingDuration(
            p50=percentile(durations, 50),
            p95=percentile(durations, 95),
            p99=percentile(durations, 99),
        )

    def get_stale_files(self, organization_id: str) -> list[FileRecord]:
        """Files still in a working state past the stale processing timeout."""
        threshold = datetime.now(timezone.utc) - timedelta(
            milliseconds=self.thresholds.stale_processing_timeout_ms
        )
        rows = self.store.select(
            FileRecord.TABLE,
            [
                eq("organization_id", organization_id),
                not_null("processing_started_at"),
                lt("processing_started_at", threshold),
            ],
            order_by="processing_started_at"
        )
        records = [FileRecord(**row) for row in rows]
        return [
            r for r in records
            if FileState(r.current_state) not in (FileState.UPLOADED, FileState.LOADED, FileState.FAILED)
        ]

    def get_hourly_error_count(self, organization_id: str) -> int:
        return count_errors_since(
            self.store, organization_id, datetime.now(timezone.utc) - timedelta(hours=1)
        )

    # =======================
    # ALERTS
    # =======================

    def check_alerts(self, organization_id: str) -> list[MonitoringAlert]:
        """Evaluate alert conditions and deliver every raised alert to the sinks."""
        metrics = self.get_metrics(organization_id)
        thresholds = self.thresholds
        alerts: list[MonitoringAlert] = []

        if metrics.dead_letter_queue_size >= thresholds.dead_letter_queue_max_size:
            alerts.append(MonitoringAlert(
                type="dead_letter_queue_full",
                severity=(
                    "critical"
                    if metrics.dead_letter_queue_size >= thresholds.dead_letter_queue_max_size * 2
                    else "high"
                ),
                message=(
                    f"Dead letter queue has {metrics.dead_letter_queue_size} entries "
                    f"(threshold: {thresholds.dead_letter_queue_max_size})"
                ),
                organization_id=organization_id,
                metadata={
                    "current_size": metrics.dead_letter_queue_size,
                    "threshold": thresholds.dead_letter_queue_max_size,
                },
            ))

        retry_rate = 100 - metrics.success_rate
        if retry_rate >= thresholds.max_retry_rate:
            alerts.append(MonitoringAlert(
                type="high_retry_rate",
                severity="critical" if retry_rate >= thresholds.max_retry_rate * 2 else "high",
                message=f"High retry rate: {retry_rate:.1f}% (threshold: {thresholds.max_retry_rate}%)",
                organization_id=organization_id,
                metadata={"retry_rate": retry_rate, "threshold": thresholds.max_retry_rate},
            ))

        stale = self.get_stale_files(organization_id)
        if stale:
            alerts.append(MonitoringAlert(
                type="stale_processing",
                severity="medium",
                message=f"Found {len(stale)} entities with stale processing",
                organization_id=organization_id,
                metadata={
                    "stale_count": len(stale),
                    "entities": [
                        {"id": r.id, "state": FileState(r.current_state).value}
                        for r in stale[:STALE_SAMPLE_SIZE]
                    ],
                },
            ))

        hourly_errors = self.get_hourly_error_count(organization_id)
        if hourly_errors >= thresholds.error_spike_threshold:
            alerts.append(MonitoringAlert(
                type="error_spike",
                severity="high",
                message=(
                    f"Error spike detected: {hourly_errors} errors in the last hour "
                    f"(threshold: {thresholds.error_spike_threshold})"
                ),
                organization_id=organization_id,
                metadata={"hourly_errors": hourly_errors, "threshold": thresholds.error_spike_threshold},
            ))

        for alert in alerts:
            self._send_alert(alert)
        return alerts

    def get_health_check(self, organization_id: str) -> HealthCheck:
        metrics = self.get_metrics(organization_id)
        max_dlq = self.thresholds.dead_letter_queue_max_size
        issues: list[str] = []
        status: HealthStatus = "healthy"

        if metrics.dead_letter_queue_size >= max_dlq * 2:
            issues.append(
                f"Critical: Dead letter queue severely overloaded ({metrics.dead_letter_queue_size} entries)"
            )
            status = "critical"
        if metrics.success_rate < 50:
            issues.append(f"Critical: Very low success rate ({metrics.success_rate:.1f}%)")
            status = "critical"

        if status != "critical":
            if metrics.dead_letter_queue_size >= max_dlq:
                issues.append(
                    f"Warning: Dead letter queue approaching limit ({metrics.dead_letter_queue_size} entries)"
                )
                status = "warning"
            if metrics.success_rate < 70:
                issues.append(f"Warning: Low success rate ({metrics.success_rate:.1f}%)")
                status = "warning"
            if metrics.average_retries > 2:
                issues.append(f"Warning: High average retry count ({metrics.average_retries:.1f})")
                status = "warning"
            if metrics.processing_duration.p95 > self.thresholds.max_processing_duration_ms:
                issues.append(
                    f"Warning: Slow processing (p95 {metrics.processing_duration.p95 / 1000:.0f}s)"
                )
                status = "warning"

        return HealthCheck(status=status, issues=issues, metrics=metrics)

    # =======================
    # BACKGROUND CHECKS
    # =======================

    def start_monitoring(self, organization_id: str, interval_seconds: float = 300.0) -> Callable[[], None]:
        """
        Run check_alerts every ``interval_seconds`` on a daemon thread.

        Returns:
            A function that stops the loop and waits for the thread to exit
        """
        stop_event = threading.Event()

        def loop() -> None:
            while not stop_event.wait(interval_seconds):
                try:
                    self.check_alerts(organization_id)
                except Exception as e:
                    logger.error(
                        "Monitoring check failed",
                        extra={"organization_id": organization_id, "error": str(e)},
                        exc_info=True
                    )

        thread = threading.Thread(target=loop, name=f"etl-monitoring-{organization_id}", daemon=True)
        thread.start()
        logger.info(
            "Monitoring started",
            extra={"organization_id": organization_id, "interval_seconds": interval_seconds}
        )

        def stop() -> None:
            stop_event.set()
            thread.join(timeout=interval_seconds + 1)
            logger.info("Monitoring stopped", extra={"organization_id": organization_id})

        return stop
