"""
Health metrics and alerting.
"""

from .monitoring import (
    DEFAULT_ALERT_THRESHOLDS,
    AlertThresholds,
    HealthCheck,
    MonitoringAlert,
    MonitoringMetrics,
    MonitoringService,
)

__all__ = [
    "AlertThresholds",
    "DEFAULT_ALERT_THRESHOLDS",
    "HealthCheck",
    "MonitoringAlert",
    "MonitoringMetrics",
    "MonitoringService",
]
