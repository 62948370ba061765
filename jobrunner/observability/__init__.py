"""
Observability module.
Contains logging, metrics, tracing and alerting setup.
"""

from jobrunner.observability.alerting import (
    AlertSink,
    LoggingAlertSink,
    WebhookAlertSink,
)
from jobrunner.observability.logging import execution_context, setup_logging
from jobrunner.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from jobrunner.observability.tracing import setup_tracing, start_span

__all__ = [
    "setup_logging",
    "execution_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "start_span",
    "AlertSink",
    "LoggingAlertSink",
    "WebhookAlertSink",
]
