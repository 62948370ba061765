"""
Process wiring: build a runner and its collaborators from settings.
"""

import asyncio
import logging
import signal

from jobrunner.config import RunnerConfig, Settings, get_settings
from jobrunner.observability.alerting import AlertSink, LoggingAlertSink, WebhookAlertSink
from jobrunner.observability.logging import setup_logging
from jobrunner.observability.metrics import get_metrics
from jobrunner.observability.tracing import setup_tracing
from jobrunner.runner import JobRunner
from jobrunner.store import KeyValueStore, MemoryStore, RedisStore

logger = logging.getLogger(__name__)


def create_store(settings: Settings | None = None) -> KeyValueStore:
    """
    Create the shared store.

    Uses Redis when ``redis_url`` is configured. The in-memory store only
    coordinates runners inside one process.
    """
    settings = settings or get_settings()

    if settings.redis_url:
        logger.info("Using Redis store")
        return RedisStore.from_url(settings.redis_url)

    logger.warning("REDIS_URL not set, using in-memory store (single process only)")
    return MemoryStore()


def create_alert_sink(settings: Settings | None = None) -> AlertSink:
    """Create the alert sink: webhook when configured, logging otherwise."""
    settings = settings or get_settings()

    if settings.alert_webhook_url:
        return WebhookAlertSink(settings.alert_webhook_url)
    return LoggingAlertSink()


def create_runner(
    settings: Settings | None = None,
    store: KeyValueStore | None = None,
    configure_logging: bool = True,
) -> JobRunner:
    """
    Build a fully wired JobRunner from settings.

    Args:
        settings: Settings to use. Loaded from the environment when omitted.
        store: Store override. Built from settings when omitted.
        configure_logging: Install the structlog configuration.

    Returns:
        A ready JobRunner.
    """
    settings = settings or get_settings()
    config = RunnerConfig.from_settings(settings)

    if configure_logging:
        setup_logging(settings.log_level, settings.log_format, instance_id=config.instance_id)

    if settings.otel_enabled:
        setup_tracing(instance_id=config.instance_id)

    return JobRunner(
        store or create_store(settings),
        config=config,
        alert_sink=create_alert_sink(settings),
        metrics=get_metrics(),
    )


def install_signal_handlers(runner: JobRunner) -> None:
    """Shut the runner down on SIGTERM/SIGINT."""
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(runner.shutdown())
        )
