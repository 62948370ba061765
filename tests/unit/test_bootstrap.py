"""
Unit tests for process wiring.
"""

import asyncio
import os
import signal

import pytest

from jobrunner.bootstrap import (
    create_alert_sink,
    create_runner,
    create_store,
    install_signal_handlers,
)
from jobrunner.config import Settings
from jobrunner.observability.alerting import LoggingAlertSink, WebhookAlertSink
from jobrunner.runner import JobRunner
from jobrunner.store import MemoryStore, RedisStore


class TestBootstrap:
    """Tests for the factory functions."""

    def test_memory_store_without_redis_url(self):
        assert isinstance(create_store(Settings(_env_file=None, redis_url=None)), MemoryStore)

    @pytest.mark.asyncio
    async def test_redis_store_with_url(self):
        store = create_store(Settings(_env_file=None, redis_url="redis://localhost:6379/0"))

        assert isinstance(store, RedisStore)
        await store.close()

    def test_alert_sink_selection(self):
        webhook = create_alert_sink(
            Settings(_env_file=None, alert_webhook_url="https://alerts.example.com/hook")
        )
        default = create_alert_sink(Settings(_env_file=None, alert_webhook_url=None))

        assert isinstance(webhook, WebhookAlertSink)
        assert isinstance(default, LoggingAlertSink)

    def test_create_runner(self, store: MemoryStore):
        settings = Settings(_env_file=None, instance_id="worker-7", max_consecutive_failures=4)

        runner = create_runner(settings, store=store, configure_logging=False)

        assert isinstance(runner, JobRunner)
        assert runner.config.instance_id == "worker-7"
        assert runner.config.max_consecutive_failures == 4
        assert runner.lock_manager.instance_id == "worker-7"


class TestSignalHandlers:
    """Tests for SIGTERM/SIGINT wiring."""

    @pytest.mark.asyncio
    async def test_sigterm_shuts_runner_down(self, runner: JobRunner):
        loop = asyncio.get_running_loop()
        install_signal_handlers(runner)
        try:
            os.kill(os.getpid(), signal.SIGTERM)
            for _ in range(50):
                await asyncio.sleep(0.01)
                if runner.is_shutting_down:
                    break

            assert runner.is_shutting_down is True
        finally:
            assert loop.remove_signal_handler(signal.SIGTERM) is True
            assert loop.remove_signal_handler(signal.SIGINT) is True
