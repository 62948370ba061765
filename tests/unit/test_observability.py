"""
Unit tests for metrics, logging and tracing helpers.
"""

import json
import logging

import pytest
import structlog
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from prometheus_client import CollectorRegistry

from jobrunner.observability import tracing
from jobrunner.observability.logging import execution_context, setup_logging
from jobrunner.observability.metrics import MetricsCollector
from jobrunner.observability.tracing import set_span_attributes, start_span


class TestMetricsCollector:
    """Tests for MetricsCollector."""

    def test_job_outcomes(self, metrics: MetricsCollector, registry: CollectorRegistry):
        metrics.record_job_success("sync", 0.2)
        metrics.record_job_failure("sync", 1.5)
        metrics.record_job_retry("sync")
        metrics.set_consecutive_failures("sync", 2)

        assert registry.get_sample_value("scheduler_job_success_total", {"job_id": "sync"}) == 1.0
        assert registry.get_sample_value("scheduler_job_failure_total", {"job_id": "sync"}) == 1.0
        assert registry.get_sample_value("scheduler_job_retry_total", {"job_id": "sync"}) == 1.0
        assert registry.get_sample_value(
            "scheduler_job_consecutive_failures", {"job_id": "sync"}
        ) == 2.0
        assert registry.get_sample_value(
            "scheduler_job_duration_seconds_count", {"job_id": "sync", "status": "failed"}
        ) == 1.0

    def test_exposition(self, metrics: MetricsCollector):
        metrics.record_alert("critical")
        metrics.update_dlq_size(4)

        output = metrics.get_metrics().decode()

        assert 'scheduler_alerts_total{severity="critical"} 1.0' in output
        assert "scheduler_dlq_size 4.0" in output
        assert metrics.get_content_type().startswith("text/plain")


class TestLogging:
    """Tests for structured logging setup."""

    @pytest.fixture(autouse=True)
    def restore_logging(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers = handlers
        root.setLevel(level)
        structlog.contextvars.clear_contextvars()
        structlog.reset_defaults()

    @staticmethod
    def _last_record(capsys: pytest.CaptureFixture[str]) -> dict:
        return json.loads(capsys.readouterr().out.strip().splitlines()[-1])

    def test_json_output_includes_extra_and_execution(self, capsys: pytest.CaptureFixture[str]):
        setup_logging(log_level="INFO", log_format="json", instance_id="worker-1")

        with execution_context("sync", "sync-1"):
            logging.getLogger("jobrunner.test").info("Job completed", extra={"attempt": 2})

        record = self._last_record(capsys)
        assert record["event"] == "Job completed"
        assert record["job_id"] == "sync"
        assert record["execution_id"] == "sync-1"
        assert record["attempt"] == 2
        assert record["instance_id"] == "worker-1"
        assert record["level"] == "info"

    def test_execution_context_is_scoped(self, capsys: pytest.CaptureFixture[str]):
        setup_logging(log_level="INFO", log_format="json")

        with execution_context("sync", "sync-1"):
            pass
        logging.getLogger("jobrunner.test").info("Idle")

        record = self._last_record(capsys)
        assert "execution_id" not in record
        assert "instance_id" not in record

    def test_record_instance_id_wins(self, capsys: pytest.CaptureFixture[str]):
        setup_logging(log_level="INFO", log_format="json", instance_id="worker-1")

        logging.getLogger("jobrunner.test").info("Lock acquired", extra={"instance_id": "other"})

        assert self._last_record(capsys)["instance_id"] == "other"

    def test_trace_ids_from_active_span(self, capsys: pytest.CaptureFixture[str]):
        setup_logging(log_level="INFO", log_format="json")
        tracer = TracerProvider().get_tracer("test")

        with tracer.start_as_current_span("run_job") as span:
            logging.getLogger("jobrunner.test").info("Starting job execution")
            trace_id = span.get_span_context().trace_id

        assert self._last_record(capsys)["trace_id"] == f"{trace_id:032x}"

    def test_level_filtering(self, capsys: pytest.CaptureFixture[str]):
        setup_logging(log_level="WARNING", log_format="json")

        logging.getLogger("jobrunner.test").info("hidden")

        assert capsys.readouterr().out == ""

    def test_unknown_level_falls_back_to_info(self):
        setup_logging(log_level="chatty", log_format="console")

        assert logging.getLogger().level == logging.INFO


class TestTracing:
    """Tests for span helpers."""

    @pytest.fixture
    def exporter(self, monkeypatch: pytest.MonkeyPatch) -> InMemorySpanExporter:
        exporter = InMemorySpanExporter()
        provider = TracerProvider()
        provider.add_span_processor(SimpleSpanProcessor(exporter))
        monkeypatch.setattr(tracing, "get_tracer", lambda: provider.get_tracer("test"))
        return exporter

    def test_spans_work_without_setup(self):
        with start_span("run_job", job_id="sync", fencing_token=None) as span:
            set_span_attributes(span, attempt=1)

    def test_start_span_records_attributes(self, exporter: InMemorySpanExporter):
        with start_span("acquire_lock", job_id="sync", fencing_token=None, ttl_ms=5000) as span:
            set_span_attributes(span, acquired=True)

        (finished,) = exporter.get_finished_spans()
        assert finished.name == "acquire_lock"
        assert finished.attributes["job_id"] == "sync"
        assert finished.attributes["ttl_ms"] == 5000
        assert finished.attributes["acquired"] is True
        assert "fencing_token" not in finished.attributes

    def test_set_span_attributes_stringifies(self):
        recorded: dict = {}

        class FakeSpan:
            def set_attribute(self, key, value):
                recorded[key] = value

        set_span_attributes(FakeSpan(), job_id="sync", attempt=2, token=None, at=object)

        assert recorded["job_id"] == "sync"
        assert recorded["attempt"] == 2
        assert "token" not in recorded
        assert isinstance(recorded["at"], str)

    @pytest.mark.asyncio
    async def test_runner_spans_are_nested(self, exporter, runner, sync_job):
        async def handler(context):
            return {"success": True}

        runner.register_handler(sync_job.id, handler)
        await runner.run(sync_job)

        names = [span.name for span in exporter.get_finished_spans()]
        assert names[-1] == "run_job"
        assert "execute_job" in names
        assert "acquire_lock" in names
