"""
Span helpers for job runs, lock acquisition and dead-lettering.

Spans go to the global OpenTelemetry provider. Until ``setup_tracing``
installs an SDK provider that is the API's no-op provider, so the runner
can always open spans.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import (
    SERVICE_INSTANCE_ID,
    SERVICE_NAME,
    SERVICE_VERSION,
    Resource,
)
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Tracer

from jobrunner import __version__
from jobrunner.config import get_settings

_INSTRUMENTATION_NAME = "jobrunner"


def _build_provider(
    service_name: str,
    endpoint: str | None,
    instance_id: str | None,
    console: bool,
) -> TracerProvider:
    attributes = {SERVICE_NAME: service_name, SERVICE_VERSION: __version__}
    if instance_id:
        attributes[SERVICE_INSTANCE_ID] = instance_id

    provider = TracerProvider(resource=Resource.create(attributes))
    if endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True))
        )
    if console:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    return provider


def setup_tracing(
    instance_id: str | None = None,
    enable_console_export: bool = False,
) -> TracerProvider:
    """
    Install an SDK tracer provider exporting to the configured OTLP endpoint.

    Args:
        instance_id: Recorded as ``service.instance.id`` on every span.
        enable_console_export: Also print finished spans to stdout.

    Returns:
        The installed provider, so callers can ``shutdown()`` it on exit.
    """
    settings = get_settings()
    provider = _build_provider(
        settings.otel_service_name,
        settings.otel_exporter_otlp_endpoint,
        instance_id,
        enable_console_export,
    )
    trace.set_tracer_provider(provider)
    return provider


def get_tracer() -> Tracer:
    return trace.get_tracer(_INSTRUMENTATION_NAME, __version__)


def set_span_attributes(span: Any, **attributes: Any) -> None:
    """Set attributes, dropping None and stringifying non-primitive values."""
    for key, value in attributes.items():
        if value is None:
            continue
        if not isinstance(value, str | bool | int | float):
            value = str(value)
        span.set_attribute(key, value)


@contextmanager
def start_span(name: str, **attributes: Any) -> Iterator[Span]:
    """Open ``name`` as the current span with the given attributes set."""
    with get_tracer().start_as_current_span(name) as span:
        set_span_attributes(span, **attributes)
        yield span
