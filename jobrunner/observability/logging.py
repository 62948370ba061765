"""
Log output for runner processes.

Runner modules log through the standard library (``logging.getLogger``)
with ``extra={...}`` fields. This module routes those records through
structlog so each line also carries the current execution context, the
active span ids and the process's runner identity.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from opentelemetry import trace
from structlog.types import EventDict, Processor

from jobrunner.config import get_settings

# Libraries whose INFO chatter drowns out job logs
_QUIET_LOGGERS = ("httpx", "httpcore", "redis", "opentelemetry")


def add_trace_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp trace_id/span_id of the recording span, if any."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict.setdefault("trace_id", f"{span_context.trace_id:032x}")
        event_dict.setdefault("span_id", f"{span_context.span_id:016x}")
    return event_dict


def _instance_stamper(instance_id: str) -> Processor:
    def add_instance_id(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("instance_id", instance_id)
        return event_dict

    return add_instance_id


def _pre_chain(instance_id: str | None) -> list[Processor]:
    chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.ExtraAdder(),
        add_trace_context,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if instance_id:
        chain.append(_instance_stamper(instance_id))
    return chain


def _renderer(log_format: str) -> Processor:
    if log_format == "console":
        return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    return structlog.processors.JSONRenderer()


def setup_logging(
    log_level: str | None = None,
    log_format: str | None = None,
    instance_id: str | None = None,
) -> None:
    """
    Route all stdlib logging through structlog on stdout.

    Args:
        log_level: Overrides ``Settings.log_level``.
        log_format: Overrides ``Settings.log_format``; "console" renders
            human-readable lines, anything else renders JSON.
        instance_id: When given, every line carries it as ``instance_id``
            unless the record already set one.
    """
    settings = get_settings()
    pre_chain = _pre_chain(instance_id)

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _renderer(log_format or settings.log_format),
        ],
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    level_name = (log_level or settings.log_level).upper()
    root.setLevel(logging.getLevelNamesMapping().get(level_name, logging.INFO))

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def execution_context(job_id: str, execution_id: str, **extra: Any) -> Iterator[None]:
    """Tag every log line emitted inside the block with the execution it belongs to."""
    with structlog.contextvars.bound_contextvars(
        job_id=job_id, execution_id=execution_id, **extra
    ):
        yield
