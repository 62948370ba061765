"""
Alert sinks invoked when a job exhausts its retries.
"""

import logging
from datetime import UTC, datetime
from typing import Any, Protocol

import httpx

from jobrunner.constants import AlertSeverity

logger = logging.getLogger(__name__)


class AlertSink(Protocol):
    """Destination for failure alerts."""

    async def fire_warning(self, title: str, message: str, context: dict[str, Any]) -> None:
        """Raise a warning-level alert."""
        ...

    async def fire_critical(self, title: str, message: str, context: dict[str, Any]) -> None:
        """Raise a critical-level alert."""
        ...


class LoggingAlertSink:
    """
    Alert sink that writes alerts to the log.
    Used when no external alerting endpoint is configured.
    """

    def __init__(self, logger_name: str = "jobrunner.alerts"):
        self._logger = logging.getLogger(logger_name)

    async def fire_warning(self, title: str, message: str, context: dict[str, Any]) -> None:
        self._logger.warning(
            message,
            extra={"alert": title, "severity": AlertSeverity.WARNING.value, **context},
        )

    async def fire_critical(self, title: str, message: str, context: dict[str, Any]) -> None:
        self._logger.critical(
            message,
            extra={"alert": title, "severity": AlertSeverity.CRITICAL.value, **context},
        )


class WebhookAlertSink:
    """
    Alert sink that POSTs a JSON document to an HTTP endpoint.

    Body shape::

        {"severity": "...", "title": "...", "message": "...",
         "context": {...}, "timestamp": "..."}
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 10.0,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the webhook sink.

        Args:
            url: Endpoint receiving alerts.
            timeout_seconds: Per-request timeout.
            headers: Extra request headers (auth tokens, etc.).
            transport: Optional httpx transport, used by tests.
        """
        self._url = url
        self._timeout = timeout_seconds
        self._headers = headers or {}
        self._transport = transport

    async def fire_warning(self, title: str, message: str, context: dict[str, Any]) -> None:
        await self._send(AlertSeverity.WARNING, title, message, context)

    async def fire_critical(self, title: str, message: str, context: dict[str, Any]) -> None:
        await self._send(AlertSeverity.CRITICAL, title, message, context)

    async def _send(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: dict[str, Any],
    ) -> None:
        body = {
            "severity": severity.value,
            "title": title,
            "message": message,
            "context": context,
            "timestamp": datetime.now(UTC).isoformat(),
        }

        async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
            response = await client.post(self._url, json=body, headers=self._headers)
            response.raise_for_status()

        logger.debug(
            "Alert delivered",
            extra={"alert": title, "severity": severity.value, "status_code": response.status_code},
        )
