"""
Listener registry for runner lifecycle events.

Listeners are plain callables keyed by event type. Emission is
fire-and-forget: a listener's exception is logged and never reaches the
runner, and coroutine listeners are scheduled as tasks instead of awaited.
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable

from jobrunner.constants import JobRunnerEventType
from jobrunner.types.events import JobRunnerEvent

logger = logging.getLogger(__name__)

EventListener = Callable[[JobRunnerEvent], None | Awaitable[None]]


class EventEmitter:
    """
    Per-instance publish/subscribe registry.

    Each runner owns one; nothing is shared between instances.
    """

    def __init__(self) -> None:
        self._listeners: dict[JobRunnerEventType, list[EventListener]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()

    def on(self, event_type: JobRunnerEventType | str, listener: EventListener) -> None:
        """Register a listener for an event type."""
        self._listeners[JobRunnerEventType(event_type)].append(listener)

    def off(self, event_type: JobRunnerEventType | str, listener: EventListener) -> bool:
        """
        Remove a listener.

        Returns:
            True if the listener was registered.
        """
        listeners = self._listeners.get(JobRunnerEventType(event_type), [])
        if listener in listeners:
            listeners.remove(listener)
            return True
        return False

    def listener_count(self, event_type: JobRunnerEventType | str) -> int:
        """Number of listeners registered for an event type."""
        return len(self._listeners.get(JobRunnerEventType(event_type), []))

    def emit(self, event: JobRunnerEvent) -> None:
        """Deliver an event to every listener registered for its type."""
        for listener in list(self._listeners.get(event.event_type, [])):
            try:
                outcome = listener(event)
            except Exception:
                logger.exception(
                    "Event listener raised",
                    extra={"event_type": event.event_type.value, "job_id": event.job_id},
                )
                continue

            if inspect.isawaitable(outcome):
                task = asyncio.ensure_future(outcome)
                self._pending.add(task)
                task.add_done_callback(self._on_listener_done)

    async def drain(self) -> None:
        """Wait for scheduled coroutine listeners to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _on_listener_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Async event listener raised: {error}")
