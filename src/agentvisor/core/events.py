"""Supervisor lifecycle events and listener registration.

Listeners are registered explicitly on an ``EventHub``. A listener may be a
plain function or a coroutine function; coroutine listeners run as tasks
owned by the hub so a slow listener never blocks the publisher. Consumers
that prefer a message channel can open an ``asyncio.Queue`` instead.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Union

from loguru import logger

from agentvisor.core.health import ProcessHealthStatus


@dataclass(frozen=True)
class ProcessUnhealthy:
    job_id: str
    status: ProcessHealthStatus


@dataclass(frozen=True)
class ProcessExitedUnexpectedly:
    job_id: str
    exit_code: int


@dataclass(frozen=True)
class ProcessRestarted:
    job_id: str
    old_pid: int | None
    new_pid: int


SupervisorEvent = Union[ProcessUnhealthy, ProcessExitedUnexpectedly, ProcessRestarted]
Listener = Callable[[Any], Any]


class EventHub:
    """Delivers supervisor events to registered listeners and channels."""

    def __init__(self):
        self._listeners: list[tuple[tuple[type, ...], Listener]] = []
        self._channels: list[asyncio.Queue] = []
        self._tasks: set[asyncio.Future] = set()

    def subscribe(self, listener: Listener, *event_types: type) -> Callable[[], None]:
        """Register a listener, optionally restricted to some event types.

        Returns:
            A callable that removes the registration.
        """
        entry = (tuple(event_types), listener)
        self._listeners.append(entry)

        def unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return unsubscribe

    def open_channel(self, maxsize: int = 0) -> asyncio.Queue:
        """Open a queue that receives every published event."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._channels.append(queue)
        return queue

    def close_channel(self, queue: asyncio.Queue) -> None:
        if queue in self._channels:
            self._channels.remove(queue)

    def publish(self, event: SupervisorEvent) -> None:
        """Deliver an event. Listener errors are logged, never raised."""
        for queue in list(self._channels):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Event channel full, dropping {type(event).__name__} for '{event.job_id}'")

        for event_types, listener in list(self._listeners):
            if event_types and not isinstance(event, event_types):
                continue
            try:
                result = listener(event)
            except Exception as e:
                logger.error(f"Listener failed on {type(event).__name__} for '{event.job_id}': {e}")
                continue

            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Async listener failed: {error}")

    @property
    def pending_count(self) -> int:
        """Number of async listener tasks still running."""
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until all async listener tasks have finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel outstanding listener tasks and drop all registrations."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
        self._listeners.clear()
        self._channels.clear()
