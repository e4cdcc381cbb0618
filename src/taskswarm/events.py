"""Publish/subscribe bus for task, agent and swarm events."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

Listener = Callable[[Any], Any]

ALL_EVENTS = "*"


class TaskEventType(str, Enum):
    """Lifecycle events emitted by the scheduler and executor."""

    QUEUED = "task:queued"
    STARTED = "task:started"
    PROGRESS = "task:progress"
    STEP_STARTED = "task:step-started"
    STEP_COMPLETED = "task:step-completed"
    COMPLETED = "task:completed"
    PAUSED = "task:paused"
    RESUMED = "task:resumed"
    CANCELLED = "task:cancelled"


class AgentEventType(str, Enum):
    STATUS_CHANGE = "agent:status-change"
    TASK_COMPLETE = "agent:task-complete"
    REGISTERED = "agent:registered"
    UNREGISTERED = "agent:unregistered"
    SWARM_COMPLETE = "swarm:task-complete"


@dataclass(frozen=True)
class Event:
    """Envelope delivered to stream consumers."""

    name: str
    payload: Any


class EventBus:
    """Registered listener lists keyed by event name.

    Payloads are expected to be read-only views; the bus never hands out the
    objects owned by the scheduler or the agents.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = {}
        self._streams: List[asyncio.Queue] = []

    def on(self, name: str | Enum, listener: Listener) -> Callable[[], None]:
        key = _key(name)
        self._listeners.setdefault(key, []).append(listener)

        def unsubscribe() -> None:
            self.off(key, listener)

        return unsubscribe

    def off(self, name: str | Enum, listener: Listener) -> None:
        listeners = self._listeners.get(_key(name), [])
        if listener in listeners:
            listeners.remove(listener)

    def emit(self, name: str | Enum, payload: Any = None) -> None:
        key = _key(name)
        for listener in list(self._listeners.get(key, [])) + list(self._listeners.get(ALL_EVENTS, [])):
            self._call(listener, key, payload)
        for queue in list(self._streams):
            event = Event(name=key, payload=payload)
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                # the consumer fell behind; keep the newest events
                dropped = queue.get_nowait()
                queue.put_nowait(event)
                logger.warning("Event stream is full; dropped %s", dropped.name)

    async def stream(self, maxsize: int = 0) -> AsyncIterator[Event]:
        """Yield every emitted event until the consumer stops iterating.

        With ``maxsize`` set, a consumer that falls behind loses its oldest
        queued events instead of blocking the emitter.
        """

        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._streams.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._streams.remove(queue)

    def listener_count(self, name: Optional[str | Enum] = None) -> int:
        if name is None:
            return sum(len(items) for items in self._listeners.values())
        return len(self._listeners.get(_key(name), []))

    def _call(self, listener: Listener, name: str, payload: Any) -> None:
        try:
            outcome = listener(payload)
        except Exception:
            logger.exception("Listener %r failed while handling %s", listener, name)
            return
        if inspect.isawaitable(outcome):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.warning("Dropping coroutine listener for %s: no running event loop", name)
                if inspect.iscoroutine(outcome):
                    outcome.close()
                return
            future = asyncio.ensure_future(outcome, loop=loop)
            future.add_done_callback(lambda fut: _log_listener_failure(fut, name))


def _log_listener_failure(future: asyncio.Future, name: str) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Async listener failed while handling %s: %s", name, exc)


def _key(name: str | Enum) -> str:
    return name.value if isinstance(name, Enum) else str(name)
