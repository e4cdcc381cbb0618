"""Capability-tagged worker agents with a bounded internal queue."""

from __future__ import annotations

import abc
import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Iterable, List, Optional, Tuple

from ..errors import QueueFullError
from ..events import AgentEventType, EventBus
from ..tasks.base import Task, new_id

logger = logging.getLogger(__name__)

# consecutive crashing executions before an agent is marked as errored
MAX_CONSECUTIVE_CRASHES = 3


class AgentStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    ERROR = "error"
    OFFLINE = "offline"
    INITIALIZING = "initializing"


@dataclass
class AgentConfig:
    """Static description of an agent."""

    name: str
    capabilities: List[str]
    agent_type: str = "general"
    description: str = ""
    max_concurrent_tasks: int = 1
    # lower value = preferred when several agents match
    priority: int = 5


@dataclass
class TaskResult:
    """Outcome of one subtask executed by an agent."""

    task_id: str
    success: bool
    output: Optional[str] = None
    data: Any = None
    error: Optional[str] = None
    duration: float = 0.0
    agent_id: Optional[str] = None


@dataclass(frozen=True)
class AgentStatusChange:
    agent_id: str
    status: AgentStatus


@dataclass(frozen=True)
class AgentTaskComplete:
    agent_id: str
    result: TaskResult


@dataclass
class _QueuedWork:
    task: Task
    future: asyncio.Future = field(repr=False)


class BaseAgent(abc.ABC):
    """Worker that pulls subtasks from its own FIFO queue.

    The queue holds at most ``2 * max_concurrent_tasks`` entries and at most
    ``max_concurrent_tasks`` run at once. The agent is the only writer of its
    queue and its busy/idle state. After ``MAX_CONSECUTIVE_CRASHES`` crashing
    executions in a row it reports ``error`` until one finishes without raising.
    """

    def __init__(self, config: AgentConfig, agent_id: Optional[str] = None) -> None:
        if config.max_concurrent_tasks < 1:
            raise ValueError("max_concurrent_tasks must be at least 1")
        self.config = config
        self.id = agent_id or new_id("agent")
        self.events = EventBus()
        self.status = AgentStatus.OFFLINE
        self.tasks_executed = 0
        self.successes = 0
        self._crashes = 0
        self._queue: Deque[_QueuedWork] = deque()
        self._active = 0
        self._workers: set[asyncio.Task] = set()

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def agent_type(self) -> str:
        return self.config.agent_type

    @property
    def capabilities(self) -> frozenset[str]:
        return frozenset(self.config.capabilities)

    @property
    def max_concurrent_tasks(self) -> int:
        return self.config.max_concurrent_tasks

    @property
    def priority(self) -> int:
        return self.config.priority

    @property
    def queue_capacity(self) -> int:
        return 2 * self.config.max_concurrent_tasks

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    @property
    def active_tasks(self) -> int:
        return self._active

    @property
    def success_rate(self) -> Optional[float]:
        if not self.tasks_executed:
            return None
        return self.successes / self.tasks_executed

    def can_handle(self, required: Iterable[str]) -> bool:
        return set(required) <= self.capabilities

    async def initialize(self) -> None:
        self._crashes = 0
        self._set_status(AgentStatus.INITIALIZING)
        await self.on_initialize()
        self._set_status(AgentStatus.IDLE)

    async def shutdown(self) -> None:
        for work in self._queue:
            if not work.future.done():
                work.future.set_result(
                    TaskResult(task_id=work.task.id, success=False, error="Agent shut down", agent_id=self.id)
                )
        self._queue.clear()
        for worker in list(self._workers):
            worker.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        await self.on_shutdown()
        self._set_status(AgentStatus.OFFLINE)

    async def on_initialize(self) -> None:
        """Hook for subclasses that need to acquire resources."""

    async def on_shutdown(self) -> None:
        """Hook for subclasses that need to release resources."""

    @abc.abstractmethod
    async def execute(self, task: Task) -> TaskResult:
        """Run one subtask against the agent's collaborators."""

    # ------------------------------------------------------------------
    # queueing

    def submit(self, task: Task) -> "asyncio.Future[TaskResult]":
        """Queue ``task`` and return a future for its result.

        Raises QueueFullError when the internal queue is at capacity.
        """

        if self.status is AgentStatus.OFFLINE:
            raise RuntimeError(f"Agent {self.id} is offline")
        if len(self._queue) >= self.queue_capacity:
            raise QueueFullError(f"agent {self.id}", self.queue_capacity)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._queue.append(_QueuedWork(task=task, future=future))
        logger.debug("Agent %s queued task %s (%d waiting)", self.id, task.id, len(self._queue))
        self._pump()
        return future

    def queue_task(self, task: Task) -> bool:
        """Queue ``task``; False when the internal queue is full."""

        try:
            self.submit(task)
        except QueueFullError:
            logger.warning("Agent %s rejected task %s: queue full", self.id, task.id)
            return False
        return True

    def _pump(self) -> None:
        while self._active < self.config.max_concurrent_tasks and self._queue:
            work = self._queue.popleft()
            self._active += 1
            if self.status is not AgentStatus.ERROR:
                self._set_status(AgentStatus.BUSY)
            worker = asyncio.ensure_future(self._run(work))
            self._workers.add(worker)
            worker.add_done_callback(self._workers.discard)

    async def _run(self, work: _QueuedWork) -> None:
        started = time.monotonic()
        try:
            result = await self.execute(work.task)
        except asyncio.CancelledError:
            result = TaskResult(task_id=work.task.id, success=False, error="Cancelled", agent_id=self.id)
            if not work.future.done():
                work.future.set_result(result)
            raise
        except Exception as exc:
            logger.exception("Agent %s crashed on task %s", self.id, work.task.id)
            self._crashes += 1
            result = TaskResult(
                task_id=work.task.id,
                success=False,
                error=str(exc) or exc.__class__.__name__,
            )
        else:
            self._crashes = 0
        finally:
            self._active -= 1
        if not result.duration:
            result.duration = time.monotonic() - started
        result.agent_id = result.agent_id or self.id
        self.tasks_executed += 1
        if result.success:
            self.successes += 1
        self.events.emit(AgentEventType.TASK_COMPLETE, AgentTaskComplete(agent_id=self.id, result=result))
        if not work.future.done():
            work.future.set_result(result)
        if self._crashes >= MAX_CONSECUTIVE_CRASHES:
            if self.status is not AgentStatus.ERROR:
                logger.error("Agent %s crashed %d times in a row; marking it as errored", self.id, self._crashes)
            self._set_status(AgentStatus.ERROR)
        elif self.status is AgentStatus.ERROR:
            logger.info("Agent %s recovered", self.id)
            self._set_status(AgentStatus.BUSY if self._active else AgentStatus.IDLE)
        if self._queue:
            self._pump()
        elif self._active == 0 and self.status is AgentStatus.BUSY:
            self._set_status(AgentStatus.IDLE)

    def _set_status(self, status: AgentStatus) -> None:
        if status is self.status:
            return
        self.status = status
        self.events.emit(AgentEventType.STATUS_CHANGE, AgentStatusChange(agent_id=self.id, status=status))

    def describe(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.agent_type,
            "capabilities": sorted(self.capabilities),
            "status": self.status.value,
            "priority": self.priority,
            "max_concurrent_tasks": self.max_concurrent_tasks,
            "queued": self.queue_size,
            "active": self.active_tasks,
            "tasks_executed": self.tasks_executed,
            "successes": self.successes,
        }


Handler = Callable[[Task], Awaitable[Any]]


class FunctionAgent(BaseAgent):
    """Agent whose work is an async callable.

    The callable may return a :class:`TaskResult`, a ``(output, data)`` tuple,
    or any value, which becomes the output.
    """

    def __init__(self, config: AgentConfig, handler: Handler, agent_id: Optional[str] = None) -> None:
        super().__init__(config, agent_id=agent_id)
        self._handler = handler

    async def execute(self, task: Task) -> TaskResult:
        value = await self._handler(task)
        if isinstance(value, TaskResult):
            return value
        if isinstance(value, tuple) and len(value) == 2:
            output, data = value
            return TaskResult(task_id=task.id, success=True, output=_text(output), data=data)
        return TaskResult(task_id=task.id, success=True, output=_text(value))


def _text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


AgentAssignment = Tuple[Task, BaseAgent]
