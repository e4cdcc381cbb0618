"""Priority scheduler that admits tasks into a bounded set of execution slots."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from ..config import SchedulerSettings
from ..errors import QueueFullError
from ..events import EventBus, TaskEventType
from .base import (
    CancellationToken,
    Step,
    StepStatus,
    Task,
    TaskContext,
    TaskEvent,
    TaskOptions,
    TaskStatus,
    TaskView,
    new_id,
    utc_now,
)

logger = logging.getLogger(__name__)

Launcher = Callable[[Task], Any]


class TaskScheduler:
    """Owns task status, progress and terminal fields.

    Pending tasks are kept in a list ordered by priority weight, FIFO within a
    weight. Whenever a task is enqueued or leaves ``running`` the scheduler
    refills free slots, so one completion can immediately start the next task.
    """

    def __init__(
        self,
        settings: SchedulerSettings | None = None,
        events: EventBus | None = None,
        launcher: Launcher | None = None,
    ) -> None:
        self.settings = settings or SchedulerSettings()
        self.events = events or EventBus()
        self._launcher = launcher
        self._tasks: Dict[str, Task] = {}
        self._pending: List[Task] = []
        self._running: Dict[str, Task] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._resume_gates: Dict[str, asyncio.Event] = {}
        self._done: Dict[str, asyncio.Event] = {}
        self._durations: Deque[float] = deque(maxlen=self.settings.history_size)

    def set_launcher(self, launcher: Launcher | None) -> None:
        self._launcher = launcher

    # ------------------------------------------------------------------
    # creation and admission

    def create(self, options: TaskOptions) -> Task:
        """Build a pending task with generated ids."""

        self._ensure_capacity()
        task_id = new_id("task")
        steps = []
        for index, step_options in enumerate(options.steps, start=1):
            steps.append(
                Step(
                    id=step_options.id or f"step-{index}",
                    name=step_options.name,
                    config=step_options.config,
                    depends_on=list(step_options.depends_on),
                    error_strategy=step_options.error_strategy,
                    max_retries=step_options.max_retries,
                    timeout=step_options.timeout,
                )
            )
        seen: set[str] = set()
        for step in steps:
            if step.id in seen:
                raise ValueError(f"Duplicate step id '{step.id}' in task '{options.name}'")
            seen.add(step.id)
        task = Task(
            id=task_id,
            name=options.name,
            description=options.description or options.name,
            priority=options.priority,
            steps=steps,
            context=dict(options.context),
            max_retries=options.max_retries,
            source=options.source,
            complexity=options.complexity,
            required_capabilities=list(options.required_capabilities),
            task_type=options.task_type,
            timeout=options.timeout,
        )
        self._tasks[task.id] = task
        logger.debug("Created task %s (%s) with %d steps", task.id, task.name, len(steps))
        return task

    def submit(self, options: TaskOptions) -> Task:
        task = self.create(options)
        self.enqueue(task)
        return task

    def enqueue(self, task: Task) -> None:
        if task.status is not TaskStatus.PENDING:
            raise ValueError(f"Task {task.id} is {task.status.value}; only pending tasks can be queued")
        self._ensure_capacity()
        self._tasks.setdefault(task.id, task)
        self._done.setdefault(task.id, asyncio.Event())
        position = len(self._pending)
        for index, queued in enumerate(self._pending):
            if queued.priority.weight < task.priority.weight:
                position = index
                break
        self._pending.insert(position, task)
        task.status = TaskStatus.QUEUED
        logger.info("Queued task %s (%s) at position %d", task.id, task.priority.value, position)
        self._emit(TaskEventType.QUEUED, task)
        self._fill_slots()

    def _ensure_capacity(self) -> None:
        if len(self._pending) >= self.settings.max_queue_size:
            raise QueueFullError("scheduler", self.settings.max_queue_size)

    def _fill_slots(self) -> None:
        while len(self._running) < self.settings.max_concurrent and self._pending:
            self._start(self._pending.pop(0))

    def _start(self, task: Task) -> None:
        task.status = TaskStatus.RUNNING
        task.started_at = utc_now()
        task.execution = TaskContext(variables=dict(task.context))
        self._running[task.id] = task
        self._tokens[task.id] = CancellationToken()
        gate = asyncio.Event()
        gate.set()
        self._resume_gates[task.id] = gate
        logger.info("Started task %s (%d/%d slots busy)", task.id, len(self._running), self.settings.max_concurrent)
        self._emit(TaskEventType.STARTED, task)
        if self._launcher is None:
            return
        try:
            self._launcher(task)
        except Exception as exc:
            logger.exception("Launcher failed for task %s", task.id)
            self.complete_task(task.id, TaskStatus.FAILED, error=f"Launch failed: {exc}")

    # ------------------------------------------------------------------
    # progress and completion

    def complete_task(
        self,
        task_id: str,
        status: TaskStatus,
        result: Any = None,
        error: Optional[str] = None,
    ) -> bool:
        """Record the terminal state of a running task and refill slots.

        Returns False when the task is unknown or already terminal; a task is
        completed exactly once.
        """

        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        task = self._tasks.get(task_id)
        if task is None or task.id not in self._running:
            logger.debug("Ignoring completion of task %s: not running", task_id)
            return False
        self._finish(task, status, result=result, error=error)
        self._fill_slots()
        return True

    def _finish(self, task: Task, status: TaskStatus, result: Any = None, error: Optional[str] = None) -> None:
        self._running.pop(task.id, None)
        task.status = status
        task.result = result
        task.error = error
        if status is TaskStatus.COMPLETED:
            task.progress = 100
        task.completed_at = utc_now()
        if task.started_at is not None:
            task.duration = (task.completed_at - task.started_at).total_seconds()
            self._durations.append(task.duration)
        gate = self._resume_gates.pop(task.id, None)
        if gate is not None:
            gate.set()
        self._tokens.pop(task.id, None)
        if status is TaskStatus.FAILED:
            logger.warning("Task %s failed: %s", task.id, error)
        else:
            logger.info("Task %s finished with status %s", task.id, status.value)
        self._emit(TaskEventType.CANCELLED if status is TaskStatus.CANCELLED else TaskEventType.COMPLETED, task)
        if status is TaskStatus.CANCELLED:
            self._emit(TaskEventType.COMPLETED, task)
        done = self._done.get(task.id)
        if done is not None:
            done.set()

    def update_progress(self, task_id: str, progress: int, step_id: Optional[str] = None) -> None:
        task = self._tasks.get(task_id)
        if task is None or task.status not in (TaskStatus.RUNNING, TaskStatus.PAUSED):
            return
        task.progress = max(task.progress, min(100, int(progress)))
        if step_id is not None:
            task.current_step_id = step_id
        self._emit(TaskEventType.PROGRESS, task, step_id=step_id)

    def report_step(self, task_id: str, step: Step) -> None:
        """Publish a step transition made by the executor."""

        task = self._tasks.get(task_id)
        if task is None or task.status.is_terminal:
            return
        if step.status is StepStatus.RUNNING:
            task.current_step_id = step.id
            self._emit(TaskEventType.STEP_STARTED, task, step_id=step.id, step_status=step.status)
        else:
            self._emit(TaskEventType.STEP_COMPLETED, task, step_id=step.id, step_status=step.status)

    # ------------------------------------------------------------------
    # pause / resume / cancel

    def pause(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        if task is None or task.status is not TaskStatus.RUNNING:
            return False
        task.status = TaskStatus.PAUSED
        self._resume_gates[task_id].clear()
        logger.info("Paused task %s", task_id)
        self._emit(TaskEventType.PAUSED, task)
        return True

    def resume(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        if task is None or task.status is not TaskStatus.PAUSED:
            return False
        task.status = TaskStatus.RUNNING
        self._resume_gates[task_id].set()
        logger.info("Resumed task %s", task_id)
        self._emit(TaskEventType.RESUMED, task)
        return True

    def cancel(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        if task is None or task.status.is_terminal:
            return False
        if task.status is TaskStatus.QUEUED:
            self._pending.remove(task)
            task.status = TaskStatus.CANCELLED
            task.completed_at = utc_now()
            logger.info("Cancelled queued task %s", task_id)
            self._emit(TaskEventType.CANCELLED, task)
            self._emit(TaskEventType.COMPLETED, task)
            done = self._done.get(task_id)
            if done is not None:
                done.set()
            return True
        if task.id in self._running:
            token = self._tokens.get(task_id)
            if token is not None:
                token.cancel()
            self._finish(task, TaskStatus.CANCELLED, error="Task cancelled")
            self._fill_slots()
            return True
        # pending task that was never queued
        task.status = TaskStatus.CANCELLED
        task.completed_at = utc_now()
        self._emit(TaskEventType.CANCELLED, task)
        return True

    async def wait_while_paused(self, task_id: str) -> None:
        """Block until the task is resumed or leaves the running set."""

        gate = self._resume_gates.get(task_id)
        if gate is not None:
            await gate.wait()

    def token_for(self, task_id: str) -> CancellationToken:
        token = self._tokens.get(task_id)
        if token is None:
            # already finished; hand out a tripped token
            token = CancellationToken()
            token.cancel()
        return token

    async def wait_for(self, task_id: str, timeout: Optional[float] = None) -> Task:
        task = self._tasks[task_id]
        if not task.status.is_terminal:
            done = self._done.setdefault(task_id, asyncio.Event())
            await asyncio.wait_for(done.wait(), timeout)
        return task

    async def join(self, timeout: Optional[float] = None) -> None:
        """Wait until every known task reached a terminal status."""

        pending = [task.id for task in self._tasks.values() if not task.status.is_terminal]
        await asyncio.wait_for(
            asyncio.gather(*(self.wait_for(task_id) for task_id in pending)),
            timeout,
        )

    # ------------------------------------------------------------------
    # queries

    def get_task(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def view(self, task_id: str) -> Optional[TaskView]:
        task = self._tasks.get(task_id)
        return task.snapshot() if task else None

    def queued(self) -> List[TaskView]:
        return [task.snapshot() for task in self._pending]

    def running(self) -> List[TaskView]:
        return [task.snapshot() for task in self._running.values()]

    def all_tasks(self) -> List[TaskView]:
        return [task.snapshot() for task in self._tasks.values()]

    def estimate_wait(self, task_id: Optional[str] = None) -> float:
        """Advisory queue wait in seconds; never used for scheduling."""

        if not self._durations:
            return 0.0
        average = sum(self._durations) / len(self._durations)
        per_slot = average / self.settings.max_concurrent
        if task_id is None:
            return per_slot * (len(self._pending) + 1)
        for index, task in enumerate(self._pending):
            if task.id == task_id:
                return per_slot * (index + 1)
        return 0.0

    def stats(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        for task in self._tasks.values():
            counts[task.status.value] += 1
        counts["slots"] = self.settings.max_concurrent
        return counts

    def _emit(
        self,
        event_type: TaskEventType,
        task: Task,
        step_id: Optional[str] = None,
        step_status: Optional[StepStatus] = None,
    ) -> None:
        self.events.emit(event_type, TaskEvent(task=task.snapshot(), step_id=step_id, step_status=step_status))
