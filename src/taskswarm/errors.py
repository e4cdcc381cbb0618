"""Exception types raised by the scheduler, executor and swarm."""

from __future__ import annotations

from typing import Iterable


class TaskSwarmError(RuntimeError):
    """Base class for engine errors."""


class QueueFullError(TaskSwarmError):
    """Raised when a pending queue (scheduler or agent) is at capacity."""

    def __init__(self, owner: str, capacity: int) -> None:
        super().__init__(f"Queue for {owner} is full (capacity {capacity})")
        self.owner = owner
        self.capacity = capacity


class StepTimeoutError(TaskSwarmError):
    """A step did not finish within its timeout."""

    def __init__(self, step_name: str, timeout: float) -> None:
        super().__init__(f"Step '{step_name}' timed out after {timeout:g}s")
        self.step_name = step_name
        self.timeout = timeout


class DependencyUnmetError(TaskSwarmError):
    """A step dependency has not completed. Converted into a skipped step."""

    def __init__(self, step_id: str, missing: Iterable[str]) -> None:
        self.step_id = step_id
        self.missing = list(missing)
        super().__init__(f"Step '{step_id}' has unmet dependencies: {', '.join(self.missing)}")


class DecompositionParseError(TaskSwarmError):
    """The reasoning collaborator returned something that is not a subtask list."""


class RoutingError(TaskSwarmError):
    """No registered agent provides the capabilities a subtask requires."""

    def __init__(self, task_id: str, required: Iterable[str]) -> None:
        self.task_id = task_id
        self.required = sorted(required)
        super().__init__(
            f"No agent can handle subtask '{task_id}' (requires: {', '.join(self.required) or 'none'})"
        )


class ConditionSyntaxError(TaskSwarmError):
    """A condition expression does not match the supported grammar."""
