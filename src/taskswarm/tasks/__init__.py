"""Task primitives.

The scheduler and executor live in :mod:`taskswarm.tasks.queue` and
:mod:`taskswarm.tasks.executor`.
"""

from .base import (
    CancellationToken,
    Complexity,
    ConditionStepConfig,
    DelayStepConfig,
    ErrorStrategy,
    LLMStepConfig,
    LoopStepConfig,
    ParallelStepConfig,
    Step,
    StepConfig,
    StepOptions,
    StepResult,
    StepStatus,
    Task,
    TaskContext,
    TaskEvent,
    TaskOptions,
    TaskPriority,
    TaskStatus,
    TaskView,
    ToolStepConfig,
    WaitStepConfig,
)

__all__ = [
    "CancellationToken",
    "Complexity",
    "ConditionStepConfig",
    "DelayStepConfig",
    "ErrorStrategy",
    "LLMStepConfig",
    "LoopStepConfig",
    "ParallelStepConfig",
    "Step",
    "StepConfig",
    "StepOptions",
    "StepResult",
    "StepStatus",
    "Task",
    "TaskContext",
    "TaskEvent",
    "TaskOptions",
    "TaskPriority",
    "TaskStatus",
    "TaskView",
    "ToolStepConfig",
    "WaitStepConfig",
]
