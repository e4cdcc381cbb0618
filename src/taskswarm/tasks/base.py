"""Task, step and result dataclasses shared by the scheduler, executor and swarm."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Union


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class TaskPriority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def weight(self) -> int:
        return _PRIORITY_WEIGHTS[self]


_PRIORITY_WEIGHTS = {
    TaskPriority.URGENT: 4,
    TaskPriority.HIGH: 3,
    TaskPriority.NORMAL: 2,
    TaskPriority.LOW: 1,
}


class TaskStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ErrorStrategy(str, Enum):
    FAIL = "fail"
    SKIP = "skip"
    RETRY = "retry"
    # Accepted in configuration; always handled like FAIL.
    ROLLBACK = "rollback"


class Complexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(Complexity).index(self)


# ---------------------------------------------------------------------------
# Step configurations


@dataclass
class ToolStepConfig:
    kind: ClassVar[str] = "tool"

    tool_name: str
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LLMStepConfig:
    kind: ClassVar[str] = "llm"

    prompt: str
    system_prompt: Optional[str] = None
    output_variable: Optional[str] = None


@dataclass
class WaitStepConfig:
    kind: ClassVar[str] = "wait"

    prompt: str
    input_type: str = "text"
    choices: Optional[List[str]] = None
    output_variable: Optional[str] = None


@dataclass
class ConditionStepConfig:
    """Evaluates a condition. The chosen branch is recorded, not followed."""

    kind: ClassVar[str] = "condition"

    condition: str
    then_step: Optional[str] = None
    else_step: Optional[str] = None


@dataclass
class ParallelStepConfig:
    kind: ClassVar[str] = "parallel"

    steps: List[str]
    wait_for: str = "all"

    def __post_init__(self) -> None:
        if self.wait_for not in ("all", "any"):
            raise ValueError(f"wait_for must be 'all' or 'any', got {self.wait_for!r}")


@dataclass
class LoopStepConfig:
    kind: ClassVar[str] = "loop"

    items_variable: str
    step_id: str
    item_variable: str = "item"
    max_iterations: int = 100


@dataclass
class DelayStepConfig:
    kind: ClassVar[str] = "delay"

    duration: float
    reason: Optional[str] = None


StepConfig = Union[
    ToolStepConfig,
    LLMStepConfig,
    WaitStepConfig,
    ConditionStepConfig,
    ParallelStepConfig,
    LoopStepConfig,
    DelayStepConfig,
]

STEP_CONFIG_TYPES: Dict[str, type] = {
    cls.kind: cls
    for cls in (
        ToolStepConfig,
        LLMStepConfig,
        WaitStepConfig,
        ConditionStepConfig,
        ParallelStepConfig,
        LoopStepConfig,
        DelayStepConfig,
    )
}


def step_config_from_mapping(data: Mapping[str, Any]) -> StepConfig:
    """Build a typed step config from ``{"type": ..., **fields}``."""

    kind = data.get("type")
    cls = STEP_CONFIG_TYPES.get(str(kind))
    if cls is None:
        raise ValueError(f"Unknown step type {kind!r}; expected one of {sorted(STEP_CONFIG_TYPES)}")
    fields = {key: value for key, value in data.items() if key != "type"}
    try:
        return cls(**fields)
    except TypeError as exc:
        raise ValueError(f"Invalid '{kind}' step config: {exc}") from exc


# ---------------------------------------------------------------------------
# Steps and results


@dataclass
class StepResult:
    """Outcome of one step attempt."""

    step_id: str
    status: StepStatus
    data: Any = None
    error: Optional[str] = None
    duration: float = 0.0
    completed_at: datetime = field(default_factory=utc_now)
    attempts: int = 1

    @property
    def succeeded(self) -> bool:
        return self.status is StepStatus.COMPLETED


@dataclass
class Step:
    """A typed operation inside a task. Mutated only by the step executor."""

    id: str
    name: str
    config: StepConfig
    depends_on: List[str] = field(default_factory=list)
    error_strategy: ErrorStrategy = ErrorStrategy.FAIL
    max_retries: int = 3
    timeout: Optional[float] = None
    status: StepStatus = StepStatus.PENDING
    result: Optional[StepResult] = None

    @property
    def kind(self) -> str:
        return self.config.kind


@dataclass
class StepOptions:
    """Caller-facing step description; the scheduler fills in ids."""

    name: str
    config: StepConfig
    id: Optional[str] = None
    depends_on: List[str] = field(default_factory=list)
    error_strategy: ErrorStrategy = ErrorStrategy.FAIL
    max_retries: int = 3
    timeout: Optional[float] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "StepOptions":
        if "config" not in data:
            raise ValueError(f"Step {data.get('name', '?')!r} requires a config mapping")
        raw_depends = data.get("depends_on") or []
        if isinstance(raw_depends, str):
            raw_depends = [raw_depends]
        timeout = data.get("timeout")
        return cls(
            name=str(data.get("name") or data.get("id") or data["config"].get("type", "step")),
            config=step_config_from_mapping(data["config"]),
            id=(str(data["id"]) if data.get("id") is not None else None),
            depends_on=[str(item) for item in raw_depends],
            error_strategy=ErrorStrategy(data.get("error_strategy", ErrorStrategy.FAIL.value)),
            max_retries=int(data.get("max_retries", 3)),
            timeout=(float(timeout) if timeout is not None else None),
        )


@dataclass
class TaskContext:
    """Mutable execution context: variables plus per-step results."""

    variables: Dict[str, Any] = field(default_factory=dict)
    step_results: Dict[str, StepResult] = field(default_factory=dict)


class CancellationToken:
    """Tripped once when a running task is cancelled."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


# ---------------------------------------------------------------------------
# Tasks


@dataclass
class Task:
    """A unit of work. Status, progress and terminal fields belong to the scheduler."""

    id: str
    name: str
    description: str = ""
    priority: TaskPriority = TaskPriority.NORMAL
    steps: List[Step] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    execution: Optional[TaskContext] = None
    progress: int = 0
    current_step_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration: Optional[float] = None
    result: Any = None
    error: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 0
    source: str = "user"
    # swarm attributes
    complexity: Complexity = Complexity.LOW
    required_capabilities: List[str] = field(default_factory=list)
    task_type: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)
    timeout: Optional[float] = None
    critical: bool = False

    def get_step(self, step_id: str) -> Optional[Step]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    @property
    def completed_steps(self) -> int:
        return sum(1 for step in self.steps if step.status is StepStatus.COMPLETED)

    def snapshot(self) -> "TaskView":
        return TaskView(
            id=self.id,
            name=self.name,
            description=self.description,
            priority=self.priority,
            status=self.status,
            progress=self.progress,
            current_step_id=self.current_step_id,
            completed_steps=self.completed_steps,
            total_steps=len(self.steps),
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
            duration=self.duration,
            result=self.result,
            error=self.error,
            source=self.source,
            step_statuses=MappingProxyType({step.id: step.status for step in self.steps}),
        )


@dataclass(frozen=True)
class TaskView:
    """Read-only snapshot handed to event subscribers and outer surfaces."""

    id: str
    name: str
    description: str
    priority: TaskPriority
    status: TaskStatus
    progress: int
    current_step_id: Optional[str]
    completed_steps: int
    total_steps: int
    created_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    duration: Optional[float]
    result: Any
    error: Optional[str]
    source: str
    step_statuses: Mapping[str, StepStatus]


@dataclass(frozen=True)
class TaskEvent:
    """Payload of every ``task:*`` event."""

    task: TaskView
    step_id: Optional[str] = None
    step_status: Optional[StepStatus] = None

    @property
    def task_id(self) -> str:
        return self.task.id

    @property
    def progress(self) -> int:
        return self.task.progress


@dataclass
class TaskOptions:
    """Creation surface for new tasks."""

    name: str
    description: str = ""
    priority: TaskPriority = TaskPriority.NORMAL
    steps: List[StepOptions] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)
    max_retries: int = 0
    source: str = "user"
    complexity: Complexity = Complexity.LOW
    required_capabilities: List[str] = field(default_factory=list)
    task_type: Optional[str] = None
    timeout: Optional[float] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TaskOptions":
        if "name" not in data:
            raise ValueError("Task options require a name")
        timeout = data.get("timeout")
        return cls(
            name=str(data["name"]),
            description=str(data.get("description", "")),
            priority=TaskPriority(data.get("priority", TaskPriority.NORMAL.value)),
            steps=[StepOptions.from_mapping(item) for item in data.get("steps") or []],
            context=dict(data.get("context") or {}),
            max_retries=int(data.get("max_retries", 0)),
            source=str(data.get("source", "user")),
            complexity=Complexity(data.get("complexity", Complexity.LOW.value)),
            required_capabilities=[str(item) for item in data.get("capabilities") or []],
            task_type=data.get("type"),
            timeout=(float(timeout) if timeout is not None else None),
        )
