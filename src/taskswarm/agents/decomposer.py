"""Splits complex tasks into dependency-annotated subtasks."""

from __future__ import annotations

import json
import logging
import re
import textwrap
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..errors import DecompositionParseError
from ..tasks.base import Complexity, Task

logger = logging.getLogger(__name__)

Reasoner = Callable[[str], Awaitable[str]]

# advisory seconds per subtask
COMPLEXITY_DURATIONS: Dict[Complexity, float] = {
    Complexity.LOW: 30.0,
    Complexity.MEDIUM: 60.0,
    Complexity.HIGH: 180.0,
    Complexity.CRITICAL: 300.0,
}

_ARRAY_RE = re.compile(r"\[.*\]", re.DOTALL)


class ExecutionMode(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    HYBRID = "hybrid"


@dataclass
class ExecutionStrategy:
    mode: ExecutionMode
    parallel_factor: int = 1
    retry_strategy: str = "none"


@dataclass
class TaskDecomposition:
    original_task: Task
    subtasks: List[Task]
    strategy: ExecutionStrategy
    estimated_duration: float = 0.0
    required_capabilities: List[str] = field(default_factory=list)

    @property
    def is_single(self) -> bool:
        return len(self.subtasks) == 1 and self.subtasks[0] is self.original_task


class TaskDecomposer:
    """Asks a reasoning collaborator for a subtask list.

    The collaborator's answer is untrusted: anything that does not parse into
    a list of subtask objects degrades to running the task as a single
    subtask. ``decompose`` never raises.
    """

    def __init__(self, reasoner: Optional[Reasoner] = None) -> None:
        self.reasoner = reasoner

    def set_reasoner(self, reasoner: Optional[Reasoner]) -> None:
        self.reasoner = reasoner

    async def decompose(self, task: Task) -> TaskDecomposition:
        if task.complexity is Complexity.LOW or self.reasoner is None:
            return self.single(task)
        prompt = self.build_prompt(task)
        try:
            response = await self.reasoner(prompt)
            entries = self.parse_response(response)
        except DecompositionParseError as exc:
            logger.info("Decomposition of task %s fell back to a single subtask: %s", task.id, exc)
            return self.single(task)
        except Exception as exc:
            logger.warning("Reasoner failed while decomposing task %s: %s", task.id, exc)
            return self.single(task)
        subtasks = self._build_subtasks(task, entries)
        strategy = self.select_strategy(subtasks)
        capabilities = sorted({cap for sub in subtasks for cap in sub.required_capabilities})
        logger.info(
            "Decomposed task %s into %d subtasks (%s, factor %d)",
            task.id,
            len(subtasks),
            strategy.mode.value,
            strategy.parallel_factor,
        )
        return TaskDecomposition(
            original_task=task,
            subtasks=subtasks,
            strategy=strategy,
            estimated_duration=estimate_duration(subtasks),
            required_capabilities=capabilities,
        )

    def single(self, task: Task) -> TaskDecomposition:
        return TaskDecomposition(
            original_task=task,
            subtasks=[task],
            strategy=ExecutionStrategy(mode=ExecutionMode.SEQUENTIAL),
            estimated_duration=estimate_duration([task]),
            required_capabilities=sorted(task.required_capabilities),
        )

    def build_prompt(self, task: Task) -> str:
        context = json.dumps(task.context, default=str) if task.context else "{}"
        return textwrap.dedent(
            f"""
            Break the following task into smaller subtasks that specialised agents can work on.
            Task: {task.name}
            Description: {task.description}
            Complexity: {task.complexity.value}
            Required capabilities: {', '.join(task.required_capabilities) or 'none'}
            Context: {context}

            Respond with a JSON array only. Each element must be an object with keys
            "description" (string), "type" (string), "capabilities" (list of strings),
            "complexity" (low|medium|high|critical) and "dependencies" (list of
            zero-based indices of earlier subtasks this one depends on).
            """
        ).strip()

    @staticmethod
    def parse_response(response: str) -> List[Dict[str, Any]]:
        """Extract the subtask list from free text."""

        if not isinstance(response, str) or not response.strip():
            raise DecompositionParseError("Empty response")
        try:
            payload = json.loads(response)
        except json.JSONDecodeError:
            match = _ARRAY_RE.search(response)
            if match is None:
                raise DecompositionParseError("No JSON array in response") from None
            try:
                payload = json.loads(match.group(0))
            except json.JSONDecodeError as exc:
                raise DecompositionParseError(f"Malformed JSON array: {exc}") from exc
        if not isinstance(payload, list) or not payload:
            raise DecompositionParseError("Expected a non-empty JSON array")
        entries = []
        for index, item in enumerate(payload):
            if not isinstance(item, dict) or not str(item.get("description", "")).strip():
                raise DecompositionParseError(f"Subtask #{index} has no description")
            entries.append(item)
        return entries

    def _build_subtasks(self, task: Task, entries: List[Dict[str, Any]]) -> List[Task]:
        ids = [f"{task.id}-sub-{index + 1}" for index in range(len(entries))]
        subtasks = []
        for index, entry in enumerate(entries):
            dependencies = []
            for dep in entry.get("dependencies") or []:
                try:
                    position = int(dep)
                except (TypeError, ValueError):
                    continue
                # only earlier siblings keep the graph acyclic
                if 0 <= position < index:
                    dependencies.append(ids[position])
            capabilities = entry.get("capabilities") or task.required_capabilities
            if isinstance(capabilities, str):
                capabilities = [capabilities]
            description = str(entry["description"]).strip()
            subtasks.append(
                Task(
                    id=ids[index],
                    name=description[:60],
                    description=description,
                    priority=task.priority,
                    context=dict(task.context),
                    source=task.source,
                    complexity=_complexity(entry.get("complexity"), Complexity.MEDIUM),
                    required_capabilities=[str(cap) for cap in capabilities],
                    task_type=(str(entry["type"]) if entry.get("type") else None),
                    dependencies=dependencies,
                    timeout=task.timeout,
                )
            )
        return subtasks

    @staticmethod
    def select_strategy(subtasks: List[Task]) -> ExecutionStrategy:
        count = len(subtasks)
        if count <= 1:
            return ExecutionStrategy(mode=ExecutionMode.SEQUENTIAL)
        if any(sub.dependencies for sub in subtasks):
            return ExecutionStrategy(mode=ExecutionMode.HYBRID, parallel_factor=min(count, 3))
        return ExecutionStrategy(mode=ExecutionMode.PARALLEL, parallel_factor=min(count, 5))


def estimate_duration(subtasks: List[Task]) -> float:
    return sum(COMPLEXITY_DURATIONS[sub.complexity] for sub in subtasks)


def _complexity(value: Any, default: Complexity) -> Complexity:
    try:
        return Complexity(str(value).lower())
    except ValueError:
        return default
