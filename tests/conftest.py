from __future__ import annotations

import asyncio
from typing import Any, List, Mapping

import pytest

from taskswarm.config import ExecutorSettings, SchedulerSettings
from taskswarm.tasks.base import Task, TaskOptions
from taskswarm.tasks.executor import StepExecutor
from taskswarm.tasks.queue import TaskScheduler
from taskswarm.tools.base import Tool, ToolContext, ToolResult
from taskswarm.tools.builtin import register_builtin_tools
from taskswarm.tools.registry import ToolRegistry


class RecordingSleep:
    """Stand-in for asyncio.sleep that records the requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class CountingTool(Tool):
    """Fails the first ``failures`` calls, then returns ``value``."""

    def __init__(self, name: str, failures: int = 0, value: Any = "ok", **kwargs: object) -> None:
        super().__init__(name, **kwargs)
        self.failures = failures
        self.value = value
        self.calls: List[Mapping[str, Any]] = []

    def run(self, *, arguments: Mapping[str, Any], context: ToolContext) -> ToolResult:
        self.calls.append(dict(arguments))
        if len(self.calls) <= self.failures:
            return ToolResult.fail(f"boom #{len(self.calls)}")
        return ToolResult.ok(self.value)


class SlowTool(Tool):
    """Sleeps for ``seconds`` (real time) before answering."""

    def __init__(self, name: str, seconds: float, value: Any = "slow", **kwargs: object) -> None:
        super().__init__(name, **kwargs)
        self.seconds = seconds
        self.value = value

    async def run(self, *, arguments: Mapping[str, Any], context: ToolContext) -> ToolResult:
        await asyncio.sleep(self.seconds)
        return ToolResult.ok(self.value)


class GateTool(Tool):
    """Blocks until ``gate`` is set."""

    def __init__(self, name: str, **kwargs: object) -> None:
        super().__init__(name, **kwargs)
        self.gate = asyncio.Event()
        self.started = asyncio.Event()

    async def run(self, *, arguments: Mapping[str, Any], context: ToolContext) -> ToolResult:
        self.started.set()
        await self.gate.wait()
        return ToolResult.ok("released")


class Harness:
    """Scheduler plus executor wired the way the runner wires them."""

    def __init__(
        self,
        tools: ToolRegistry | None = None,
        max_concurrent: int = 1,
        executor_settings: ExecutorSettings | None = None,
        **executor_kwargs: Any,
    ) -> None:
        self.sleep = RecordingSleep()
        self.tools = tools or ToolRegistry()
        self.scheduler = TaskScheduler(SchedulerSettings(max_concurrent=max_concurrent))
        self.executor = StepExecutor(
            self.scheduler,
            tools=self.tools,
            settings=executor_settings or ExecutorSettings(base_retry_delay=0.1, max_retry_delay=30),
            sleep=executor_kwargs.pop("sleep", self.sleep),
            **executor_kwargs,
        )
        self.workers: List[asyncio.Task] = []
        self.scheduler.set_launcher(self._launch)

    def _launch(self, task: Task) -> None:
        self.workers.append(asyncio.ensure_future(self.executor.execute_task(task)))

    def submit(self, data: Mapping[str, Any]) -> Task:
        return self.scheduler.submit(TaskOptions.from_mapping(data))

    async def run(self, data: Mapping[str, Any], timeout: float = 5.0) -> Task:
        task = self.submit(data)
        return await self.scheduler.wait_for(task.id, timeout)


@pytest.fixture
def registry() -> ToolRegistry:
    tools = ToolRegistry()
    register_builtin_tools(tools)
    return tools


@pytest.fixture
def harness(registry: ToolRegistry) -> Harness:
    return Harness(tools=registry)
