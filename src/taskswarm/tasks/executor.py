"""Runs a task's steps in order with timeouts, dependency gating and recovery."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Set, assert_never

from ..config import ExecutorSettings
from ..errors import ConditionSyntaxError, DependencyUnmetError, StepTimeoutError
from . import conditions
from .base import (
    CancellationToken,
    ConditionStepConfig,
    DelayStepConfig,
    ErrorStrategy,
    LLMStepConfig,
    LoopStepConfig,
    ParallelStepConfig,
    Step,
    StepResult,
    StepStatus,
    Task,
    TaskContext,
    TaskStatus,
    ToolStepConfig,
    WaitStepConfig,
)
from .queue import TaskScheduler

logger = logging.getLogger(__name__)

LLMCallback = Callable[[str, Optional[str]], Awaitable[str]]
UserInputCallback = Callable[[str, str, Optional[List[str]]], Awaitable[str]]
Sleep = Callable[[float], Awaitable[Any]]

_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")


class ToolOutcome(Protocol):
    success: bool
    data: Any
    error: Optional[str]


class ToolExecutor(Protocol):
    """Tool execution collaborator (see :class:`taskswarm.tools.ToolRegistry`)."""

    async def execute(self, name: str, arguments: Mapping[str, Any]) -> ToolOutcome:  # pragma: no cover - interface
        ...


def interpolate(value: Any, variables: Mapping[str, Any]) -> Any:
    """Replace ``{{name}}`` placeholders in strings, lists and mappings."""

    if isinstance(value, str):
        def replace(match: re.Match) -> str:
            name = match.group(1)
            if name in variables and variables[name] is not None:
                return str(variables[name])
            return match.group(0)

        return _PLACEHOLDER_RE.sub(replace, value)
    if isinstance(value, list):
        return [interpolate(item, variables) for item in value]
    if isinstance(value, dict):
        return {key: interpolate(item, variables) for key, item in value.items()}
    return value


def condition_scope(context: TaskContext) -> Dict[str, Any]:
    scope: Dict[str, Any] = dict(context.variables)
    for step_id, result in context.step_results.items():
        key = step_id.replace("-", "_")
        scope[f"step_{key}_data"] = result.data
        scope[f"step_{key}_success"] = result.status is StepStatus.COMPLETED
    return scope


class StepExecutor:
    """Executes tasks admitted by a :class:`TaskScheduler`.

    Steps run in array order. Only ``parallel`` and ``loop`` steps introduce
    concurrency, and the steps they reference are run through them rather than
    again in the sequential pass. The executor mutates step status and results;
    task-level state changes go through the scheduler.
    """

    def __init__(
        self,
        scheduler: TaskScheduler,
        tools: ToolExecutor | None = None,
        llm: LLMCallback | None = None,
        user_input: UserInputCallback | None = None,
        settings: ExecutorSettings | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.scheduler = scheduler
        self.tools = tools
        self.llm = llm
        self.user_input = user_input
        self.settings = settings or ExecutorSettings()
        self._sleep = sleep

    def set_llm_callback(self, callback: LLMCallback | None) -> None:
        self.llm = callback

    def set_user_input_callback(self, callback: UserInputCallback | None) -> None:
        self.user_input = callback

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""

        delay = self.settings.base_retry_delay * (2 ** (attempt - 1))
        return min(delay, self.settings.max_retry_delay)

    # ------------------------------------------------------------------
    # task level

    async def execute_task(self, task: Task) -> None:
        """Run every step of ``task`` and report the outcome to the scheduler.

        Unexpected exceptions become a failed completion; they never escape.
        """

        token = self.scheduler.token_for(task.id)
        context = task.execution or TaskContext(variables=dict(task.context))
        task.execution = context
        owned = self._owned_step_ids(task)
        total = len(task.steps) or 1
        logger.info("Executing task %s (%s): %d steps", task.id, task.name, len(task.steps))
        try:
            for index, step in enumerate(task.steps, start=1):
                if not await self._checkpoint(task, token):
                    return
                if step.id in owned:
                    # run by its parallel group or loop
                    self.scheduler.update_progress(task.id, round(index / total * 100), step.id)
                    continue
                missing = self._unmet_dependencies(task, step)
                if missing:
                    self._mark_skipped(task, step, str(DependencyUnmetError(step.id, missing)))
                    self.scheduler.update_progress(task.id, round(index / total * 100), step.id)
                    continue

                result = await self._run_with_recovery(task, step, token)
                context.step_results[step.id] = result
                self.scheduler.update_progress(task.id, round(index / total * 100), step.id)

                if result.status is StepStatus.FAILED:
                    self.scheduler.complete_task(task.id, TaskStatus.FAILED, error=result.error)
                    return

            if not await self._checkpoint(task, token):
                return
            self.scheduler.complete_task(task.id, TaskStatus.COMPLETED, result=self._final_output(task))
        except Exception as exc:
            logger.exception("Task %s crashed", task.id)
            self.scheduler.complete_task(task.id, TaskStatus.FAILED, error=str(exc) or exc.__class__.__name__)

    async def _checkpoint(self, task: Task, token: CancellationToken) -> bool:
        """Wait out a pause; return False once the task is cancelled."""

        if task.status is TaskStatus.PAUSED:
            logger.info("Task %s paused; waiting for resume", task.id)
            await self.scheduler.wait_while_paused(task.id)
        if token.cancelled or task.status.is_terminal:
            logger.info("Task %s stopped: %s", task.id, task.status.value)
            return False
        return True

    def _owned_step_ids(self, task: Task) -> Set[str]:
        owned: Set[str] = set()
        for step in task.steps:
            if isinstance(step.config, ParallelStepConfig):
                owned.update(step.config.steps)
            elif isinstance(step.config, LoopStepConfig):
                owned.add(step.config.step_id)
        return owned

    def _unmet_dependencies(self, task: Task, step: Step) -> List[str]:
        missing = []
        for dependency in step.depends_on:
            other = task.get_step(dependency)
            if other is None:
                logger.warning("Step %s depends on unknown step %s", step.id, dependency)
                missing.append(dependency)
            elif other.status is not StepStatus.COMPLETED:
                missing.append(dependency)
        return missing

    def _mark_skipped(self, task: Task, step: Step, reason: Optional[str] = None) -> None:
        step.status = StepStatus.SKIPPED
        step.result = StepResult(step_id=step.id, status=StepStatus.SKIPPED, error=reason)
        if task.execution is not None:
            task.execution.step_results[step.id] = step.result
        logger.info("Skipped step %s of task %s: %s", step.id, task.id, reason)
        self.scheduler.report_step(task.id, step)

    def _final_output(self, task: Task) -> Any:
        if not task.steps:
            return None
        last = task.steps[-1]
        return last.result.data if last.result else None

    # ------------------------------------------------------------------
    # failure recovery

    async def _run_with_recovery(self, task: Task, step: Step, token: CancellationToken) -> StepResult:
        result = await self._execute_step(task, step, token)
        attempt = 1
        while result.status is StepStatus.FAILED:
            strategy = step.error_strategy
            logger.warning(
                "Step %s of task %s failed (attempt %d, strategy %s): %s",
                step.id, task.id, attempt, strategy.value, result.error,
            )
            if strategy is ErrorStrategy.SKIP:
                step.status = StepStatus.SKIPPED
                result.status = StepStatus.SKIPPED
                self.scheduler.report_step(task.id, step)
                break
            if strategy is ErrorStrategy.RETRY and attempt < step.max_retries:
                delay = self.backoff_delay(attempt)
                logger.info("Retrying step %s in %.3fs (attempt %d/%d)", step.id, delay, attempt + 1, step.max_retries)
                await self._sleep(delay)
                if token.cancelled:
                    break
                attempt += 1
                result = await self._execute_step(task, step, token)
                result.attempts = attempt
                continue
            if strategy is ErrorStrategy.ROLLBACK:
                logger.warning("Rollback is not supported; failing task %s at step %s", task.id, step.id)
            break
        return result

    # ------------------------------------------------------------------
    # step level

    async def _execute_step(self, task: Task, step: Step, token: CancellationToken) -> StepResult:
        started = time.monotonic()
        step.status = StepStatus.RUNNING
        self.scheduler.report_step(task.id, step)
        timeout = step.timeout or self.settings.default_step_timeout
        logger.debug("Running step %s (%s) of task %s", step.id, step.kind, task.id)
        try:
            result = await asyncio.wait_for(self._dispatch(task, step, token), timeout)
        except asyncio.TimeoutError:
            result = self._failure(step, str(StepTimeoutError(step.name, timeout)), started)
        except Exception as exc:
            result = self._failure(step, str(exc) or exc.__class__.__name__, started)
        result.duration = time.monotonic() - started
        step.status = result.status
        step.result = result
        self.scheduler.report_step(task.id, step)
        return result

    def _failure(self, step: Step, error: str, started: float) -> StepResult:
        return StepResult(
            step_id=step.id,
            status=StepStatus.FAILED,
            error=error,
            duration=time.monotonic() - started,
        )

    async def _dispatch(self, task: Task, step: Step, token: CancellationToken) -> StepResult:
        config = step.config
        if isinstance(config, ToolStepConfig):
            return await self._run_tool(task, step, config)
        if isinstance(config, LLMStepConfig):
            return await self._run_llm(task, step, config)
        if isinstance(config, WaitStepConfig):
            return await self._run_wait(task, step, config)
        if isinstance(config, ConditionStepConfig):
            return self._run_condition(task, step, config)
        if isinstance(config, ParallelStepConfig):
            return await self._run_parallel(task, step, config, token)
        if isinstance(config, LoopStepConfig):
            return await self._run_loop(task, step, config, token)
        if isinstance(config, DelayStepConfig):
            return await self._run_delay(step, config)
        assert_never(config)

    def _variables(self, task: Task) -> Dict[str, Any]:
        if task.execution is None:
            task.execution = TaskContext(variables=dict(task.context))
        return task.execution.variables

    async def _run_tool(self, task: Task, step: Step, config: ToolStepConfig) -> StepResult:
        if self.tools is None:
            raise RuntimeError("Tool executor not configured")
        arguments = interpolate(dict(config.parameters), self._variables(task))
        logger.info("Task %s calling tool %s", task.id, config.tool_name)
        try:
            outcome = await self.tools.execute(config.tool_name, arguments)
        except Exception as exc:
            return StepResult(step_id=step.id, status=StepStatus.FAILED, error=str(exc) or exc.__class__.__name__)
        return StepResult(
            step_id=step.id,
            status=StepStatus.COMPLETED if outcome.success else StepStatus.FAILED,
            data=outcome.data,
            error=outcome.error,
        )

    async def _run_llm(self, task: Task, step: Step, config: LLMStepConfig) -> StepResult:
        if self.llm is None:
            raise RuntimeError("LLM callback not configured")
        variables = self._variables(task)
        prompt = interpolate(config.prompt, variables)
        system_prompt = interpolate(config.system_prompt, variables) if config.system_prompt else None
        logger.info("Task %s step %s prompting LLM (%d chars)", task.id, step.id, len(prompt))
        response = await self.llm(prompt, system_prompt)
        if config.output_variable:
            variables[config.output_variable] = response
        return StepResult(step_id=step.id, status=StepStatus.COMPLETED, data=response)

    async def _run_wait(self, task: Task, step: Step, config: WaitStepConfig) -> StepResult:
        if self.user_input is None:
            raise RuntimeError("User input callback not configured")
        variables = self._variables(task)
        prompt = interpolate(config.prompt, variables)
        logger.info("Task %s waiting for %s input", task.id, config.input_type)
        response = await self.user_input(prompt, config.input_type, config.choices)
        if config.output_variable:
            variables[config.output_variable] = response
        return StepResult(step_id=step.id, status=StepStatus.COMPLETED, data=response)

    def _run_condition(self, task: Task, step: Step, config: ConditionStepConfig) -> StepResult:
        if task.execution is None:
            task.execution = TaskContext(variables=dict(task.context))
        try:
            outcome = conditions.evaluate(config.condition, condition_scope(task.execution))
        except ConditionSyntaxError as exc:
            logger.error("Condition for step %s could not be parsed: %s", step.id, exc)
            outcome = False
        branch = config.then_step if outcome else config.else_step
        logger.info("Condition %r of step %s -> %s", config.condition, step.id, outcome)
        return StepResult(
            step_id=step.id,
            status=StepStatus.COMPLETED,
            data={"condition_result": outcome, "next_step": branch},
        )

    async def _run_parallel(
        self,
        task: Task,
        step: Step,
        config: ParallelStepConfig,
        token: CancellationToken,
    ) -> StepResult:
        members = [member for member in task.steps if member.id in config.steps and member.id != step.id]
        if not members:
            return StepResult(step_id=step.id, status=StepStatus.COMPLETED, data=[])
        logger.info("Step %s running %d steps in parallel (%s)", step.id, len(members), config.wait_for)
        runs = {asyncio.ensure_future(self._execute_step(task, member, token)): member for member in members}
        cancel_waiter = asyncio.ensure_future(token.wait())
        try:
            if config.wait_for == "all":
                pending = set(runs)
                while pending and not token.cancelled:
                    _, pending = await asyncio.wait(pending | {cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
                    pending.discard(cancel_waiter)
                finished = [run for run in runs if run.done()]
            else:
                done, _ = await asyncio.wait(set(runs) | {cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
                finished = [run for run in runs if run in done][:1]
        finally:
            cancel_waiter.cancel()
            losers = [run for run in runs if not run.done()]
            for run in losers:
                run.cancel()
            if losers:
                await asyncio.gather(*losers, return_exceptions=True)
            for run, member in runs.items():
                if member.status is StepStatus.RUNNING:
                    self._mark_skipped(task, member, "Superseded by parallel race")

        results: List[StepResult] = [run.result() for run in finished]
        if task.execution is not None:
            for result in results:
                task.execution.step_results[result.step_id] = result
        expected = len(members) if config.wait_for == "all" else 1
        succeeded = len(results) == expected and all(result.succeeded for result in results)
        return StepResult(
            step_id=step.id,
            status=StepStatus.COMPLETED if succeeded else StepStatus.FAILED,
            data=[result.data for result in results],
            error=None if succeeded else self._group_error(results, token),
        )

    def _group_error(self, results: List[StepResult], token: CancellationToken) -> str:
        if token.cancelled:
            return "Cancelled"
        errors = [f"{result.step_id}: {result.error}" for result in results if not result.succeeded]
        return "; ".join(errors) or "Parallel group did not finish"

    async def _run_loop(
        self,
        task: Task,
        step: Step,
        config: LoopStepConfig,
        token: CancellationToken,
    ) -> StepResult:
        variables = self._variables(task)
        items = variables.get(config.items_variable)
        if not isinstance(items, (list, tuple)):
            raise ValueError(f"Loop variable '{config.items_variable}' is not a list")
        body = task.get_step(config.step_id)
        if body is None:
            raise ValueError(f"Loop body step '{config.step_id}' not found")
        results: List[StepResult] = []
        for index, item in enumerate(items[: config.max_iterations]):
            if token.cancelled:
                break
            variables[config.item_variable] = item
            variables["__loopIndex"] = index
            variables["__loop_index"] = index
            result = await self._execute_step(task, body, token)
            results.append(result)
            if result.status is StepStatus.FAILED and step.error_strategy is ErrorStrategy.FAIL:
                break
        if task.execution is not None and results:
            task.execution.step_results[body.id] = results[-1]
        succeeded = all(result.succeeded for result in results) and not token.cancelled
        failures = [result.error for result in results if not result.succeeded]
        return StepResult(
            step_id=step.id,
            status=StepStatus.COMPLETED if succeeded else StepStatus.FAILED,
            data=[result.data for result in results],
            error=None if succeeded else "; ".join(str(error) for error in failures) or "Cancelled",
        )

    async def _run_delay(self, step: Step, config: DelayStepConfig) -> StepResult:
        logger.debug("Step %s delaying %.3fs (%s)", step.id, config.duration, config.reason or "no reason")
        await self._sleep(config.duration)
        return StepResult(step_id=step.id, status=StepStatus.COMPLETED, data={"delayed": config.duration})
