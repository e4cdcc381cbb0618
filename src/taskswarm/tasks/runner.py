"""Composition root wiring the scheduler, the step executor and the swarm."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from ..agents.aggregator import ResultAggregator
from ..agents.base import BaseAgent
from ..agents.communicator import AgentCommunicator
from ..agents.decomposer import Reasoner, TaskDecomposer
from ..agents.orchestrator import SwarmController, SwarmResult
from ..config import AgentSpec, ConfigError, EngineSettings, ProjectConfig, import_string, instantiate_from_path
from ..errors import RoutingError
from ..events import EventBus
from ..llm.provider import LLMProvider, as_llm_callback, as_reasoner
from ..tools.builtin import register_builtin_tools
from ..tools.registry import ToolRegistry
from .base import Task, TaskOptions, TaskStatus
from .executor import LLMCallback, Sleep, StepExecutor, UserInputCallback
from .queue import TaskScheduler

logger = logging.getLogger(__name__)


class TaskRunner:
    """Builds every engine component from one :class:`EngineSettings`.

    Admitted tasks with steps run on the step executor; tasks without steps,
    or at or above the swarm complexity threshold, go to the swarm.
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        tools: ToolRegistry | None = None,
        llm: LLMCallback | None = None,
        reasoner: Reasoner | None = None,
        user_input: UserInputCallback | None = None,
        events: EventBus | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.events = events or EventBus()
        self.tools = tools or ToolRegistry()
        self.scheduler = TaskScheduler(self.settings.scheduler, self.events, launcher=self._launch)
        self.executor = StepExecutor(
            self.scheduler,
            tools=self.tools,
            llm=llm,
            user_input=user_input,
            settings=self.settings.executor,
            sleep=sleep,
        )
        self.communicator = AgentCommunicator()
        self.decomposer = TaskDecomposer(reasoner)
        self.aggregator = ResultAggregator(self.settings.swarm.consensus_threshold)
        self.swarm = SwarmController(
            self.settings.swarm,
            decomposer=self.decomposer,
            aggregator=self.aggregator,
            communicator=self.communicator,
            events=self.events,
        )
        self.swarm_results: Dict[str, SwarmResult] = {}
        self._pending_agents: List[BaseAgent] = []
        self._inflight: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # construction from config

    @classmethod
    def from_config(cls, config: ProjectConfig, **overrides: Any) -> "TaskRunner":
        """Materialise tools, providers and agents described by ``config``.

        Agents are registered with the swarm by :meth:`start`.
        """

        tools = ToolRegistry()
        register_builtin_tools(tools)
        tools.discover_entrypoints()
        tools.configure_from_specs(config.tool_specs)
        default_provider = None
        if config.defaults.llm_provider:
            default_provider = _build_provider(config.defaults.llm_provider, config.defaults.llm_params)
        if default_provider is not None:
            overrides.setdefault("llm", as_llm_callback(default_provider))
            overrides.setdefault("reasoner", as_reasoner(default_provider))
        runner = cls(config.settings, tools=tools, **overrides)
        for spec in config.agents.values():
            runner.add_agent(runner._materialize_agent(config, spec, default_provider))
        return runner

    def _materialize_agent(
        self, config: ProjectConfig, spec: AgentSpec, default_provider: Optional[LLMProvider]
    ) -> BaseAgent:
        agent_cls = import_string(spec.type)
        if not hasattr(agent_cls, "from_spec"):
            raise ConfigError(f"Agent type '{spec.type}' does not provide from_spec()")
        provider = default_provider
        if spec.llm_provider:
            params = dict(config.defaults.llm_params)
            params.update(spec.llm_params)
            provider = _build_provider(spec.llm_provider, params)
        if provider is None:
            raise ConfigError(f"Agent '{spec.name}' needs an llm_provider (or defaults.llm_provider)")
        for name in spec.tools:
            if name not in self.tools:
                raise ConfigError(f"Agent '{spec.name}' references unknown tool '{name}'")
        return agent_cls.from_spec(spec, llm_provider=provider, tools=self.tools, communicator=self.communicator)

    def add_agent(self, agent: BaseAgent) -> None:
        """Queue ``agent`` for registration on :meth:`start`."""

        self._pending_agents.append(agent)

    # ------------------------------------------------------------------
    # lifecycle

    async def start(self) -> None:
        while self._pending_agents:
            await self.swarm.register_agent(self._pending_agents.pop(0))
        await self.swarm.start()

    async def stop(self) -> None:
        for task in list(self._inflight):
            task.cancel()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        await self.swarm.stop()

    async def __aenter__(self) -> "TaskRunner":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # submission

    def submit(self, options: TaskOptions) -> Task:
        return self.scheduler.submit(options)

    async def run(self, options: Iterable[TaskOptions], timeout: Optional[float] = None) -> List[Task]:
        """Submit every task and wait until all of them are terminal."""

        tasks = [self.submit(item) for item in options]
        await asyncio.wait_for(
            asyncio.gather(*(self.scheduler.wait_for(task.id) for task in tasks)),
            timeout,
        )
        return tasks

    def uses_swarm(self, task: Task) -> bool:
        if not task.steps:
            return True
        return task.complexity.rank >= self.settings.swarm.complexity_threshold.rank

    def _launch(self, task: Task) -> None:
        if self.uses_swarm(task):
            logger.info("Routing task %s to the swarm", task.id)
            coro = self._run_on_swarm(task)
        else:
            coro = self.executor.execute_task(task)
        worker = asyncio.ensure_future(coro)
        self._inflight.add(worker)
        worker.add_done_callback(self._inflight.discard)

    async def _run_on_swarm(self, task: Task) -> None:
        token = self.scheduler.token_for(task.id)
        await self.scheduler.wait_while_paused(task.id)
        if token.cancelled:
            return
        execution = asyncio.ensure_future(self.swarm.execute_task(task))
        cancelled = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({execution, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
        if not execution.done():
            execution.cancel()
            await asyncio.gather(execution, return_exceptions=True)
            return
        try:
            result = execution.result()
        except RoutingError as exc:
            self.scheduler.complete_task(task.id, TaskStatus.FAILED, error=str(exc))
            return
        except Exception as exc:
            logger.exception("Swarm run for task %s crashed", task.id)
            self.scheduler.complete_task(task.id, TaskStatus.FAILED, error=str(exc) or exc.__class__.__name__)
            return
        self.swarm_results[task.id] = result
        output = result.output if result.output is not None else result.data
        if result.success:
            self.scheduler.complete_task(task.id, TaskStatus.COMPLETED, result=output)
        else:
            error = "; ".join(result.errors) or "Swarm execution failed"
            self.scheduler.complete_task(task.id, TaskStatus.FAILED, result=output, error=error)


def _build_provider(path: str, params: Dict[str, Any]) -> LLMProvider:
    provider = instantiate_from_path(path, **params)
    if not hasattr(provider, "generate"):
        raise ConfigError(f"LLM provider '{path}' has no generate() method")
    return provider
