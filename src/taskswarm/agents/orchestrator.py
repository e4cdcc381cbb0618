"""Swarm controller: decomposes tasks, routes subtasks to agents, aggregates results."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from ..config import SwarmSettings
from ..errors import QueueFullError, RoutingError
from ..events import AgentEventType, EventBus
from ..tasks.base import Task, new_id
from .aggregator import AggregationResult, ResultAggregator
from .base import AgentStatus, BaseAgent, TaskResult
from .communicator import AgentCommunicator
from .decomposer import ExecutionMode, TaskDecomposer, TaskDecomposition

logger = logging.getLogger(__name__)

Assignment = Tuple[Task, BaseAgent]


@dataclass
class SwarmResult:
    """Outcome of one swarm execution."""

    execution_id: str
    task_id: str
    success: bool
    mode: ExecutionMode
    output: Optional[str] = None
    data: Any = None
    results: List[TaskResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    consensus_score: Optional[float] = None
    duration: float = 0.0
    agent_count: int = 0
    subtask_count: int = 0


@dataclass
class SwarmMetrics:
    total_tasks: int = 0
    successful_tasks: int = 0
    failed_tasks: int = 0
    average_execution_time: float = 0.0

    def record(self, success: bool, duration: float) -> None:
        self.total_tasks += 1
        if success:
            self.successful_tasks += 1
        else:
            self.failed_tasks += 1
        self.average_execution_time += (duration - self.average_execution_time) / self.total_tasks


class SwarmController:
    """Owns the agent pool and runs decomposed tasks across it.

    Agents keep their own queues and busy/idle state; the controller only
    reads that state when choosing where a subtask goes.
    """

    def __init__(
        self,
        settings: SwarmSettings | None = None,
        decomposer: TaskDecomposer | None = None,
        aggregator: ResultAggregator | None = None,
        communicator: AgentCommunicator | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.settings = settings or SwarmSettings()
        self.decomposer = decomposer or TaskDecomposer()
        self.aggregator = aggregator or ResultAggregator(self.settings.consensus_threshold)
        self.communicator = communicator or AgentCommunicator()
        self.events = events or EventBus()
        self._agents: Dict[str, BaseAgent] = {}
        self._unsubscribers: Dict[str, List[Callable[[], None]]] = {}
        self._active: Dict[str, Task] = {}
        self._gates: Dict[str, asyncio.Semaphore] = {}
        self._metrics = SwarmMetrics()
        self._running = False

    # ------------------------------------------------------------------
    # lifecycle

    async def start(self) -> None:
        if self._running:
            logger.warning("Swarm controller already running")
            return
        self._running = True
        logger.info("Swarm controller started with %d agents", len(self._agents))

    async def stop(self) -> None:
        if not self._running:
            return
        for execution_id in list(self._active):
            logger.warning("Stopping swarm with execution %s still active", execution_id)
        for agent_id in list(self._agents):
            await self.unregister_agent(agent_id)
        self._running = False
        logger.info("Swarm controller stopped")

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # agent pool

    async def register_agent(self, agent: BaseAgent) -> str:
        if agent.id in self._agents:
            raise ValueError(f"Agent with ID {agent.id} already registered")
        await agent.initialize()
        self._agents[agent.id] = agent
        self._unsubscribers[agent.id] = [
            agent.events.on(AgentEventType.STATUS_CHANGE, self._forward(AgentEventType.STATUS_CHANGE)),
            agent.events.on(AgentEventType.TASK_COMPLETE, self._forward(AgentEventType.TASK_COMPLETE)),
        ]
        logger.info("Registered agent %s (%s, capabilities: %s)", agent.id, agent.agent_type, sorted(agent.capabilities))
        self.events.emit(AgentEventType.REGISTERED, {"agent_id": agent.id, "name": agent.name})
        return agent.id

    async def unregister_agent(self, agent_id: str) -> bool:
        agent = self._agents.pop(agent_id, None)
        if agent is None:
            logger.warning("Attempted to unregister unknown agent %s", agent_id)
            return False
        self._gates.pop(agent_id, None)
        for unsubscribe in self._unsubscribers.pop(agent_id, []):
            unsubscribe()
        await agent.shutdown()
        logger.info("Unregistered agent %s", agent_id)
        self.events.emit(AgentEventType.UNREGISTERED, {"agent_id": agent_id})
        return True

    def _forward(self, event_type: AgentEventType) -> Callable[[Any], None]:
        def forward(payload: Any) -> None:
            self.events.emit(event_type, payload)

        return forward

    def agents(self) -> List[BaseAgent]:
        return list(self._agents.values())

    def get_agent(self, agent_id: str) -> Optional[BaseAgent]:
        return self._agents.get(agent_id)

    def agents_by_type(self, agent_type: str) -> List[BaseAgent]:
        return [agent for agent in self._agents.values() if agent.agent_type == agent_type]

    # ------------------------------------------------------------------
    # routing

    def select_agent(self, subtask: Task, planned: Optional[Dict[str, int]] = None) -> BaseAgent:
        """Pick the agent for ``subtask``.

        Capability containment is a hard filter, then the lowest ``priority``
        value wins, then the highest score. Raises RoutingError when nothing
        matches.
        """

        candidates = [
            agent
            for agent in self._agents.values()
            if agent.status not in (AgentStatus.OFFLINE, AgentStatus.ERROR)
            and agent.can_handle(subtask.required_capabilities)
        ]
        if not candidates:
            raise RoutingError(subtask.id, subtask.required_capabilities)
        planned = planned or {}
        return min(candidates, key=lambda agent: (agent.priority, -self.score(agent, subtask, planned.get(agent.id, 0))))

    def score(self, agent: BaseAgent, subtask: Task, planned: int = 0) -> float:
        rate = agent.success_rate
        score = 50.0 if rate is None else rate * 100
        if subtask.task_type and subtask.task_type == agent.agent_type:
            score += 50
        if self.settings.enable_load_balancing:
            score -= 10 * (agent.active_tasks + agent.queue_size + planned)
        return score

    def assign(self, subtasks: Iterable[Task]) -> List[Assignment]:
        planned: Dict[str, int] = {}
        assignments = []
        for subtask in subtasks:
            agent = self.select_agent(subtask, planned)
            planned[agent.id] = planned.get(agent.id, 0) + 1
            assignments.append((subtask, agent))
            logger.debug("Assigned subtask %s to agent %s", subtask.id, agent.id)
        return assignments

    # ------------------------------------------------------------------
    # execution

    async def execute_task(self, task: Task, mode: ExecutionMode | None = None) -> SwarmResult:
        """Decompose, dispatch and aggregate ``task``.

        RoutingError propagates to the caller; every other problem is
        reported in the returned result.
        """

        execution_id = new_id("exec")
        started = time.monotonic()
        self._active[execution_id] = task
        logger.info("Swarm execution %s started for task %s", execution_id, task.id)
        try:
            decomposition = await self.decomposer.decompose(task)
            mode = mode or decomposition.strategy.mode
            try:
                assignments = self.assign(decomposition.subtasks)
            except RoutingError:
                self._metrics.record(False, time.monotonic() - started)
                raise
            results = await self._run(decomposition, assignments, mode, execution_id)
            aggregated = self.aggregator.aggregate(results, self.aggregator.strategy_for(mode))
            result = self._build_result(execution_id, task, mode, aggregated, assignments, decomposition, started)
        except RoutingError:
            raise
        except Exception as exc:
            logger.exception("Swarm execution %s failed", execution_id)
            result = SwarmResult(
                execution_id=execution_id,
                task_id=task.id,
                success=False,
                mode=mode or ExecutionMode.SEQUENTIAL,
                errors=[str(exc) or exc.__class__.__name__],
                duration=time.monotonic() - started,
            )
        finally:
            self._active.pop(execution_id, None)
            self.communicator.close_channel(execution_id)
        self._metrics.record(result.success, result.duration)
        logger.info(
            "Swarm execution %s finished: success=%s in %.2fs with %d agents",
            execution_id,
            result.success,
            result.duration,
            result.agent_count,
        )
        self.events.emit(AgentEventType.SWARM_COMPLETE, result)
        return result

    async def execute_multiple(self, tasks: Iterable[Task], mode: ExecutionMode | None = None) -> List[SwarmResult]:
        tasks = list(tasks)
        logger.info("Executing %d tasks on the swarm", len(tasks))
        return list(await asyncio.gather(*(self.execute_task(task, mode) for task in tasks)))

    def _build_result(
        self,
        execution_id: str,
        task: Task,
        mode: ExecutionMode,
        aggregated: AggregationResult,
        assignments: List[Assignment],
        decomposition: TaskDecomposition,
        started: float,
    ) -> SwarmResult:
        return SwarmResult(
            execution_id=execution_id,
            task_id=task.id,
            success=aggregated.success,
            mode=mode,
            output=aggregated.output,
            data=aggregated.data,
            results=list(aggregated.sources),
            errors=list(aggregated.errors),
            consensus_score=aggregated.consensus_score,
            duration=time.monotonic() - started,
            agent_count=len({agent.id for _, agent in assignments}),
            subtask_count=len(decomposition.subtasks),
        )

    async def _run(
        self,
        decomposition: TaskDecomposition,
        assignments: List[Assignment],
        mode: ExecutionMode,
        execution_id: str,
    ) -> List[TaskResult]:
        factor = max(1, decomposition.strategy.parallel_factor)
        outputs: Dict[str, TaskResult] = {}
        if mode is ExecutionMode.SEQUENTIAL:
            return await self._run_sequential(assignments, execution_id, outputs)
        if mode is ExecutionMode.PARALLEL:
            return await self._run_parallel(assignments, execution_id, outputs, factor)
        results: List[TaskResult] = []
        for level in dependency_levels(assignments):
            results.extend(await self._run_parallel(level, execution_id, outputs, factor))
        return results

    async def _run_sequential(
        self, assignments: List[Assignment], execution_id: str, outputs: Dict[str, TaskResult]
    ) -> List[TaskResult]:
        results = []
        for subtask, agent in assignments:
            result = await self._run_subtask(subtask, agent, execution_id, outputs)
            results.append(result)
            if not result.success and subtask.critical:
                logger.warning("Critical subtask %s failed; stopping execution %s", subtask.id, execution_id)
                break
        return results

    async def _run_parallel(
        self,
        assignments: List[Assignment],
        execution_id: str,
        outputs: Dict[str, TaskResult],
        factor: int,
    ) -> List[TaskResult]:
        semaphore = asyncio.Semaphore(factor)

        async def bounded(subtask: Task, agent: BaseAgent) -> TaskResult:
            async with semaphore:
                return await self._run_subtask(subtask, agent, execution_id, outputs)

        return list(await asyncio.gather(*(bounded(subtask, agent) for subtask, agent in assignments)))

    async def _run_subtask(
        self,
        subtask: Task,
        agent: BaseAgent,
        execution_id: str,
        outputs: Dict[str, TaskResult],
    ) -> TaskResult:
        context = dict(subtask.context)
        if subtask.dependencies:
            context["dependency_outputs"] = {
                dep: {"output": outputs[dep].output, "data": outputs[dep].data}
                for dep in subtask.dependencies
                if dep in outputs
            }
        if self.settings.enable_communication:
            self.communicator.register_channel(execution_id, agent.id)
            context["execution_id"] = execution_id
        work = dataclasses.replace(subtask, context=context)
        timeout = subtask.timeout or self.settings.task_timeout
        async with self._gate(agent):
            try:
                future = agent.submit(work)
            except QueueFullError as exc:
                logger.warning("Agent %s could not take subtask %s: %s", agent.id, subtask.id, exc)
                result = TaskResult(task_id=subtask.id, success=False, error=f"QueueFullError: {exc}", agent_id=agent.id)
            else:
                try:
                    result = await asyncio.wait_for(future, timeout)
                except asyncio.TimeoutError:
                    logger.warning("Subtask %s timed out on agent %s", subtask.id, agent.id)
                    result = TaskResult(
                        task_id=subtask.id,
                        success=False,
                        error=f"Subtask '{subtask.id}' timed out after {timeout:g}s",
                        agent_id=agent.id,
                    )
        outputs[subtask.id] = result
        return result

    def _gate(self, agent: BaseAgent) -> asyncio.Semaphore:
        """Limit in-flight subtasks per agent to what it can run plus queue."""

        gate = self._gates.get(agent.id)
        if gate is None:
            gate = asyncio.Semaphore(agent.max_concurrent_tasks + agent.queue_capacity)
            self._gates[agent.id] = gate
        return gate

    # ------------------------------------------------------------------
    # introspection

    def metrics(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self._metrics)
        data["total_agents"] = len(self._agents)
        return data

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "total_agents": len(self._agents),
            "busy_agents": sum(1 for agent in self._agents.values() if agent.status is AgentStatus.BUSY),
            "idle_agents": sum(1 for agent in self._agents.values() if agent.status is AgentStatus.IDLE),
            "active_executions": len(self._active),
            "agents": [agent.describe() for agent in self._agents.values()],
            "metrics": self.metrics(),
        }


def dependency_levels(assignments: List[Assignment]) -> List[List[Assignment]]:
    """Group assignments into topological levels of their sibling dependencies.

    Dependencies on ids outside the group are ignored; members of a cycle end
    up together in the last level.
    """

    known = {subtask.id for subtask, _ in assignments}
    remaining: Deque[Assignment] = deque(assignments)
    done: set[str] = set()
    levels: List[List[Assignment]] = []
    while remaining:
        level = [
            item
            for item in remaining
            if all(dep in done for dep in item[0].dependencies if dep in known)
        ]
        if not level:
            logger.warning("Dependency cycle among subtasks %s", [subtask.id for subtask, _ in remaining])
            level = list(remaining)
        levels.append(level)
        level_ids = {subtask.id for subtask, _ in level}
        done.update(level_ids)
        remaining = deque(item for item in remaining if item[0].id not in level_ids)
    return levels
