import asyncio
import json

import pytest

from taskswarm.agents.base import AgentConfig, AgentStatus, FunctionAgent
from taskswarm.agents.decomposer import ExecutionMode, TaskDecomposer
from taskswarm.agents.orchestrator import SwarmController
from taskswarm.config import SwarmSettings
from taskswarm.errors import RoutingError
from taskswarm.events import AgentEventType
from taskswarm.tasks.base import Complexity, Task


def _agent(name, capabilities, handler=None, **config):
    async def default(task):
        return f"{name}: {task.description}"

    return FunctionAgent(AgentConfig(name=name, capabilities=capabilities, **config), handler or default)


def _task(**extra):
    extra.setdefault("complexity", Complexity.HIGH)
    return Task(id="task-1", name="job", description="Do the job", **extra)


def _reasoner(entries):
    async def reason(prompt):
        return json.dumps(entries)

    return reason


@pytest.mark.asyncio
async def test_unroutable_subtask_raises_routing_error():
    swarm = SwarmController()
    await swarm.register_agent(_agent("writer", ["writing"]))

    with pytest.raises(RoutingError) as excinfo:
        await swarm.execute_task(_task(required_capabilities=["quantum"]))

    assert "quantum" in str(excinfo.value)
    assert swarm.metrics()["failed_tasks"] == 1


@pytest.mark.asyncio
async def test_selection_prefers_capability_then_priority_then_score():
    swarm = SwarmController()
    generalist = _agent("generalist", ["writing", "research"], priority=5)
    specialist = _agent("specialist", ["writing"], priority=1, agent_type="writer")
    other_writer = _agent("other", ["writing"], priority=1)
    for agent in (generalist, specialist, other_writer):
        await swarm.register_agent(agent)

    research = Task(id="r", name="r", required_capabilities=["research"])
    writing = Task(id="w", name="w", required_capabilities=["writing"], task_type="writer")

    assert swarm.select_agent(research) is generalist
    assert swarm.select_agent(writing) is specialist


@pytest.mark.asyncio
async def test_errored_agent_is_not_selected():
    async def crash(task):
        raise RuntimeError("broken backend")

    swarm = SwarmController()
    broken = _agent("broken", ["x"], crash, priority=1)
    backup = _agent("backup", ["x"], priority=9)
    await swarm.register_agent(broken)
    await swarm.register_agent(backup)
    subtask = Task(id="s1", name="s", required_capabilities=["x"])
    assert swarm.select_agent(subtask) is broken

    for index in range(3):
        await broken.submit(Task(id=f"c{index}", name="c", description="x"))

    assert broken.status is AgentStatus.ERROR
    assert swarm.select_agent(subtask) is backup


@pytest.mark.asyncio
async def test_assignment_spreads_load_between_equal_agents():
    swarm = SwarmController()
    first = _agent("first", ["x"])
    second = _agent("second", ["x"])
    await swarm.register_agent(first)
    await swarm.register_agent(second)

    subtasks = [Task(id=f"s{i}", name="s", required_capabilities=["x"]) for i in range(2)]
    assignments = swarm.assign(subtasks)

    assert {agent.id for _, agent in assignments} == {first.id, second.id}


@pytest.mark.asyncio
async def test_low_complexity_task_runs_as_single_subtask():
    swarm = SwarmController()
    await swarm.register_agent(_agent("solo", []))

    result = await swarm.execute_task(_task(complexity=Complexity.LOW))

    assert result.success
    assert result.mode is ExecutionMode.SEQUENTIAL
    assert result.output == "solo: Do the job"
    assert result.subtask_count == 1


@pytest.mark.asyncio
async def test_hybrid_execution_passes_dependency_outputs():
    contexts = {}

    async def handler(task):
        contexts[task.id] = dict(task.context)
        return f"out-{task.id}"

    entries = [
        {"description": "collect"},
        {"description": "chart"},
        {"description": "summarise", "dependencies": [0, 1]},
    ]
    swarm = SwarmController(decomposer=TaskDecomposer(_reasoner(entries)))
    await swarm.register_agent(_agent("worker", [], handler, max_concurrent_tasks=3))
    completed = []
    swarm.events.on(AgentEventType.SWARM_COMPLETE, completed.append)

    result = await swarm.execute_task(_task())

    assert result.success
    assert result.mode is ExecutionMode.HYBRID
    assert result.consensus_score == 1.0
    summary = contexts["task-1-sub-3"]["dependency_outputs"]
    assert summary == {
        "task-1-sub-1": {"output": "out-task-1-sub-1", "data": None},
        "task-1-sub-2": {"output": "out-task-1-sub-2", "data": None},
    }
    assert contexts["task-1-sub-1"]["execution_id"] == result.execution_id
    assert completed == [result]
    assert not swarm.communicator.has_channel(result.execution_id)


@pytest.mark.asyncio
async def test_sequential_stops_after_critical_failure():
    calls = []

    async def handler(task):
        calls.append(task.id)
        raise RuntimeError("cannot")

    swarm = SwarmController()
    agent = _agent("worker", [], handler)
    await swarm.register_agent(agent)
    subtasks = [
        Task(id="a", name="a", critical=True),
        Task(id="b", name="b"),
    ]

    results = await swarm._run_sequential([(sub, agent) for sub in subtasks], "exec", {})

    assert calls == ["a"]
    assert len(results) == 1


@pytest.mark.asyncio
async def test_subtask_timeout_produces_failed_result():
    async def handler(task):
        await asyncio.sleep(5)

    swarm = SwarmController()
    await swarm.register_agent(_agent("sleepy", [], handler))

    result = await swarm.execute_task(_task(complexity=Complexity.LOW, timeout=0.05))

    assert result.success is False
    assert "timed out after 0.05s" in result.results[0].error


@pytest.mark.asyncio
async def test_parallel_fan_out_waits_for_a_narrow_agent():
    release = asyncio.Event()

    async def handler(task):
        await release.wait()
        return task.description

    entries = [{"description": f"part {i}"} for i in range(4)]
    swarm = SwarmController(decomposer=TaskDecomposer(_reasoner(entries)))
    narrow = _agent("narrow", [], handler, max_concurrent_tasks=1)
    await swarm.register_agent(narrow)

    execution = asyncio.ensure_future(swarm.execute_task(_task()))
    await asyncio.sleep(0.01)
    assert narrow.active_tasks + narrow.queue_size == 3
    release.set()
    result = await execution

    assert [item.error for item in result.results if not item.success] == []
    assert result.success
    assert result.consensus_score == 1.0


@pytest.mark.asyncio
async def test_agent_filled_elsewhere_yields_queue_full_result():
    release = asyncio.Event()

    async def handler(task):
        await release.wait()
        return "ok"

    swarm = SwarmController()
    busy = _agent("busy", [], handler, max_concurrent_tasks=1)
    await swarm.register_agent(busy)
    outside = [busy.submit(Task(id=f"outside-{i}", name="outside", description="x")) for i in range(3)]

    result = await swarm.execute_task(_task(complexity=Complexity.LOW))
    release.set()
    await asyncio.gather(*outside)

    assert result.success is False
    assert result.results[0].error.startswith("QueueFullError")


@pytest.mark.asyncio
async def test_register_and_unregister_agents():
    swarm = SwarmController(SwarmSettings(enable_load_balancing=False))
    registered = []
    swarm.events.on(AgentEventType.REGISTERED, registered.append)
    agent = _agent("one", ["a"], agent_type="analyst")

    await swarm.register_agent(agent)
    with pytest.raises(ValueError):
        await swarm.register_agent(agent)

    assert swarm.get_agent(agent.id) is agent
    assert swarm.agents_by_type("analyst") == [agent]
    assert registered == [{"agent_id": agent.id, "name": "one"}]

    assert await swarm.unregister_agent(agent.id) is True
    assert await swarm.unregister_agent(agent.id) is False
    assert swarm.agents() == []


@pytest.mark.asyncio
async def test_execute_multiple_and_metrics():
    swarm = SwarmController()
    await swarm.start()
    await swarm.register_agent(_agent("solo", [], max_concurrent_tasks=2))

    tasks = [
        Task(id="one", name="one", description="first"),
        Task(id="two", name="two", description="second"),
    ]
    results = await swarm.execute_multiple(tasks)

    assert [result.task_id for result in results] == ["one", "two"]
    metrics = swarm.metrics()
    assert metrics["total_tasks"] == 2
    assert metrics["successful_tasks"] == 2
    assert metrics["total_agents"] == 1
    status = swarm.status()
    assert status["running"] is True
    assert status["active_executions"] == 0

    await swarm.stop()
    assert swarm.agents() == []
