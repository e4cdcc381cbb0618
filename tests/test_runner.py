import textwrap

import pytest

from taskswarm.config import ConfigError, ProjectConfig
from taskswarm.tasks.base import TaskOptions, TaskStatus
from taskswarm.tasks.runner import TaskRunner
from taskswarm.tools.builtin import register_builtin_tools


def _config(tools: str = "[sum]") -> ProjectConfig:
    return ProjectConfig.from_yaml(
        textwrap.dedent(
            f"""
            name: runner-test
            settings:
              scheduler:
                max_concurrent: 2
            defaults:
              llm_provider: taskswarm.llm.provider:StaticResponseProvider
              llm_params:
                repeat_last: true
                responses:
                  - '{{"action": "final", "answer": "Quarter looks good."}}'
            agents:
              analyst:
                capabilities: [analysis]
                tools: {tools}
            tasks:
              - name: Quarterly analysis
                complexity: high
                capabilities: [analysis]
            """
        )
    )


@pytest.mark.asyncio
async def test_from_config_routes_stepless_task_to_planning_agent():
    config = _config()
    runner = TaskRunner.from_config(config)

    async with runner:
        [task] = await runner.run(config.tasks, timeout=5)

    assert task.status is TaskStatus.COMPLETED
    assert task.result == "Quarter looks good."
    swarm_result = runner.swarm_results[task.id]
    assert swarm_result.success
    assert swarm_result.agent_count == 1


@pytest.mark.asyncio
async def test_step_tasks_run_on_the_executor():
    runner = TaskRunner()
    options = TaskOptions.from_mapping(
        {
            "name": "echo",
            "steps": [{"id": "say", "config": {"type": "tool", "tool_name": "echo", "parameters": {"text": "hi"}}}],
        }
    )
    register_builtin_tools(runner.tools)

    async with runner:
        [task] = await runner.run([options], timeout=5)

    assert task.status is TaskStatus.COMPLETED
    assert task.result == "hi"
    assert runner.swarm_results == {}


@pytest.mark.asyncio
async def test_unroutable_swarm_task_fails():
    runner = TaskRunner()

    async with runner:
        [task] = await runner.run([TaskOptions(name="orphan", required_capabilities=["painting"])], timeout=5)

    assert task.status is TaskStatus.FAILED
    assert "No agent can handle" in task.error


def test_uses_swarm_for_stepless_or_complex_tasks():
    runner = TaskRunner()
    step = {"config": {"type": "delay", "duration": 0}}
    simple = runner.scheduler.create(TaskOptions.from_mapping({"name": "simple", "steps": [step]}))
    complex_ = runner.scheduler.create(
        TaskOptions.from_mapping({"name": "complex", "complexity": "critical", "steps": [step]})
    )
    empty = runner.scheduler.create(TaskOptions.from_mapping({"name": "empty"}))

    assert runner.uses_swarm(simple) is False
    assert runner.uses_swarm(complex_) is True
    assert runner.uses_swarm(empty) is True


def test_agent_with_unknown_tool_is_a_config_error():
    with pytest.raises(ConfigError) as excinfo:
        TaskRunner.from_config(_config(tools="[telescope]"))

    assert "telescope" in str(excinfo.value)


def test_agents_without_provider_are_rejected():
    config = _config()
    config.defaults.llm_provider = None

    with pytest.raises(ConfigError):
        TaskRunner.from_config(config)
