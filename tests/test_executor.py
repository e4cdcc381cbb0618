import asyncio

import pytest

from conftest import CountingTool, GateTool, Harness, SlowTool
from taskswarm.config import ExecutorSettings
from taskswarm.events import TaskEventType
from taskswarm.tasks.base import StepStatus, TaskStatus


def _tool_step(step_id, tool, **extra):
    parameters = extra.pop("parameters", {})
    return {"id": step_id, "name": step_id, "config": {"type": "tool", "tool_name": tool, "parameters": parameters}, **extra}


@pytest.mark.asyncio
async def test_delay_task_completes_with_full_progress(harness):
    progress = []
    harness.scheduler.events.on(TaskEventType.PROGRESS, lambda payload: progress.append(payload.progress))

    task = await harness.run(
        {"name": "nap", "steps": [{"name": "wait", "config": {"type": "delay", "duration": 0.05}}]}
    )

    assert task.status is TaskStatus.COMPLETED
    assert task.progress == 100
    assert task.result == {"delayed": 0.05}
    assert harness.sleep.delays == [0.05]
    assert progress == sorted(progress)


@pytest.mark.asyncio
async def test_retry_uses_exponential_backoff(registry):
    flaky = CountingTool("flaky", failures=10)
    registry.register_instance(flaky)
    harness = Harness(tools=registry)

    task = await harness.run(
        {"name": "retry", "steps": [_tool_step("call", "flaky", error_strategy="retry", max_retries=3)]}
    )

    assert task.status is TaskStatus.FAILED
    assert len(flaky.calls) == 3
    assert harness.sleep.delays == pytest.approx([0.1, 0.2])
    assert task.steps[0].result.attempts == 3


@pytest.mark.asyncio
async def test_retry_delays_stop_at_the_cap(registry):
    flaky = CountingTool("flaky", failures=10)
    registry.register_instance(flaky)
    harness = Harness(tools=registry, executor_settings=ExecutorSettings(base_retry_delay=0.1, max_retry_delay=0.3))

    task = await harness.run(
        {"name": "retry", "steps": [_tool_step("call", "flaky", error_strategy="retry", max_retries=4)]}
    )

    assert task.status is TaskStatus.FAILED
    assert len(flaky.calls) == 4
    assert harness.sleep.delays == pytest.approx([0.1, 0.2, 0.3])


@pytest.mark.asyncio
async def test_retry_recovers_when_tool_succeeds(registry):
    flaky = CountingTool("flaky", failures=2, value="finally")
    registry.register_instance(flaky)
    harness = Harness(tools=registry)

    task = await harness.run(
        {"name": "retry", "steps": [_tool_step("call", "flaky", error_strategy="retry", max_retries=3)]}
    )

    assert task.status is TaskStatus.COMPLETED
    assert task.result == "finally"
    assert len(flaky.calls) == 3


def test_backoff_delay_is_capped():
    harness = Harness(executor_settings=ExecutorSettings(base_retry_delay=1, max_retry_delay=3))
    assert [harness.executor.backoff_delay(n) for n in range(1, 5)] == [1, 2, 3, 3]


@pytest.mark.asyncio
async def test_skip_strategy_continues_with_next_step(registry):
    registry.register_instance(CountingTool("broken", failures=1))
    harness = Harness(tools=registry)

    task = await harness.run(
        {
            "name": "skip",
            "steps": [
                _tool_step("first", "broken", error_strategy="skip"),
                _tool_step("second", "echo", parameters={"text": "still here"}),
            ],
        }
    )

    assert task.status is TaskStatus.COMPLETED
    assert task.steps[0].status is StepStatus.SKIPPED
    assert task.result == "still here"


@pytest.mark.asyncio
async def test_fail_strategy_fails_the_task(registry):
    registry.register_instance(CountingTool("broken", failures=1))
    harness = Harness(tools=registry)

    task = await harness.run(
        {
            "name": "fail",
            "steps": [_tool_step("first", "broken"), _tool_step("second", "echo", parameters={"text": "never"})],
        }
    )

    assert task.status is TaskStatus.FAILED
    assert task.error == "boom #1"
    assert task.steps[1].status is StepStatus.PENDING


@pytest.mark.asyncio
async def test_rollback_behaves_like_fail(registry):
    registry.register_instance(CountingTool("broken", failures=1))
    harness = Harness(tools=registry)

    task = await harness.run({"name": "rollback", "steps": [_tool_step("first", "broken", error_strategy="rollback")]})

    assert task.status is TaskStatus.FAILED


@pytest.mark.asyncio
async def test_unmet_dependency_skips_step(registry):
    registry.register_instance(CountingTool("broken", failures=1))
    harness = Harness(tools=registry)

    task = await harness.run(
        {
            "name": "deps",
            "steps": [
                _tool_step("a", "broken", error_strategy="skip"),
                _tool_step("b", "echo", parameters={"text": "b"}, depends_on=["a"]),
                _tool_step("c", "echo", parameters={"text": "c"}),
            ],
        }
    )

    step_b = task.get_step("b")
    assert task.status is TaskStatus.COMPLETED
    assert step_b.status is StepStatus.SKIPPED
    assert "unmet dependencies: a" in step_b.result.error
    assert task.result == "c"


@pytest.mark.asyncio
async def test_step_timeout_is_a_failure(registry):
    registry.register_instance(SlowTool("slow", seconds=1.0))
    harness = Harness(tools=registry)

    task = await harness.run({"name": "timeout", "steps": [_tool_step("slow", "slow", timeout=0.05)]})

    assert task.status is TaskStatus.FAILED
    assert task.error == "Step 'slow' timed out after 0.05s"


@pytest.mark.asyncio
async def test_parameters_are_interpolated_from_context(harness):
    task = await harness.run(
        {
            "name": "hello",
            "context": {"who": "world"},
            "steps": [_tool_step("greet", "echo", parameters={"text": "hello {{who}} {{missing}}"})],
        }
    )

    assert task.result == "hello world {{missing}}"


@pytest.mark.asyncio
async def test_llm_output_variable_feeds_later_steps(registry):
    prompts = []

    async def llm(prompt, system_prompt=None):
        prompts.append((prompt, system_prompt))
        return "blue"

    harness = Harness(tools=registry, llm=llm)
    task = await harness.run(
        {
            "name": "llm",
            "context": {"thing": "sky"},
            "steps": [
                {
                    "id": "ask",
                    "config": {
                        "type": "llm",
                        "prompt": "What colour is the {{thing}}?",
                        "system_prompt": "Be brief",
                        "output_variable": "colour",
                    },
                },
                _tool_step("say", "echo", parameters={"text": "It is {{colour}}"}),
            ],
        }
    )

    assert prompts == [("What colour is the sky?", "Be brief")]
    assert task.result == "It is blue"


@pytest.mark.asyncio
async def test_wait_step_uses_user_input_callback(registry):
    async def ask(prompt, input_type, choices):
        assert choices == ["yes", "no"]
        return "yes"

    harness = Harness(tools=registry, user_input=ask)
    task = await harness.run(
        {
            "name": "confirm",
            "steps": [
                {
                    "id": "confirm",
                    "config": {"type": "wait", "prompt": "Proceed?", "input_type": "choice", "choices": ["yes", "no"]},
                }
            ],
        }
    )

    assert task.result == "yes"


@pytest.mark.asyncio
async def test_condition_records_branch(harness):
    task = await harness.run(
        {
            "name": "branch",
            "context": {"count": 5},
            "steps": [
                _tool_step("probe", "echo", parameters={"text": "ready"}),
                {
                    "id": "check",
                    "config": {
                        "type": "condition",
                        "condition": "step_probe_data == ready",
                        "then_step": "go",
                        "else_step": "stop",
                    },
                },
                {"id": "size", "config": {"type": "condition", "condition": "count > 10", "else_step": "small"}},
            ],
        }
    )

    assert task.get_step("check").result.data == {"condition_result": True, "next_step": "go"}
    assert task.result == {"condition_result": False, "next_step": "small"}


@pytest.mark.asyncio
async def test_parallel_all_runs_members_once(registry):
    left = CountingTool("left", value="L")
    right = CountingTool("right", value="R")
    registry.register_instance(left)
    registry.register_instance(right)
    harness = Harness(tools=registry)

    task = await harness.run(
        {
            "name": "fanout",
            "steps": [
                {"id": "group", "config": {"type": "parallel", "steps": ["l", "r"]}},
                _tool_step("l", "left"),
                _tool_step("r", "right"),
            ],
        }
    )

    assert task.status is TaskStatus.COMPLETED
    assert task.get_step("group").result.data == ["L", "R"]
    assert len(left.calls) == 1
    assert len(right.calls) == 1


@pytest.mark.asyncio
async def test_parallel_any_skips_the_loser(registry):
    registry.register_instance(SlowTool("fast", seconds=0.01, value="fast"))
    registry.register_instance(SlowTool("slow", seconds=5, value="slow"))
    harness = Harness(tools=registry)

    task = await harness.run(
        {
            "name": "race",
            "steps": [
                _tool_step("f", "fast"),
                _tool_step("s", "slow"),
                {"id": "race", "config": {"type": "parallel", "steps": ["f", "s"], "wait_for": "any"}},
            ],
        }
    )

    assert task.status is TaskStatus.COMPLETED
    assert task.result == ["fast"]
    assert task.get_step("s").status is StepStatus.SKIPPED


@pytest.mark.asyncio
async def test_loop_sets_item_and_index(harness):
    task = await harness.run(
        {
            "name": "loop",
            "context": {"letters": ["a", "b", "c"]},
            "steps": [
                {"id": "each", "config": {"type": "loop", "items_variable": "letters", "step_id": "say"}},
                _tool_step("say", "echo", parameters={"text": "{{item}}{{__loop_index}}"}),
            ],
        }
    )

    assert task.status is TaskStatus.COMPLETED
    assert task.get_step("each").result.data == ["a0", "b1", "c2"]


@pytest.mark.asyncio
async def test_loop_exposes_camel_case_index(harness):
    task = await harness.run(
        {
            "name": "loop",
            "context": {"letters": ["x", "y"]},
            "steps": [
                {"id": "each", "config": {"type": "loop", "items_variable": "letters", "step_id": "say"}},
                _tool_step("say", "echo", parameters={"text": "{{__loopIndex}}:{{item}}"}),
            ],
        }
    )

    assert task.get_step("each").result.data == ["0:x", "1:y"]


@pytest.mark.asyncio
async def test_loop_with_fail_strategy_stops_at_first_failure(registry):
    flaky = CountingTool("flaky", failures=1)
    registry.register_instance(flaky)
    harness = Harness(tools=registry)

    task = await harness.run(
        {
            "name": "loop",
            "context": {"items": [1, 2, 3]},
            "steps": [
                {"id": "each", "config": {"type": "loop", "items_variable": "items", "step_id": "call"}},
                _tool_step("call", "flaky"),
            ],
        }
    )

    assert task.status is TaskStatus.FAILED
    assert len(flaky.calls) == 1
    assert "boom #1" in task.error


@pytest.mark.asyncio
async def test_loop_without_fail_strategy_runs_every_item(registry):
    flaky = CountingTool("flaky", failures=1)
    registry.register_instance(flaky)
    harness = Harness(tools=registry)

    task = await harness.run(
        {
            "name": "loop",
            "context": {"items": [1, 2, 3]},
            "steps": [
                {
                    "id": "each",
                    "error_strategy": "skip",
                    "config": {"type": "loop", "items_variable": "items", "step_id": "call"},
                },
                _tool_step("call", "flaky"),
            ],
        }
    )

    loop = task.get_step("each")
    assert len(flaky.calls) == 3
    assert loop.status is StepStatus.SKIPPED
    assert loop.result.data == [None, "ok", "ok"]
    assert loop.result.error == "boom #1"
    assert task.status is TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_loop_truncates_items_at_max_iterations(harness):
    task = await harness.run(
        {
            "name": "loop",
            "context": {"letters": ["a", "b", "c", "d"]},
            "steps": [
                {
                    "id": "each",
                    "config": {"type": "loop", "items_variable": "letters", "step_id": "say", "max_iterations": 2},
                },
                _tool_step("say", "echo", parameters={"text": "{{item}}"}),
            ],
        }
    )

    assert task.status is TaskStatus.COMPLETED
    assert task.get_step("each").result.data == ["a", "b"]


@pytest.mark.asyncio
async def test_cancel_stops_running_task(registry):
    gate = GateTool("gate")
    after = CountingTool("after")
    registry.register_instance(gate)
    registry.register_instance(after)
    harness = Harness(tools=registry)
    events = []
    harness.scheduler.events.on(TaskEventType.CANCELLED, lambda payload: events.append("cancelled"))
    harness.scheduler.events.on(TaskEventType.COMPLETED, lambda payload: events.append("completed"))

    task = harness.submit({"name": "cancel", "steps": [_tool_step("wait", "gate"), _tool_step("next", "after")]})
    await asyncio.wait_for(gate.started.wait(), 1)
    harness.scheduler.cancel(task.id)
    gate.gate.set()
    await asyncio.gather(*harness.workers)

    assert task.status is TaskStatus.CANCELLED
    assert after.calls == []
    assert events == ["cancelled", "completed"]


@pytest.mark.asyncio
async def test_pause_holds_execution_between_steps(registry):
    gate = GateTool("gate")
    after = CountingTool("after", value="done")
    registry.register_instance(gate)
    registry.register_instance(after)
    harness = Harness(tools=registry)

    task = harness.submit({"name": "pause", "steps": [_tool_step("wait", "gate"), _tool_step("next", "after")]})
    await asyncio.wait_for(gate.started.wait(), 1)
    harness.scheduler.pause(task.id)
    gate.gate.set()
    for _ in range(10):
        await asyncio.sleep(0)

    assert task.status is TaskStatus.PAUSED
    assert after.calls == []

    harness.scheduler.resume(task.id)
    await harness.scheduler.wait_for(task.id, 1)
    assert task.status is TaskStatus.COMPLETED
    assert task.result == "done"
