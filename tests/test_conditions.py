import pytest

from taskswarm.errors import ConditionSyntaxError
from taskswarm.tasks import conditions
from taskswarm.tasks.base import StepResult, StepStatus, TaskContext
from taskswarm.tasks.executor import condition_scope


@pytest.mark.parametrize(
    "expression, expected",
    [
        ("score > 3", True),
        ("score <= 3", False),
        ("score == 7", True),
        ("score == '7'", True),
        ("name == alice", True),
        ("name != 'bob'", True),
        ("flag", True),
        ("missing_flag == missing_flag", True),
        ("empty", False),
        ("flag == true", True),
        ("nothing == null", True),
        ("name > 3", False),
        ("-1 < 0", True),
    ],
)
def test_evaluate(expression, expected):
    scope = {"score": 7, "name": "alice", "flag": True, "empty": "", "nothing": None}
    assert conditions.evaluate(expression, scope) is expected


@pytest.mark.parametrize("expression", ["a == ", "== b", "a b c", "a && b", ""])
def test_malformed_conditions_raise(expression):
    with pytest.raises(ConditionSyntaxError):
        conditions.evaluate(expression, {})


def test_scope_exposes_step_results():
    context = TaskContext(
        variables={"limit": 2},
        step_results={
            "fetch-data": StepResult(step_id="fetch-data", status=StepStatus.COMPLETED, data=5),
            "other": StepResult(step_id="other", status=StepStatus.FAILED, error="x"),
        },
    )
    scope = condition_scope(context)

    assert conditions.evaluate("step_fetch_data_data > limit", scope) is True
    assert conditions.evaluate("step_other_success", scope) is False
