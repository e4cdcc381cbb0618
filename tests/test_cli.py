import textwrap
from pathlib import Path

import pytest
from typer.testing import CliRunner

from taskswarm import cli
from taskswarm.cli import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    # keep table cells on one line
    monkeypatch.setattr(cli.console, "width", 200)

CONFIG = """
name: cli-demo
settings:
  executor: {base_retry_delay: 0.01, max_retry_delay: 0.01}
tasks:
  - name: Greeting
    steps:
      - id: hello
        config: {type: tool, tool_name: echo, parameters: {text: hello from the cli}}
  - name: Nap
    priority: low
    steps:
      - config: {type: delay, duration: 0.01}
"""


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "project.yaml"
    path.write_text(textwrap.dedent(text))
    return path


def test_inspect_lists_tasks_and_targets(tmp_path: Path):
    result = runner.invoke(app, ["inspect", str(_write(tmp_path, CONFIG))])

    assert result.exit_code == 0
    assert "cli-demo" in result.output
    assert "Greeting (normal) -> executor" in result.output
    assert "hello: tool" in result.output
    assert "- echo" in result.output


def test_run_executes_every_task(tmp_path: Path):
    result = runner.invoke(app, ["run", str(_write(tmp_path, CONFIG)), "--timeout", "10"])

    assert result.exit_code == 0, result.output
    assert "hello from the cli" in result.output


def test_run_exits_non_zero_when_a_task_fails(tmp_path: Path):
    config = """
    tasks:
      - name: Broken
        steps:
          - config: {type: tool, tool_name: nowhere}
    """

    result = runner.invoke(app, ["run", str(_write(tmp_path, config)), "--timeout", "10"])

    assert result.exit_code == 1
    assert "Unknown tool 'nowhere'" in result.output


def test_invalid_config_exits_with_usage_error(tmp_path: Path):
    result = runner.invoke(app, ["inspect", str(_write(tmp_path, "name: no tasks\n"))])

    assert result.exit_code == 2
    assert "Invalid configuration" in result.output
