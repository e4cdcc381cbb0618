"""Command line interface for taskswarm."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional

import typer
import uvicorn
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskID, TextColumn
from rich.table import Table

from .config import ConfigError, ProjectConfig
from .events import TaskEventType
from .tasks.base import Task, TaskEvent, TaskStatus
from .tasks.runner import TaskRunner
from .web.server import create_app

app = typer.Typer(help="Priority task engine with an agent swarm")
console = Console()

_STATUS_STYLES = {
    TaskStatus.QUEUED: "[yellow]queued",
    TaskStatus.RUNNING: "[cyan]running",
    TaskStatus.PAUSED: "[magenta]paused",
    TaskStatus.COMPLETED: "[green]completed",
    TaskStatus.FAILED: "[red]failed",
    TaskStatus.CANCELLED: "[grey50]cancelled",
}


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _load(config_path: Path) -> ProjectConfig:
    try:
        return ProjectConfig.from_file(config_path)
    except (ConfigError, OSError, yaml.YAMLError) as exc:
        console.print(f"[red]Invalid configuration:[/] {exc}")
        raise typer.Exit(code=2) from exc


def _build_runner(config: ProjectConfig) -> TaskRunner:
    try:
        return TaskRunner.from_config(config)
    except ConfigError as exc:
        console.print(f"[red]Invalid configuration:[/] {exc}")
        raise typer.Exit(code=2) from exc


def _render_plan(config: ProjectConfig) -> None:
    plan = Table(title="Execution Plan", show_lines=True)
    plan.add_column("Task")
    plan.add_column("Priority")
    plan.add_column("Complexity")
    plan.add_column("Steps")
    for spec in config.tasks:
        steps = ", ".join(f"{step.name} ({step.config.kind})" for step in spec.steps) or "swarm"
        plan.add_row(spec.name, spec.priority.value, spec.complexity.value, steps)
    console.print(plan)


def _format_result(task: Task) -> str:
    if task.error:
        return task.error
    if task.result is None:
        return ""
    if isinstance(task.result, str):
        return task.result
    return json.dumps(task.result, indent=2, default=str)


async def _execute(config: ProjectConfig, timeout: Optional[float]) -> List[Task]:
    runner = _build_runner(config)
    progress = Progress(
        SpinnerColumn(style="cyan"),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        TextColumn("{task.fields[status]}"),
        console=console,
        transient=False,
    )
    rows: Dict[str, TaskID] = {}

    def on_event(payload: object) -> None:
        if not isinstance(payload, TaskEvent):
            return
        row = rows.get(payload.task_id)
        if row is None:
            return
        progress.update(
            row,
            completed=payload.progress,
            status=_STATUS_STYLES.get(payload.task.status, payload.task.status.value),
        )

    for event_type in TaskEventType:
        runner.events.on(event_type, on_event)

    async with runner:
        with progress:
            tasks = []
            for options in config.tasks:
                # add the row before submitting so the first events land on it
                row = progress.add_task(options.name, total=100, status="[yellow]pending")
                task = runner.scheduler.create(options)
                rows[task.id] = row
                runner.scheduler.enqueue(task)
                tasks.append(task)
            await asyncio.wait_for(
                asyncio.gather(*(runner.scheduler.wait_for(task.id) for task in tasks)),
                timeout,
            )
    return tasks


@app.command()
def run(
    config_path: Path = typer.Argument(..., help="Path to YAML configuration"),
    timeout: Optional[float] = typer.Option(None, help="Give up after this many seconds"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Python logging level"),
) -> None:
    """Submit every task in the config file and wait for them to finish."""

    _configure_logging(log_level)
    config = _load(config_path)
    console.print(f"[bold green]Running project[/] {config.name}")
    _render_plan(config)
    try:
        tasks = asyncio.run(_execute(config, timeout))
    except asyncio.TimeoutError:
        console.print(f"[red]Timed out after {timeout:g}s[/]")
        raise typer.Exit(code=1)

    table = Table(title="Task outputs", show_lines=True)
    table.add_column("Task")
    table.add_column("Status")
    table.add_column("Duration")
    table.add_column("Output")
    for task in tasks:
        duration = f"{task.duration:.2f}s" if task.duration is not None else "-"
        table.add_row(task.name, _STATUS_STYLES.get(task.status, task.status.value), duration, _format_result(task))
    console.print(table)
    if any(task.status is TaskStatus.FAILED for task in tasks):
        raise typer.Exit(code=1)


@app.command()
def inspect(config_path: Path = typer.Argument(..., help="Config to inspect")) -> None:
    """Print the agents, tools, tasks and steps defined by a configuration file."""

    config = _load(config_path)
    runner = _build_runner(config)
    console.print(f"[bold]Project:[/] {config.name}\n{config.description or ''}")
    settings = config.settings
    console.print(
        f"[bold]Scheduler[/] max_concurrent={settings.scheduler.max_concurrent} "
        f"max_queue_size={settings.scheduler.max_queue_size}"
    )
    console.print("[bold]Agents[/]")
    for spec in config.agents.values():
        console.print(
            f"- {spec.name} ({spec.agent_type}, priority {spec.priority}): "
            f"capabilities={spec.capabilities} tools={spec.tools}"
        )
    console.print("[bold]Tools[/]")
    for name in runner.tools.names():
        console.print(f"- {name}")
    console.print("[bold]Tasks[/]")
    for spec in config.tasks:
        target = "swarm" if not spec.steps or spec.complexity.rank >= settings.swarm.complexity_threshold.rank else "executor"
        console.print(f"- {spec.name} ({spec.priority.value}) -> {target}")
        for step in spec.steps:
            depends = f" after {', '.join(step.depends_on)}" if step.depends_on else ""
            console.print(f"    * {step.id or step.name}: {step.config.kind}{depends} on error {step.error_strategy.value}")


@app.command()
def serve(
    config_path: Optional[Path] = typer.Argument(None, help="Optional config providing agents and tools"),
    host: str = typer.Option("127.0.0.1", help="Bind address"),
    port: int = typer.Option(8000, help="Bind port"),
    log_level: str = typer.Option("INFO", "--log-level", help="Python logging level"),
) -> None:
    """Serve the HTTP API and the event websocket."""

    _configure_logging(log_level)
    runner = _build_runner(_load(config_path)) if config_path else TaskRunner()
    uvicorn.run(create_app(runner), host=host, port=port, log_level=log_level.lower())


if __name__ == "__main__":  # pragma: no cover
    app()
