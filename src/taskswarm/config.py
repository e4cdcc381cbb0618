"""Configuration helpers for taskswarm projects."""

from __future__ import annotations

import importlib
import pathlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, MutableMapping, Optional

import yaml

from .tasks.base import Complexity, TaskOptions


class ConfigError(RuntimeError):
    """Raised when configuration files are invalid."""


@dataclass
class SchedulerSettings:
    """Admission limits for the priority scheduler."""

    max_concurrent: int = 3
    max_queue_size: int = 100
    history_size: int = 20

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "SchedulerSettings":
        if not data:
            return cls()
        settings = cls(
            max_concurrent=int(data.get("max_concurrent", 3)),
            max_queue_size=int(data.get("max_queue_size", 100)),
            history_size=int(data.get("history_size", 20)),
        )
        if settings.max_concurrent < 1:
            raise ConfigError("scheduler.max_concurrent must be at least 1")
        if settings.max_queue_size < 1:
            raise ConfigError("scheduler.max_queue_size must be at least 1")
        return settings


@dataclass
class ExecutorSettings:
    """Step timeout and retry backoff, in seconds."""

    default_step_timeout: float = 60.0
    base_retry_delay: float = 1.0
    max_retry_delay: float = 30.0

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "ExecutorSettings":
        if not data:
            return cls()
        settings = cls(
            default_step_timeout=float(data.get("default_step_timeout", 60.0)),
            base_retry_delay=float(data.get("base_retry_delay", 1.0)),
            max_retry_delay=float(data.get("max_retry_delay", 30.0)),
        )
        if settings.max_retry_delay < settings.base_retry_delay:
            raise ConfigError("executor.max_retry_delay must be >= base_retry_delay")
        return settings


@dataclass
class SwarmSettings:
    """Agent pool behaviour."""

    consensus_threshold: float = 0.7
    task_timeout: float = 300.0
    enable_load_balancing: bool = True
    enable_communication: bool = True
    complexity_threshold: Complexity = Complexity.HIGH

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "SwarmSettings":
        if not data:
            return cls()
        threshold = float(data.get("consensus_threshold", 0.7))
        if not 0.0 <= threshold <= 1.0:
            raise ConfigError("swarm.consensus_threshold must be between 0 and 1")
        try:
            complexity = Complexity(data.get("complexity_threshold", Complexity.HIGH.value))
        except ValueError as exc:
            raise ConfigError(f"Invalid swarm.complexity_threshold: {exc}") from exc
        return cls(
            consensus_threshold=threshold,
            task_timeout=float(data.get("task_timeout", 300.0)),
            enable_load_balancing=bool(data.get("enable_load_balancing", True)),
            enable_communication=bool(data.get("enable_communication", True)),
            complexity_threshold=complexity,
        )


@dataclass
class EngineSettings:
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    swarm: SwarmSettings = field(default_factory=SwarmSettings)

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "EngineSettings":
        if not data:
            return cls()
        return cls(
            scheduler=SchedulerSettings.from_mapping(data.get("scheduler")),
            executor=ExecutorSettings.from_mapping(data.get("executor")),
            swarm=SwarmSettings.from_mapping(data.get("swarm")),
        )


@dataclass
class PlanningSpec:
    """Runtime planning parameters for a planning agent."""

    max_iterations: int = 4

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "PlanningSpec":
        if not data:
            return cls()
        return cls(max_iterations=int(data.get("max_iterations", 4)))


@dataclass
class AgentSpec:
    """Definition of a swarm agent from config."""

    name: str
    type: str
    capabilities: List[str]
    agent_type: str = "general"
    description: Optional[str] = None
    priority: int = 5
    max_concurrent_tasks: int = 1
    tools: List[str] = field(default_factory=list)
    planning: PlanningSpec = field(default_factory=PlanningSpec)
    llm_provider: Optional[str] = None
    llm_params: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, name: str, data: Mapping[str, Any]) -> "AgentSpec":
        if "capabilities" not in data:
            raise ConfigError(f"Agent '{name}' requires a capabilities list")
        max_concurrent = int(data.get("max_concurrent_tasks", 1))
        if max_concurrent < 1:
            raise ConfigError(f"Agent '{name}' max_concurrent_tasks must be at least 1")
        return cls(
            name=name,
            type=str(data.get("type", AgentSpec.type_default())),
            capabilities=[str(item) for item in data.get("capabilities") or []],
            agent_type=str(data.get("agent_type", "general")),
            description=data.get("description"),
            priority=int(data.get("priority", 5)),
            max_concurrent_tasks=max_concurrent,
            tools=list(data.get("tools", [])),
            planning=PlanningSpec.from_mapping(data.get("planning")),
            llm_provider=data.get("llm_provider"),
            llm_params=dict(data.get("llm_params", {})),
        )

    @staticmethod
    def type_default() -> str:
        return "taskswarm.agents.planning:PlanningAgent"


@dataclass
class ToolSpec:
    """Configuration for a tool instance."""

    name: str
    type: str
    args: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, name: str, data: Mapping[str, Any]) -> "ToolSpec":
        if "type" not in data:
            raise ConfigError(f"Tool '{name}' requires a type path")
        return cls(name=name, type=str(data["type"]), args=dict(data.get("args", {})))


@dataclass
class DefaultsSpec:
    """Optional defaults applied to agents and the executor's LLM steps."""

    llm_provider: Optional[str] = None
    llm_params: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "DefaultsSpec":
        if not data:
            return cls()
        return cls(
            llm_provider=data.get("llm_provider"),
            llm_params=dict(data.get("llm_params", {})),
        )


@dataclass
class ProjectConfig:
    """Representation of the YAML configuration."""

    name: str
    description: Optional[str]
    settings: EngineSettings
    defaults: DefaultsSpec
    agents: Dict[str, AgentSpec]
    tasks: List[TaskOptions]
    tool_specs: Dict[str, ToolSpec]
    file_path: Optional[pathlib.Path] = None

    @classmethod
    def from_file(cls, path: str | pathlib.Path) -> "ProjectConfig":
        p = pathlib.Path(path)
        data = yaml.safe_load(p.read_text())
        if not isinstance(data, MutableMapping):
            raise ConfigError("Configuration root must be a mapping")
        return cls.from_mapping(data, p)

    @classmethod
    def from_yaml(cls, content: str) -> "ProjectConfig":
        data = yaml.safe_load(content)
        if not isinstance(data, MutableMapping):
            raise ConfigError("Configuration root must be a mapping")
        return cls.from_mapping(data)

    @classmethod
    def from_mapping(cls, data: MutableMapping, path: Optional[pathlib.Path] = None) -> "ProjectConfig":
        agents = {
            name: AgentSpec.from_mapping(name, info)
            for name, info in (data.get("agents") or {}).items()
        }
        tasks: List[TaskOptions] = []
        for index, item in enumerate(data.get("tasks") or []):
            try:
                tasks.append(TaskOptions.from_mapping(item))
            except (TypeError, ValueError) as exc:
                raise ConfigError(f"Task #{index + 1} is invalid: {exc}") from exc
        if not tasks:
            raise ConfigError("At least one task must be defined")
        tool_specs = {
            name: ToolSpec.from_mapping(name, info)
            for name, info in (data.get("tools") or {}).items()
        }
        return cls(
            name=data.get("name", path.stem if path else "Untitled"),
            description=data.get("description"),
            settings=EngineSettings.from_mapping(data.get("settings")),
            defaults=DefaultsSpec.from_mapping(data.get("defaults")),
            agents=agents,
            tasks=tasks,
            tool_specs=tool_specs,
            file_path=path,
        )

    def get_agent(self, name: str) -> AgentSpec:
        try:
            return self.agents[name]
        except KeyError as exc:
            raise ConfigError(f"Unknown agent '{name}'") from exc


def import_string(path: str) -> Any:
    """Return attribute from module specified by path "module:qualname"."""

    if ":" not in path:
        raise ConfigError(f"Import path '{path}' must use module:qualname format")
    module_path, attr = path.split(":", 1)
    module = importlib.import_module(module_path)
    try:
        return getattr(module, attr)
    except AttributeError as exc:
        raise ConfigError(f"Module '{module_path}' has no attribute '{attr}'") from exc


def instantiate_from_path(path: str, *args: Any, **kwargs: Any) -> Any:
    """Import and instantiate a class given its dotted path."""

    cls = import_string(path)
    return cls(*args, **kwargs)
