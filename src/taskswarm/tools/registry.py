"""Registry that keeps track of available tools and executes them by name."""

from __future__ import annotations

import inspect
import logging
from importlib.metadata import entry_points
from typing import Any, Callable, Dict, Mapping

from ..config import ToolSpec, instantiate_from_path
from .base import Tool, ToolContext, ToolResult

logger = logging.getLogger(__name__)

ToolFactory = Callable[[], Tool]

ENTRY_POINT_GROUP = "taskswarm.tools"


class ToolRegistry:
    """Stores tool factories and lazily instantiates them when requested.

    ``execute`` is the tool-execution collaborator used by the step executor and
    the planning agents: it never raises, every problem comes back as a failed
    :class:`ToolResult`.
    """

    def __init__(self) -> None:
        self._factories: Dict[str, ToolFactory] = {}
        self._instances: Dict[str, Tool] = {}

    def register_instance(self, tool: Tool, *, overwrite: bool = False) -> None:
        if tool.name in self._instances and not overwrite:
            raise ValueError(f"Tool {tool.name} already registered")
        self._instances[tool.name] = tool

    def register_factory(self, name: str, factory: ToolFactory, *, overwrite: bool = False) -> None:
        if name in self._factories and not overwrite:
            raise ValueError(f"Tool factory {name} already registered")
        self._factories[name] = factory

    def register_from_spec(self, spec: ToolSpec) -> None:
        def factory() -> Tool:
            instance = instantiate_from_path(spec.type, name=spec.name, **spec.args)
            if not isinstance(instance, Tool):
                raise TypeError(f"Tool '{spec.name}' must inherit Tool")
            return instance

        self.register_factory(spec.name, factory, overwrite=True)

    def configure_from_specs(self, specs: Mapping[str, ToolSpec]) -> None:
        for spec in specs.values():
            self.register_from_spec(spec)

    def discover_entrypoints(self, group: str = ENTRY_POINT_GROUP) -> int:
        """Register tool classes published by installed packages.

        Entry points point at a :class:`Tool` subclass; the entry point name is
        used as the tool name. Returns how many were registered.
        """

        registered = 0
        for ep in entry_points(group=group):
            if ep.name in self:
                logger.debug("Skipping entry point %s: name already registered", ep.name)
                continue
            try:
                target = ep.load()
            except Exception as exc:
                logger.warning("Could not load tool entry point %s: %s", ep.name, exc)
                continue
            if not (isinstance(target, type) and issubclass(target, Tool)):
                logger.warning("Entry point %s does not reference a Tool subclass", ep.name)
                continue
            self.register_factory(ep.name, lambda cls=target, name=ep.name: cls(name=name))
            registered += 1
        return registered

    def get(self, name: str) -> Tool:
        if name in self._instances:
            return self._instances[name]
        if name not in self._factories:
            raise KeyError(f"Tool {name} not registered")
        instance = self._factories[name]()
        self._instances[name] = instance
        return instance

    def __contains__(self, name: str) -> bool:
        return name in self._instances or name in self._factories

    def names(self) -> list[str]:
        return sorted(set(self._instances) | set(self._factories))

    def available(self) -> Dict[str, Tool]:
        for name in list(self._factories.keys()):
            if name not in self._instances:
                self._instances[name] = self._factories[name]()
        return dict(self._instances)

    async def execute(
        self,
        name: str,
        arguments: Mapping[str, Any],
        context: ToolContext | None = None,
    ) -> ToolResult:
        try:
            tool = self.get(name)
        except KeyError:
            return ToolResult.fail(f"Unknown tool '{name}'")
        context = context or ToolContext(caller="executor")
        try:
            outcome = tool.run(arguments=dict(arguments), context=context)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as exc:
            logger.warning("Tool %s raised: %s", name, exc)
            return ToolResult.fail(str(exc) or exc.__class__.__name__)
        if isinstance(outcome, ToolResult):
            return outcome
        return ToolResult.ok(outcome)
