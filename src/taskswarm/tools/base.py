"""Base classes for tools."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping


@dataclass
class ToolContext:
    """Metadata passed to tool invocations."""

    caller: str
    task_id: str | None = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class ToolResult:
    """Result returned by a tool: the tool-execution contract's ``{success, data?, error?}``."""

    success: bool
    data: Any = None
    error: str | None = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def ok(cls, data: Any = None, **metadata: str) -> "ToolResult":
        return cls(success=True, data=data, metadata=dict(metadata))

    @classmethod
    def fail(cls, error: str, **metadata: str) -> "ToolResult":
        return cls(success=False, error=error, metadata=dict(metadata))


class Tool:
    """Base tool class. ``run`` may be a plain or an ``async`` method."""

    name: str
    description: str

    def __init__(self, name: str, description: str | None = None, **kwargs: object) -> None:
        self.name = name
        self.description = description or self.__class__.__doc__ or ""
        self.config = kwargs

    def run(self, *, arguments: Mapping[str, Any], context: ToolContext) -> Any:  # pragma: no cover - abstract
        raise NotImplementedError
