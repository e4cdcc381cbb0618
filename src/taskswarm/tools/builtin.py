"""Small built-in tools, handy for demos and step pipelines."""

from __future__ import annotations

import json
from typing import Any, Mapping

import yaml

from .base import Tool, ToolContext, ToolResult
from .registry import ToolRegistry


def _load_structured(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError:
            return text


class EchoTool(Tool):
    """Returns its ``text`` argument unchanged."""

    def run(self, *, arguments: Mapping[str, Any], context: ToolContext) -> ToolResult:
        return ToolResult.ok(arguments.get("text", ""))


class ExtractTool(Tool):
    """Reads a dotted ``path`` out of a JSON or YAML ``document``."""

    def run(self, *, arguments: Mapping[str, Any], context: ToolContext) -> ToolResult:
        document = arguments.get("document")
        if isinstance(document, str):
            document = _load_structured(document)
        path = str(arguments.get("path", "")).strip()
        value: Any = document
        for part in filter(None, path.split(".")):
            if isinstance(value, Mapping) and part in value:
                value = value[part]
            elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
                value = value[int(part)]
            else:
                return ToolResult.fail(f"Path '{path}' not found")
        return ToolResult.ok(value)


class SumTool(Tool):
    """Adds the numbers in ``values`` (a list or comma separated string)."""

    def run(self, *, arguments: Mapping[str, Any], context: ToolContext) -> ToolResult:
        raw = arguments.get("values", [])
        if isinstance(raw, str):
            raw = [item for item in raw.split(",") if item.strip()]
        try:
            total = sum(float(item) for item in raw)
        except (TypeError, ValueError) as exc:
            return ToolResult.fail(f"Cannot sum {raw!r}: {exc}")
        return ToolResult.ok(int(total) if total.is_integer() else total)


def register_builtin_tools(registry: ToolRegistry) -> None:
    registry.register_factory("echo", lambda: EchoTool("echo"), overwrite=True)
    registry.register_factory("extract", lambda: ExtractTool("extract"), overwrite=True)
    registry.register_factory("sum", lambda: SumTool("sum"), overwrite=True)
