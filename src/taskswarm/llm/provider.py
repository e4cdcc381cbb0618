"""Provider abstractions used by LLM steps, planning agents and the decomposer."""

from __future__ import annotations

import asyncio
import json
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol


@dataclass
class PromptContext:
    """Metadata about the prompt being generated."""

    caller: str
    task_id: Optional[str] = None
    iteration: int = 0
    system_prompt: Optional[str] = None


class LLMProvider(Protocol):
    """Interface for language model providers."""

    async def generate(self, prompt: str, context: PromptContext) -> str:  # pragma: no cover - interface
        """Return a completion for the given prompt."""


class StaticResponseProvider:
    """Provider that replays a finite list of responses (useful for tests)."""

    def __init__(self, responses: Iterable[str], *, repeat_last: bool = False) -> None:
        self._responses = list(responses)
        self._repeat_last = repeat_last
        self._index = 0
        self.prompts: List[str] = []

    async def generate(self, prompt: str, context: PromptContext) -> str:
        self.prompts.append(prompt)
        if self._index < len(self._responses):
            response = self._responses[self._index]
            self._index += 1
            return response
        if self._repeat_last and self._responses:
            return self._responses[-1]
        raise RuntimeError("StaticResponseProvider exhausted")


class OllamaProvider:
    """Calls a locally hosted Ollama model via its HTTP API."""

    def __init__(
        self,
        model: str,
        *,
        host: str = "http://localhost:11434",
        options: Dict[str, Any] | None = None,
        system_prompt: str | None = None,
        timeout: float = 120.0,
    ) -> None:
        self.model = model
        self.host = host.rstrip("/")
        self.options = options or {}
        self.system_prompt = system_prompt
        self.timeout = timeout

    async def generate(self, prompt: str, context: PromptContext) -> str:
        return await asyncio.to_thread(self._generate_blocking, prompt, context)

    def _generate_blocking(self, prompt: str, context: PromptContext) -> str:
        payload: Dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": self.options,
        }
        system = context.system_prompt or self.system_prompt
        if system:
            payload["system"] = system
        request = urllib.request.Request(
            url=f"{self.host}/api/generate",
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                body = response.read().decode("utf-8")
        except urllib.error.URLError as exc:
            raise RuntimeError(f"OllamaProvider failed to reach {self.host}: {exc}") from exc
        data = json.loads(body)
        if "error" in data:
            raise RuntimeError(f"OllamaProvider error: {data['error']}")
        result = data.get("response")
        if not isinstance(result, str):
            raise RuntimeError(f"OllamaProvider returned unexpected payload: {data}")
        return result.strip()


def as_llm_callback(
    provider: LLMProvider, caller: str = "executor"
) -> Callable[[str, Optional[str]], Awaitable[str]]:
    """Adapt a provider to the ``(prompt, system_prompt) -> str`` step callback."""

    async def callback(prompt: str, system_prompt: Optional[str] = None) -> str:
        return await provider.generate(prompt, PromptContext(caller=caller, system_prompt=system_prompt))

    return callback


def as_reasoner(provider: LLMProvider, caller: str = "decomposer") -> Callable[[str], Awaitable[str]]:
    """Adapt a provider to the decomposer's ``(prompt) -> str`` collaborator."""

    async def reason(prompt: str) -> str:
        return await provider.generate(prompt, PromptContext(caller=caller))

    return reason
