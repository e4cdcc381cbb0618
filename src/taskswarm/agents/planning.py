"""LLM-driven agent that plans tool calls in a ReAct-style loop."""

from __future__ import annotations

import json
import logging
import textwrap
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..config import AgentSpec, PlanningSpec
from ..llm.provider import LLMProvider, PromptContext
from ..tasks.base import Task
from ..tools.base import ToolContext
from ..tools.registry import ToolRegistry
from .base import AgentConfig, BaseAgent, TaskResult
from .communicator import AgentCommunicator

logger = logging.getLogger(__name__)

FINDING_TOPIC = "finding"


@dataclass
class AgentAction:
    """Parsed output from the model."""

    thought: str
    action: str
    action_input: Any
    answer: str | None = None

    @property
    def is_final(self) -> bool:
        return self.action == "final"


class PlanningAgent(BaseAgent):
    """Agent that iteratively plans and executes tool calls."""

    def __init__(
        self,
        config: AgentConfig,
        llm_provider: LLMProvider,
        tools: ToolRegistry | None = None,
        allowed_tools: Optional[List[str]] = None,
        planning: PlanningSpec | None = None,
        communicator: AgentCommunicator | None = None,
        agent_id: Optional[str] = None,
    ) -> None:
        super().__init__(config, agent_id=agent_id)
        self.llm_provider = llm_provider
        self.tools = tools or ToolRegistry()
        self.allowed_tools = list(allowed_tools) if allowed_tools is not None else None
        self.planning = planning or PlanningSpec()
        self.communicator = communicator

    @classmethod
    def from_spec(
        cls,
        spec: AgentSpec,
        *,
        llm_provider: LLMProvider,
        tools: ToolRegistry | None = None,
        communicator: AgentCommunicator | None = None,
    ) -> "PlanningAgent":
        return cls(
            config=spec_to_config(spec),
            llm_provider=llm_provider,
            tools=tools,
            allowed_tools=spec.tools or None,
            planning=spec.planning,
            communicator=communicator,
        )

    def tool_names(self) -> List[str]:
        names = self.tools.names()
        if self.allowed_tools is None:
            return names
        return [name for name in names if name in self.allowed_tools]

    async def execute(self, task: Task) -> TaskResult:
        loop = PlanningLoop(agent=self, task=task)
        return await loop.execute()


class PlanningLoop:
    """Simple ReAct-style planning loop."""

    def __init__(self, agent: PlanningAgent, task: Task) -> None:
        self.agent = agent
        self.task = task
        self.trace: List[str] = []
        self.observations: List[str] = []

    @property
    def channel(self) -> Optional[str]:
        channel = self.task.context.get("execution_id")
        return str(channel) if channel else None

    async def execute(self) -> TaskResult:
        max_iterations = self.agent.planning.max_iterations
        for iteration in range(1, max_iterations + 1):
            prompt = self._build_prompt(iteration)
            context = PromptContext(caller=self.agent.name, task_id=self.task.id, iteration=iteration)
            response = await self.agent.llm_provider.generate(prompt, context)
            action = self._parse_response(response)
            self.trace.append(f"model@{iteration}: {response}")
            if action.is_final:
                answer = action.answer or _as_text(action.action_input)
                self._share(answer)
                return TaskResult(
                    task_id=self.task.id,
                    success=True,
                    output=answer,
                    data={"iterations": iteration, "trace": list(self.trace)},
                    agent_id=self.agent.id,
                )
            observation = await self._invoke_tool(action)
            self.observations.append(observation)
        logger.warning("Agent %s hit %d iterations on task %s", self.agent.id, max_iterations, self.task.id)
        return TaskResult(
            task_id=self.task.id,
            success=False,
            error="Max iterations reached without final answer",
            data={"iterations": max_iterations, "trace": list(self.trace)},
            agent_id=self.agent.id,
        )

    def _build_prompt(self, iteration: int) -> str:
        registry = self.agent.tools
        tools_desc = "\n".join(
            f"- {name}: {registry.get(name).description.strip()}" for name in self.agent.tool_names()
        )
        context = {key: value for key, value in self.task.context.items() if key != "execution_id"}
        findings = self._findings()
        observations = "\n".join(self.observations)
        return textwrap.dedent(
            f"""
            You are agent {self.agent.name}. Task: {self.task.description}.
            You MUST respond using JSON with keys thought, action, input, answer (answer required when action == "final").
            Tools available:\n{tools_desc or '- none'}
            Context: {json.dumps(context, default=str)}
            Findings from other agents:\n{findings or 'none'}
            Observations so far:\n{observations or 'none'}
            Iteration: {iteration}
            """
        ).strip()

    def _parse_response(self, response: str) -> AgentAction:
        try:
            payload = json.loads(response)
        except json.JSONDecodeError:
            # Treat as direct answer
            return AgentAction(thought="Responding directly", action="final", action_input=response, answer=response)
        if not isinstance(payload, dict):
            text = _as_text(payload)
            return AgentAction(thought="Responding directly", action="final", action_input=text, answer=text)
        answer = payload.get("answer")
        return AgentAction(
            thought=str(payload.get("thought", "")),
            action=str(payload.get("action", "final")),
            action_input=payload.get("input", ""),
            answer=None if answer is None else _as_text(answer),
        )

    async def _invoke_tool(self, action: AgentAction) -> str:
        tool_name = action.action
        if tool_name not in self.agent.tool_names():
            observation = f"Unknown tool '{tool_name}'"
            self.trace.append(observation)
            return observation
        arguments: Dict[str, Any]
        if isinstance(action.action_input, dict):
            arguments = action.action_input
        else:
            arguments = {"text": _as_text(action.action_input)}
        result = await self.agent.tools.execute(
            tool_name,
            arguments,
            ToolContext(
                caller=self.agent.name,
                task_id=self.task.id,
                metadata={"task_description": self.task.description},
            ),
        )
        if result.success:
            observation = f"Tool {tool_name} => {_as_text(result.data)}"
        else:
            observation = f"Tool {tool_name} failed: {result.error}"
        self.trace.append(observation)
        return observation

    def _findings(self) -> str:
        communicator = self.agent.communicator
        if communicator is None or self.channel is None:
            return ""
        lines = []
        for message in communicator.history(self.channel, topic=FINDING_TOPIC):
            if message.sender == self.agent.id:
                continue
            payload = message.payload if isinstance(message.payload, dict) else {"answer": message.payload}
            lines.append(f"- {message.sender}: {payload.get('answer')}")
        return "\n".join(lines)

    def _share(self, answer: str) -> None:
        communicator = self.agent.communicator
        if communicator is None or self.channel is None or not communicator.has_channel(self.channel):
            return
        communicator.publish(
            self.channel,
            sender=self.agent.id,
            topic=FINDING_TOPIC,
            payload={"task_id": self.task.id, "answer": answer},
        )


def spec_to_config(spec: AgentSpec) -> AgentConfig:
    return AgentConfig(
        name=spec.name,
        capabilities=list(spec.capabilities),
        agent_type=spec.agent_type,
        description=spec.description or "",
        max_concurrent_tasks=spec.max_concurrent_tasks,
        priority=spec.priority,
    )


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)
