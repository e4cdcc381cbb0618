"""Agent package exports."""

from .aggregator import AggregationResult, AggregationStrategy, ResultAggregator
from .base import AgentConfig, AgentStatus, BaseAgent, FunctionAgent, TaskResult
from .communicator import AgentCommunicator, AgentMessage
from .decomposer import ExecutionMode, ExecutionStrategy, TaskDecomposer, TaskDecomposition
from .orchestrator import SwarmController, SwarmResult
from .planning import PlanningAgent

__all__ = [
    "AgentConfig",
    "AgentStatus",
    "BaseAgent",
    "FunctionAgent",
    "TaskResult",
    "PlanningAgent",
    "AgentCommunicator",
    "AgentMessage",
    "ExecutionMode",
    "ExecutionStrategy",
    "TaskDecomposer",
    "TaskDecomposition",
    "AggregationResult",
    "AggregationStrategy",
    "ResultAggregator",
    "SwarmController",
    "SwarmResult",
]
