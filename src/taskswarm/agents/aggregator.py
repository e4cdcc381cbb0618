"""Combines subtask results into one outcome."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .base import TaskResult
from .decomposer import ExecutionMode, ExecutionStrategy


class AggregationStrategy(str, Enum):
    CONCATENATE = "concatenate"
    MERGE = "merge"
    VOTE = "vote"
    BEST = "best"


@dataclass
class AggregationResult:
    success: bool
    output: Optional[str] = None
    data: Any = None
    errors: List[str] = field(default_factory=list)
    consensus_score: Optional[float] = None
    sources: List[TaskResult] = field(default_factory=list)
    strategy: AggregationStrategy = AggregationStrategy.CONCATENATE


class ResultAggregator:
    """Pure, deterministic aggregation of :class:`TaskResult` lists.

    No strategy raises: an empty or uniformly failed input produces
    ``success=False`` with the collected errors.
    """

    def __init__(self, consensus_threshold: float = 0.7) -> None:
        self.consensus_threshold = consensus_threshold

    @staticmethod
    def strategy_for(mode: ExecutionMode | ExecutionStrategy) -> AggregationStrategy:
        if isinstance(mode, ExecutionStrategy):
            mode = mode.mode
        if mode is ExecutionMode.SEQUENTIAL:
            return AggregationStrategy.CONCATENATE
        return AggregationStrategy.MERGE

    def aggregate(
        self,
        results: Sequence[TaskResult],
        strategy: AggregationStrategy | ExecutionStrategy | ExecutionMode = AggregationStrategy.CONCATENATE,
    ) -> AggregationResult:
        if not isinstance(strategy, AggregationStrategy):
            strategy = self.strategy_for(strategy)
        results = list(results)
        if not results:
            return AggregationResult(success=False, errors=["No results to aggregate"], strategy=strategy)
        if strategy is AggregationStrategy.CONCATENATE:
            return self._concatenate(results)
        if strategy is AggregationStrategy.MERGE:
            return self._merge(results)
        if strategy is AggregationStrategy.VOTE:
            return self._vote(results)
        return self._best(results)

    def _concatenate(self, results: List[TaskResult]) -> AggregationResult:
        succeeded = [result for result in results if result.success]
        failed = [result for result in results if not result.success]
        return AggregationResult(
            success=bool(succeeded) or not failed,
            output=_join_outputs(succeeded),
            data=_merge_data(succeeded),
            errors=_errors(failed),
            sources=results,
            strategy=AggregationStrategy.CONCATENATE,
        )

    def _merge(self, results: List[TaskResult]) -> AggregationResult:
        succeeded = [result for result in results if result.success]
        failed = [result for result in results if not result.success]
        consensus = len(succeeded) / len(results)
        return AggregationResult(
            success=consensus >= self.consensus_threshold or bool(succeeded),
            output=_join_outputs(succeeded),
            data=_merge_data(succeeded),
            errors=_errors(failed),
            consensus_score=consensus,
            sources=results,
            strategy=AggregationStrategy.MERGE,
        )

    def _vote(self, results: List[TaskResult]) -> AggregationResult:
        groups: Dict[str, List[TaskResult]] = {}
        for result in results:
            if result.success:
                groups.setdefault(_signature(result), []).append(result)
        errors = _errors([result for result in results if not result.success])
        if not groups:
            return AggregationResult(
                success=False,
                errors=errors or ["No successful results"],
                consensus_score=0.0,
                sources=results,
                strategy=AggregationStrategy.VOTE,
            )
        # dicts keep insertion order, so ties go to the first group seen
        winner = max(groups.values(), key=len)
        share = len(winner) / len(results)
        if share < self.consensus_threshold:
            errors.append(f"No consensus: largest group holds {share:.2f} of results")
        return AggregationResult(
            success=share >= self.consensus_threshold,
            output=winner[0].output,
            data=winner[0].data,
            errors=errors,
            consensus_score=share,
            sources=results,
            strategy=AggregationStrategy.VOTE,
        )

    def _best(self, results: List[TaskResult]) -> AggregationResult:
        succeeded = [result for result in results if result.success]
        errors = _errors([result for result in results if not result.success])
        if not succeeded:
            return AggregationResult(
                success=False,
                errors=errors or ["No successful results"],
                sources=results,
                strategy=AggregationStrategy.BEST,
            )
        best = max(succeeded, key=_quality)
        return AggregationResult(
            success=True,
            output=best.output,
            data=best.data,
            errors=errors,
            sources=results,
            strategy=AggregationStrategy.BEST,
        )


def _join_outputs(results: List[TaskResult]) -> Optional[str]:
    outputs = [result.output for result in results if result.output]
    return "\n\n".join(outputs) if outputs else None


def _merge_data(results: List[TaskResult]) -> Any:
    merged: Dict[str, Any] = {}
    loose: List[Any] = []
    for result in results:
        if isinstance(result.data, dict):
            merged.update(result.data)
        elif result.data is not None:
            loose.append(result.data)
    if loose and not merged:
        return loose[0] if len(loose) == 1 else loose
    if loose:
        merged["items"] = loose
    return merged or None


def _errors(results: List[TaskResult]) -> List[str]:
    return [f"{result.task_id}: {result.error or 'failed'}" for result in results]


def _signature(result: TaskResult) -> str:
    if result.output:
        return "output:" + " ".join(result.output.split()).lower()
    return "data:" + json.dumps(result.data, sort_keys=True, default=str)


def _quality(result: TaskResult) -> float:
    score = 0.0
    if result.output:
        score += 1
    if result.data is not None:
        score += 2
    if not result.error:
        score += 1
    return score + 1.0 / (1.0 + max(result.duration, 0.0))
