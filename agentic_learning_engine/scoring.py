from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Union

from .types import ScoreComponents, ScorerContext, Solution, SolutionScore, new_id
from .virtual_power import VirtualPowerScorer

ImmediateEvaluator = Callable[[Solution, ScorerContext], Union[float, Awaitable[float]]]


def _clamp(value: float, lower: float = 0.0, upper: float = 1.0) -> float:
    return max(lower, min(upper, value))


def blend_total(immediate: float, virtual_power: float, weight: float = 0.3) -> float:
    """The one total-score policy: (1 - w) * immediate + w * virtual power."""
    weight = _clamp(weight)
    return (1.0 - weight) * immediate + weight * virtual_power


def empty_solution(task: str, iteration: int = 0) -> Solution:
    return Solution(
        id=new_id("sol"),
        content=f"No solution generated for: {task}",
        iteration=iteration,
        metadata={"empty": True},
    )


def empty_score(solution_id: str = "") -> SolutionScore:
    return SolutionScore(
        solution_id=solution_id,
        immediate_score=0.0,
        virtual_power_score=0.0,
        total_score=0.0,
        components=ScoreComponents(),
        confidence=0.0,
        reasoning="No evaluation performed",
    )


@dataclass(slots=True)
class BlendedScorer:
    """
    Scorer collaborator built from an immediate evaluator:
    - immediate_score: external correctness/success signal, clamped to [0, 1]
    - virtual_power_score: projected future value from VirtualPowerScorer
    - total_score: blend_total of the two

    The blend weight and look-ahead depth come from the scorer context when the
    engine supplies them; the instance values are the fallback.
    """

    immediate_evaluator: ImmediateEvaluator
    virtual_power: VirtualPowerScorer = field(default_factory=VirtualPowerScorer)
    virtual_power_weight: float | None = None
    look_ahead_depth: int | None = None

    async def __call__(self, solution: Solution, context: ScorerContext) -> SolutionScore:
        raw = self.immediate_evaluator(solution, context)
        if inspect.isawaitable(raw):
            raw = await raw
        immediate = _clamp(float(raw))

        depth = self.look_ahead_depth if self.look_ahead_depth is not None else context.look_ahead_depth
        weight = (
            self.virtual_power_weight
            if self.virtual_power_weight is not None
            else context.virtual_power_weight
        )
        vp = self.virtual_power.calculate(solution, context, depth)
        total = blend_total(immediate, vp.score, weight)

        return SolutionScore(
            solution_id=solution.id,
            immediate_score=immediate,
            virtual_power_score=vp.score,
            total_score=total,
            components=ScoreComponents(
                correctness=immediate,
                efficiency=immediate,
                maintainability=(vp.factors.building_blocks + vp.factors.extensibility) / 2,
                potential=vp.score,
            ),
            confidence=self._confidence(len(context.previous_trials)),
            reasoning=f"Immediate: {immediate:.3f}, {vp.reasoning}",
        )

    @staticmethod
    def _confidence(history: int) -> float:
        return 0.5 + 0.5 * min(1.0, history / 10)
