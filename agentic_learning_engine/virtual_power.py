from __future__ import annotations

import logging
import re
from dataclasses import dataclass, fields

from .types import InsightType, ScorerContext, Solution, Trial

logger = logging.getLogger(__name__)

# (pattern, increment) pairs; each signal counts once per solution.
BUILDING_BLOCK_SIGNALS: list[tuple[re.Pattern[str], float]] = [
    (re.compile(r"\b(function|def)\s+\w+"), 0.10),
    (re.compile(r"\bclass\s+\w+"), 0.15),
    (re.compile(r"\b(interface|protocol)\s+\w+|\(protocol\)"), 0.08),
    (re.compile(r"\btype\s+\w+\s*="), 0.05),
    (re.compile(r"\bexport\s+(const|function|class)|__all__"), 0.10),
    (re.compile(r"\b(module|package)\s+\w+"), 0.12),
    (re.compile(r"\babstract\s*class|\babc\b|abstractmethod"), 0.15),
    (re.compile(r"\bimplements\s+\w+"), 0.08),
    (re.compile(r"\bextends\s+\w+|\bclass\s+\w+\(\w+"), 0.08),
]

EXTENSIBILITY_SIGNALS: list[tuple[re.Pattern[str], float]] = [
    (re.compile(r"config|options|settings"), 0.10),
    (re.compile(r"plugin|hook|middleware"), 0.15),
    (re.compile(r"abstract|interface|protocol"), 0.10),
    (re.compile(r"dependency injection|\binject"), 0.10),
    (re.compile(r"factory|builder|strategy"), 0.10),
    (re.compile(r"\bevent|\bemit|\bon\(|subscribe|callback"), 0.08),
    (re.compile(r"modular|composable|component"), 0.08),
]

HARDCODED_SIGNALS: list[re.Pattern[str]] = [
    re.compile(r"[\"']\d{1,5}[\"']"),
    re.compile(r"localhost:\d+"),
    re.compile(r"(//|#)\s*(todo|fixme|hack)"),
]

ERROR_HANDLING_SIGNALS: list[re.Pattern[str]] = [
    re.compile(r"try\s*[{:]|catch\s*\(|finally\s*[{:]|except\b"),
    re.compile(r"\.catch\s*\("),
    re.compile(r"throw\s+new\s+\w*error|raise\s+\w+"),
    re.compile(r"if\s*\(?[^)\n]*\berr(or)?\b"),
    re.compile(r"validation|validate|sanitize"),
]


def _clamp(value: float, lower: float = 0.0, upper: float = 1.0) -> float:
    return max(lower, min(upper, value))


@dataclass(slots=True)
class VirtualPowerFactors:
    """Six future-value factors; also used as the weight vector."""

    building_blocks: float = 0.25
    extensibility: float = 0.15
    learning_trajectory: float = 0.20
    insight_density: float = 0.15
    compound_potential: float = 0.15
    risk_mitigation: float = 0.10

    def as_dict(self) -> dict[str, float]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(slots=True)
class VirtualPowerResult:
    score: float
    factors: VirtualPowerFactors
    reasoning: str


def _combined_text(solution: Solution) -> str:
    return f"{solution.content} {solution.code or ''}".lower()


def _avoided(solution: Solution) -> list[str]:
    avoided = solution.metadata.get("avoiding_strategies") or []
    return list(avoided) if isinstance(avoided, (list, tuple)) else []


class VirtualPowerScorer:
    """
    Estimates the future value of a solution rather than its immediate value:
    reusable building blocks, extensibility, the run's learning trajectory and
    how well it is learning from successes and failures.
    """

    def __init__(self, weights: VirtualPowerFactors | dict[str, float] | None = None) -> None:
        if weights is None:
            weights = VirtualPowerFactors()
        elif isinstance(weights, dict):
            weights = VirtualPowerFactors(**{**VirtualPowerFactors().as_dict(), **weights})
        self._weights = self._normalized(weights)

    @staticmethod
    def _normalized(weights: VirtualPowerFactors) -> VirtualPowerFactors:
        values = weights.as_dict()
        if any(v < 0 for v in values.values()):
            raise ValueError("Virtual power weights must be non-negative.")
        total = sum(values.values())
        if total <= 0:
            raise ValueError("Virtual power weights must not all be zero.")
        return VirtualPowerFactors(**{k: v / total for k, v in values.items()})

    @property
    def weights(self) -> VirtualPowerFactors:
        return VirtualPowerFactors(**self._weights.as_dict())

    def calculate(
        self,
        solution: Solution,
        context: ScorerContext,
        look_ahead_depth: int = 2,
    ) -> VirtualPowerResult:
        factors = VirtualPowerFactors(
            building_blocks=self.score_building_blocks(solution),
            extensibility=self.score_extensibility(solution),
            learning_trajectory=self.score_learning_trajectory(context.previous_trials),
            insight_density=self.score_insight_density(
                len(context.insights), len(context.previous_trials)
            ),
            compound_potential=self.score_compound_potential(solution, context, look_ahead_depth),
            risk_mitigation=self.score_risk_mitigation(solution, context),
        )
        values = factors.as_dict()
        weights = self._weights.as_dict()
        score = sum(values[k] * weights[k] for k in values)

        top = sorted(values.items(), key=lambda kv: kv[1], reverse=True)[:2]
        reasoning = "Virtual Power {:.3f} driven by {}".format(
            score, ", ".join(f"{k}: {v:.2f}" for k, v in top)
        )
        return VirtualPowerResult(score=_clamp(score), factors=factors, reasoning=reasoning)

    @staticmethod
    def score_building_blocks(solution: Solution) -> float:
        text = _combined_text(solution)
        score = 0.5 + sum(weight for regex, weight in BUILDING_BLOCK_SIGNALS if regex.search(text))
        if solution.metadata.get("has_reusable_components"):
            score += 0.1
        return _clamp(score)

    @staticmethod
    def score_extensibility(solution: Solution) -> float:
        text = _combined_text(solution)
        score = 0.5 + sum(weight for regex, weight in EXTENSIBILITY_SIGNALS if regex.search(text))
        score -= 0.05 * sum(1 for regex in HARDCODED_SIGNALS if regex.search(text))
        return _clamp(score)

    @staticmethod
    def score_learning_trajectory(previous_trials: list[Trial]) -> float:
        if len(previous_trials) < 2:
            return 0.5

        recent = [t.score.total_score for t in previous_trials[-10:]]
        n = len(recent)
        sum_x = n * (n - 1) / 2
        sum_y = sum(recent)
        sum_xy = sum(i * y for i, y in enumerate(recent))
        sum_x2 = n * (n - 1) * (2 * n - 1) / 6
        slope = (n * sum_xy - sum_x * sum_y) / (n * sum_x2 - sum_x * sum_x)

        # +0.05/iteration maps to 1.0, -0.05/iteration to 0.0
        return _clamp(0.5 + _clamp(slope, -0.05, 0.05) / 0.1)

    @staticmethod
    def score_insight_density(insight_count: int, trial_count: int) -> float:
        if trial_count == 0:
            return 0.5
        density = insight_count / trial_count
        if density < 0.1:
            return _clamp(0.3 + density * 2)
        if density <= 0.5:
            return _clamp(0.5 + density * 0.8)
        return _clamp(max(0.5, 0.9 - (density - 0.5) * 0.4))

    def score_compound_potential(
        self,
        solution: Solution,
        context: ScorerContext,
        look_ahead_depth: int,
    ) -> float:
        score = 0.5

        if solution.parent_id:
            parent = next(
                (t for t in context.previous_trials if t.solution.id == solution.parent_id),
                None,
            )
            if parent is not None:
                if parent.score.total_score > 0.7:
                    score += 0.15
                elif parent.score.total_score < 0.4:
                    score -= 0.1

        successes = sum(1 for i in context.insights if i.type == InsightType.SUCCESS)
        score += successes / max(1, len(context.previous_trials)) * 0.2

        if look_ahead_depth > 0 and len(context.previous_trials) >= 3:
            improvement = self._recent_improvement(context.previous_trials)
            score += min(0.2, improvement * look_ahead_depth * 0.8)

        score += min(0.1, len(_avoided(solution)) * 0.03)
        return _clamp(score)

    @staticmethod
    def score_risk_mitigation(solution: Solution, context: ScorerContext) -> float:
        text = _combined_text(solution)
        score = 0.5 + 0.05 * sum(1 for regex in ERROR_HANDLING_SIGNALS if regex.search(text))

        failures = sum(1 for i in context.insights if i.type == InsightType.FAILURE)
        score += min(0.15, failures * 0.03)

        repeated = [f for f in context.failed_strategies if f.hit_count > 1]
        if repeated:
            score += len(_avoided(solution)) / len(repeated) * 0.1
        return _clamp(score)

    @staticmethod
    def _recent_improvement(trials: list[Trial]) -> float:
        recent = trials[-5:]
        if len(recent) < 2:
            return 0.0
        return (recent[-1].score.total_score - recent[0].score.total_score) / len(recent)

    def update_weights(self, trials: list[Trial]) -> None:
        """
        Conservative online adaptation: factors that co-occur with improving
        trials gain weight (80% old weight, 20% normalized correlation).
        Needs at least 10 trials.
        """
        if len(trials) < 10:
            return

        correlations = {k: 0.0 for k in VirtualPowerFactors().as_dict()}
        for prev, trial in zip(trials, trials[1:]):
            if trial.score.total_score - prev.score.total_score <= 0:
                continue
            components = trial.score.components
            correlations["building_blocks"] += _clamp(components.correctness)
            correlations["extensibility"] += _clamp(components.maintainability)
            correlations["compound_potential"] += _clamp(components.potential)

        max_corr = max(correlations.values())
        if max_corr <= 0:
            return

        current = self._weights.as_dict()
        blended = {k: current[k] * 0.8 + (correlations[k] / max_corr) * 0.2 for k in current}
        self._weights = self._normalized(VirtualPowerFactors(**blended))
        logger.debug("Updated virtual power weights: %s", self._weights.as_dict())
