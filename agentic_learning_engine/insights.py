from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from statistics import mean, pvariance

from .signature import extract_task_pattern
from .types import FailedStrategy, Insight, InsightType, Trial, new_id

logger = logging.getLogger(__name__)

QUOTED_RE = re.compile(r'"([^"]+)"')


@dataclass(slots=True)
class InsightConfig:
    success_threshold: float = 0.7
    failure_threshold: float = 0.3
    improvement_threshold: float = 0.05
    max_insights_per_trial: int = 3
    min_confidence: float = 0.5
    detect_patterns: bool = True
    pattern_window_size: int = 5
    oscillation_tolerance: float = 0.01
    breakthrough_threshold: float = 0.15
    plateau_variance: float = 0.01


@dataclass(slots=True)
class DetectedPattern:
    type: str
    description: str
    confidence: float
    recommendation: str
    trial_ids: list[str] = field(default_factory=list)
    occurrences: int = 1
    id: str = field(default_factory=lambda: new_id("pattern"))


def approach_of(trial: Trial) -> str:
    metadata = trial.solution.metadata
    return str(metadata.get("approach") or metadata.get("exploration_strategy") or "unknown")


def _consistency(scores: list[float]) -> float:
    """One minus the coefficient of variation, floored at 0."""
    if len(scores) < 2:
        return 1.0
    avg = mean(scores)
    std = pvariance(scores) ** 0.5
    return max(0.0, 1.0 - std / max(0.01, avg))


class InsightsGenerator:
    """
    Reflects on each trial to extract reusable learnings:
    - outcome (success / failure against thresholds)
    - delta against the previous trial
    - effectiveness of the approach across the run
    - cross-trial patterns (plateau, oscillation, breakthrough, success pattern)
    - weak or unbalanced score components

    Detected patterns accumulate across calls until clear_patterns().
    """

    def __init__(self, config: InsightConfig | None = None) -> None:
        self.config = config or InsightConfig()
        self._patterns: list[DetectedPattern] = []

    @property
    def patterns(self) -> list[DetectedPattern]:
        return list(self._patterns)

    def clear_patterns(self) -> None:
        self._patterns = []

    def generate_insights(
        self,
        trial: Trial,
        all_trials: list[Trial],
        existing_insights: list[Insight] | None = None,
    ) -> list[Insight]:
        candidates: list[Insight | None] = [self._outcome_insight(trial)]
        if len(all_trials) > 1:
            candidates.append(self._delta_insight(trial, all_trials))
        candidates.append(self._strategy_insight(trial, all_trials))
        if self.config.detect_patterns and len(all_trials) >= self.config.pattern_window_size:
            candidates.extend(self._pattern_insights(trial, all_trials))
        candidates.extend(self._component_insights(trial))

        # Skip anything already said verbatim earlier in the run.
        seen = {i.content for i in existing_insights or []}
        insights = [
            i
            for i in candidates
            if i is not None and i.confidence >= self.config.min_confidence and i.content not in seen
        ]
        return insights[: self.config.max_insights_per_trial]

    def _insight(
        self,
        trial: Trial,
        kind: InsightType,
        content: str,
        confidence: float,
        tags: list[str] | None = None,
    ) -> Insight:
        return Insight(
            trial_id=trial.id,
            type=kind,
            content=content,
            confidence=max(0.0, min(1.0, confidence)),
            applicable_to=tags if tags is not None else self._tags(trial),
        )

    def _outcome_insight(self, trial: Trial) -> Insight | None:
        score = trial.score.total_score
        approach = approach_of(trial)
        if score >= self.config.success_threshold:
            return self._insight(
                trial,
                InsightType.SUCCESS,
                f'Successful approach "{approach}" achieved score {score:.3f}. '
                f"Key factors: {trial.score.reasoning}",
                score + 0.1,
            )
        if score <= self.config.failure_threshold:
            return self._insight(
                trial,
                InsightType.FAILURE,
                f'Failed approach "{approach}" scored only {score:.3f}. '
                f"Avoid this strategy for similar tasks. Reason: {trial.score.reasoning}",
                (1 - score) + 0.1,
            )
        return None

    def _delta_insight(self, trial: Trial, all_trials: list[Trial]) -> Insight | None:
        previous = self._previous(trial, all_trials)
        if previous is None:
            return None
        delta = trial.score.total_score - previous.score.total_score
        if abs(delta) < self.config.improvement_threshold:
            return None

        approach = approach_of(trial)
        prev_approach = approach_of(previous)
        if delta > 0:
            return self._insight(
                trial,
                InsightType.PATTERN,
                f'Improvement of +{delta:.3f} after switching from "{prev_approach}" to "{approach}". '
                f'This suggests "{approach}" is more effective for this task type.',
                0.5 + delta,
            )
        return self._insight(
            trial,
            InsightType.OBSERVATION,
            f'Regression of {delta:.3f} after switching from "{prev_approach}" to "{approach}". '
            f'Consider reverting to "{prev_approach}".',
            0.5 + abs(delta),
        )

    @staticmethod
    def _previous(trial: Trial, all_trials: list[Trial]) -> Trial | None:
        for idx, candidate in enumerate(all_trials):
            if candidate.id == trial.id:
                return all_trials[idx - 1] if idx > 0 else None
        return all_trials[-1] if all_trials else None

    def _strategy_insight(self, trial: Trial, all_trials: list[Trial]) -> Insight | None:
        approach = approach_of(trial)
        if approach == "unknown":
            return None
        same = [t.score.total_score for t in all_trials if approach_of(t) == approach]
        if len(same) < 2:
            return None

        avg = mean(same)
        consistency = _consistency(same)
        if avg >= self.config.success_threshold and consistency > 0.7:
            kind = InsightType.PATTERN
            content = (
                f'Strategy "{approach}" is consistently effective '
                f"(avg: {avg:.3f}, consistency: {consistency:.0%}). Recommended for similar tasks."
            )
        elif avg <= self.config.failure_threshold:
            kind = InsightType.FAILURE
            content = (
                f'Strategy "{approach}" consistently underperforms (avg: {avg:.3f}). '
                "Should be avoided for this task type."
            )
            # A consistently poor approach is a confident failure regardless of spread.
            consistency = max(consistency, 1 - avg)
        elif consistency < 0.3:
            kind = InsightType.OBSERVATION
            content = (
                f'Strategy "{approach}" has high variance (consistency: {consistency:.0%}). '
                "Results are unpredictable."
            )
        else:
            return None
        return self._insight(trial, kind, content, consistency)

    def _pattern_insights(self, trial: Trial, all_trials: list[Trial]) -> list[Insight]:
        window = all_trials[-self.config.pattern_window_size :]
        insights: list[Insight] = []
        for pattern in self.detect_patterns(window):
            known = next(
                (
                    p
                    for p in self._patterns
                    if p.type == pattern.type and p.description == pattern.description
                ),
                None,
            )
            if known is not None:
                known.occurrences += 1
                if trial.id not in known.trial_ids:
                    known.trial_ids.append(trial.id)
                continue

            self._patterns.append(pattern)
            logger.debug("Detected %s pattern at trial %s", pattern.type, trial.id)
            insights.append(
                self._insight(
                    trial,
                    InsightType.PATTERN,
                    f"Pattern detected: {pattern.description}. {pattern.recommendation}",
                    pattern.confidence,
                )
            )
        return insights

    def detect_patterns(self, trials: list[Trial]) -> list[DetectedPattern]:
        scores = [t.score.total_score for t in trials]
        patterns: list[DetectedPattern] = []

        if self._is_plateaued(scores):
            patterns.append(
                DetectedPattern(
                    type="plateau",
                    description="Optimization has plateaued - scores stable but not improving",
                    confidence=0.7,
                    trial_ids=[t.id for t in trials],
                    recommendation="Try increasing exploration (temperature) or a different strategy",
                )
            )

        if self._is_oscillating(scores):
            patterns.append(
                DetectedPattern(
                    type="oscillation",
                    description="Scores oscillating - alternating between approaches without convergence",
                    confidence=0.6,
                    trial_ids=[t.id for t in trials],
                    recommendation="Focus on the higher-scoring approach and reduce exploration",
                )
            )

        if len(scores) >= 2:
            jump = scores[-1] - scores[-2]
            if jump > self.config.breakthrough_threshold:
                patterns.append(
                    DetectedPattern(
                        type="breakthrough",
                        description=f"Breakthrough improvement of +{jump:.3f}",
                        confidence=0.8,
                        trial_ids=[trials[-1].id],
                        recommendation="Exploit this approach - focus refinement around current solution",
                    )
                )

        successful = [t for t in trials if t.score.total_score >= self.config.success_threshold]
        if len(successful) >= 3:
            common = self._common_approach(successful)
            if common:
                patterns.append(
                    DetectedPattern(
                        type="success_pattern",
                        description=f'Strategy "{common}" consistently succeeds',
                        occurrences=len(successful),
                        confidence=len(successful) / len(trials),
                        trial_ids=[t.id for t in successful],
                        recommendation=f'Continue using "{common}" strategy',
                    )
                )
        return patterns

    def _component_insights(self, trial: Trial) -> list[Insight]:
        ranked = sorted(trial.score.components.as_dict().items(), key=lambda kv: kv[1])
        weakest, weakest_score = ranked[0]
        strongest, strongest_score = ranked[-1]
        insights: list[Insight] = []
        if weakest_score < 0.4:
            insights.append(
                self._insight(
                    trial,
                    InsightType.OBSERVATION,
                    f'Weak in "{weakest}" ({weakest_score:.2f}). Focus improvement efforts on this area.',
                    1 - weakest_score,
                    [weakest],
                )
            )
        if strongest_score > 0.8 and weakest_score < 0.5:
            insights.append(
                self._insight(
                    trial,
                    InsightType.OBSERVATION,
                    f'Strong "{strongest}" ({strongest_score:.2f}) but weak "{weakest}". '
                    "Consider rebalancing approach.",
                    strongest_score - weakest_score,
                    [strongest, weakest],
                )
            )
        return insights

    def extract_failed_strategies(self, insights: list[Insight], task: str) -> list[FailedStrategy]:
        pattern = extract_task_pattern(task)
        failed: list[FailedStrategy] = []
        for insight in insights:
            if insight.type != InsightType.FAILURE or insight.confidence < self.config.min_confidence:
                continue
            match = QUOTED_RE.search(insight.content)
            description = match.group(1) if match else "unknown_approach"
            failed.append(
                FailedStrategy(
                    description=description,
                    reason=insight.content,
                    task_pattern=pattern,
                    avoidance_hint=f"Based on insight: {insight.content[:100]}",
                    created_at=insight.created_at,
                )
            )
        return failed

    @staticmethod
    def summarize_insights(insights: list[Insight], limit: int = 5) -> str:
        if not insights:
            return "No insights gathered yet."

        counts = Counter(i.type for i in insights)
        lines = [
            f"Total insights: {len(insights)}",
            f"- Successes: {counts[InsightType.SUCCESS]}",
            f"- Failures: {counts[InsightType.FAILURE]}",
            f"- Patterns: {counts[InsightType.PATTERN]}",
            "",
            "Key learnings:",
        ]
        for insight in sorted(insights, key=lambda i: i.confidence, reverse=True)[:limit]:
            text = insight.content if len(insight.content) <= 100 else insight.content[:97] + "..."
            lines.append(f"- [{insight.type.value}] {text}")
        return "\n".join(lines)

    @staticmethod
    def _tags(trial: Trial) -> list[str]:
        tags: list[str] = []
        approach = approach_of(trial)
        if approach != "unknown":
            tags.append(approach.split("_")[0])
        tags.extend(trial.tools_used[:2])
        return tags

    def _is_plateaued(self, scores: list[float]) -> bool:
        if len(scores) < 4:
            return False
        recent = scores[-4:]
        return pvariance(recent) < self.config.plateau_variance and abs(recent[-1] - recent[0]) < 0.02

    def _is_oscillating(self, scores: list[float]) -> bool:
        if len(scores) < 4:
            return False
        tol = self.config.oscillation_tolerance
        changes = 0
        for a, b, c in zip(scores, scores[1:], scores[2:]):
            prev, curr = b - a, c - b
            if (prev > tol and curr < -tol) or (prev < -tol and curr > tol):
                changes += 1
        return changes > (len(scores) - 2) * 0.6

    @staticmethod
    def _common_approach(trials: list[Trial]) -> str | None:
        counts = Counter(approach_of(t) for t in trials)
        counts.pop("unknown", None)
        if not counts:
            return None
        approach, count = counts.most_common(1)[0]
        return approach if count >= len(trials) / 2 else None
