from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

METADATA_SCHEMA_VERSION = 1

# Solution.metadata keys written by the explorer and the engine.
METADATA_KEYS = frozenset(
    {
        "exploration_strategy",
        "requested_strategy",
        "accepted",
        "temperature",
        "acceptance_probability",
        "reheated",
        "hybrid_phase",
        "reconstruction_reason",
        "beam_position",
        "beam_width",
        "generation",
        "evolutionary_phase",
        "parent_ids",
        "replaced_worst",
        "approach",
        "avoiding_strategies",
    }
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class ExplorationStrategy(str, Enum):
    GREEDY = "greedy"
    ANNEALING = "annealing"
    HYBRID = "hybrid"
    BEAM = "beam"
    EVOLUTIONARY = "evolutionary"

    @classmethod
    def parse(cls, value: ExplorationStrategy | str) -> ExplorationStrategy:
        """Unknown tags resolve to greedy so a session always makes progress."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.GREEDY


class InsightType(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PATTERN = "pattern"
    OBSERVATION = "observation"


class ALEStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


class StoppedReason(str, Enum):
    TARGET_REACHED = "target_reached"
    MAX_TRIALS = "max_trials"
    TIMEOUT = "timeout"
    CONVERGED = "converged"
    STOPPED = "stopped"


class ALEPhase(str, Enum):
    EXPLORING = "exploring"
    REFINING = "refining"
    CONVERGING = "converging"


@dataclass(slots=True)
class Solution:
    content: str
    iteration: int = 0
    id: str = field(default_factory=lambda: new_id("sol"))
    code: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    parent_id: str | None = None


@dataclass(slots=True)
class ScoreComponents:
    correctness: float = 0.0
    efficiency: float = 0.0
    maintainability: float = 0.0
    potential: float = 0.0

    def as_dict(self) -> dict[str, float]:
        return {
            "correctness": self.correctness,
            "efficiency": self.efficiency,
            "maintainability": self.maintainability,
            "potential": self.potential,
        }


@dataclass(slots=True)
class SolutionScore:
    solution_id: str
    immediate_score: float
    virtual_power_score: float
    total_score: float
    components: ScoreComponents = field(default_factory=ScoreComponents)
    confidence: float = 0.0
    reasoning: str = ""


@dataclass(slots=True)
class Trial:
    iteration: int
    solution: Solution
    score: SolutionScore
    duration: float
    started_at: datetime
    completed_at: datetime
    tools_used: list[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: new_id("trial"))


@dataclass(slots=True)
class Insight:
    trial_id: str
    type: InsightType
    content: str
    confidence: float
    applicable_to: list[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: new_id("insight"))
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class FailedStrategy:
    description: str
    reason: str
    task_pattern: str
    avoidance_hint: str
    hit_count: int = 1
    id: str = field(default_factory=lambda: new_id("fail"))
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class GeneratorContext:
    task: str
    objective: str
    constraints: list[str] = field(default_factory=list)
    previous_solutions: list[Solution] = field(default_factory=list)
    best_solution: Solution | None = None
    insights: list[Insight] = field(default_factory=list)
    failed_strategies: list[FailedStrategy] = field(default_factory=list)
    temperature: float = 0.0
    iteration: int = 0


@dataclass(slots=True)
class ScorerContext:
    task: str
    objective: str
    constraints: list[str] = field(default_factory=list)
    previous_trials: list[Trial] = field(default_factory=list)
    insights: list[Insight] = field(default_factory=list)
    failed_strategies: list[FailedStrategy] = field(default_factory=list)
    virtual_power_weight: float = 0.3
    look_ahead_depth: int = 2


class SolutionGenerator(Protocol):
    """Produces one candidate solution; must not mutate the context."""

    def __call__(self, context: GeneratorContext) -> Awaitable[Solution]:
        """Generate a candidate for the given context."""


class SolutionScorer(Protocol):
    """Scores one candidate against the session history."""

    def __call__(self, solution: Solution, context: ScorerContext) -> Awaitable[SolutionScore]:
        """Score a candidate."""


# Explorer-facing callables: the engine binds the scorer context before exploring.
GenerateFn = Callable[[GeneratorContext], Awaitable[Solution]]
ScoreFn = Callable[[Solution], Awaitable[SolutionScore]]


@dataclass(slots=True)
class ALEProgress:
    current_trial: int = 0
    total_trials: int = 0
    best_score: float = 0.0
    average_score: float = 0.0
    elapsed_time: float = 0.0
    estimated_remaining: float = 0.0
    current_phase: ALEPhase = ALEPhase.EXPLORING
    temperature: float | None = None


class MemoryEntryType(str, Enum):
    FAILED_STRATEGY = "failed_strategy"
    SUCCESS_PATTERN = "success_pattern"
    INSIGHT = "insight"
    CONTEXT = "context"


@dataclass(slots=True)
class WorkingMemoryEntry:
    type: MemoryEntryType
    content: str
    task_pattern: str
    confidence: float = 0.7
    metadata: dict[str, Any] = field(default_factory=dict)
    hit_count: int = 1
    id: str = field(default_factory=lambda: new_id("wm"))
    created_at: datetime = field(default_factory=utcnow)
    last_accessed: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class PatternMatch:
    entry: WorkingMemoryEntry
    similarity: float
    relevance: str
