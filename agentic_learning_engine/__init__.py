"""Agentic Learning Engine: multi-trial optimization with exploration, insights and working memory."""

from .engine import ALEConfig, ALEEngine, ALEResult, ALEState, OptimizationHandle, QuickResult
from .explorer import ExplorerConfig, SolutionSpaceExplorer
from .insights import InsightConfig, InsightsGenerator
from .memory import WorkingMemory, WorkingMemoryConfig
from .memory_backend import BackendAvailability, HttpMemoryBackend, LocalOnlyBackend, MemoryBackendError
from .openai_backend import OpenAISolutionGenerator
from .scoring import BlendedScorer, blend_total
from .types import (
    ALEPhase,
    ALEProgress,
    ALEStatus,
    ExplorationStrategy,
    FailedStrategy,
    GeneratorContext,
    Insight,
    InsightType,
    ScorerContext,
    Solution,
    SolutionScore,
    StoppedReason,
    Trial,
)
from .virtual_power import VirtualPowerFactors, VirtualPowerScorer

__all__ = [
    "ALEConfig",
    "ALEEngine",
    "ALEPhase",
    "ALEProgress",
    "ALEResult",
    "ALEState",
    "ALEStatus",
    "BackendAvailability",
    "BlendedScorer",
    "ExplorationStrategy",
    "ExplorerConfig",
    "FailedStrategy",
    "GeneratorContext",
    "HttpMemoryBackend",
    "Insight",
    "InsightConfig",
    "InsightType",
    "InsightsGenerator",
    "LocalOnlyBackend",
    "MemoryBackendError",
    "OpenAISolutionGenerator",
    "OptimizationHandle",
    "QuickResult",
    "ScorerContext",
    "Solution",
    "SolutionScore",
    "SolutionSpaceExplorer",
    "StoppedReason",
    "Trial",
    "VirtualPowerFactors",
    "VirtualPowerScorer",
    "WorkingMemory",
    "WorkingMemoryConfig",
    "blend_total",
]
