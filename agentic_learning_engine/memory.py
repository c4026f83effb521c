from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

from .memory_backend import (
    BackendAvailability,
    HttpMemoryBackend,
    LocalOnlyBackend,
    MemoryBackend,
    resolve_backend,
)
from .signature import extract_task_pattern, overlap_ratio, word_set
from .types import (
    FailedStrategy,
    Insight,
    InsightType,
    MemoryEntryType,
    PatternMatch,
    Trial,
    WorkingMemoryEntry,
    utcnow,
)

logger = logging.getLogger(__name__)


def _snapshot(entry: WorkingMemoryEntry) -> WorkingMemoryEntry:
    return replace(entry, metadata=dict(entry.metadata))


@dataclass(slots=True)
class WorkingMemoryConfig:
    # retention
    max_entries: int = 1000
    max_age: timedelta = timedelta(days=7)
    min_hit_count_for_retention: int = 1
    # matching
    min_similarity: float = 0.5
    max_matches: int = 10
    pattern_weight: float = 0.7
    # learning
    learn_from_failures: bool = True
    learn_from_successes: bool = True
    min_confidence_for_learning: float = 0.6
    failure_score_threshold: float = 0.3
    success_score_threshold: float = 0.7


@dataclass(slots=True)
class LearningSummary:
    failed_strategies_stored: int = 0
    success_patterns_stored: int = 0
    insights_stored: int = 0


@dataclass(slots=True)
class RecallResult:
    failed_strategies: list[FailedStrategy] = field(default_factory=list)
    success_patterns: list[PatternMatch] = field(default_factory=list)
    insights: list[Insight] = field(default_factory=list)
    context: list[PatternMatch] = field(default_factory=list)


@dataclass(slots=True)
class MemoryStats:
    total_entries: int
    by_type: dict[str, int]
    availability: BackendAvailability
    oldest_entry: datetime | None
    newest_entry: datetime | None


class WorkingMemory:
    """
    Stores and recalls failed strategies, success patterns, insights and free
    context, indexed by a coarse task-pattern signature.

    The local index is always written. An external backend, when available,
    receives a copy of every entry and contributes extra recall matches; its
    failures are logged and never reach the caller. All entry mutation is
    serialized by one lock per memory instance.
    """

    def __init__(
        self,
        config: WorkingMemoryConfig | None = None,
        backend: MemoryBackend | None = None,
        availability: BackendAvailability | None = None,
    ) -> None:
        self.config = config or WorkingMemoryConfig()
        self._backend: MemoryBackend = backend or LocalOnlyBackend()
        if availability is None:
            availability = (
                BackendAvailability.DISABLED
                if isinstance(self._backend, LocalOnlyBackend)
                else BackendAvailability.AVAILABLE
            )
        self.availability = availability
        self._entries: dict[str, WorkingMemoryEntry] = {}
        self._lock = asyncio.Lock()

    @classmethod
    async def connect(
        cls,
        config: WorkingMemoryConfig | None = None,
        backend: MemoryBackend | None = None,
        service_url: str | None = None,
    ) -> WorkingMemory:
        """Build a memory whose backend availability is probed once, up front."""
        if backend is None:
            backend = HttpMemoryBackend(base_url=service_url) if service_url else HttpMemoryBackend.from_env()
        resolved, availability = await resolve_backend(backend)
        return cls(config=config, backend=resolved, availability=availability)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> list[WorkingMemoryEntry]:
        return [_snapshot(e) for e in self._entries.values()]

    async def store(self, entry: WorkingMemoryEntry) -> None:
        async with self._lock:
            self._entries[entry.id] = entry
            self._evict()

        if self.availability is not BackendAvailability.AVAILABLE:
            return
        try:
            await self._backend.store(entry)
        except Exception as e:
            logger.warning("External memory store failed for %s: %s", entry.id, e)

    async def store_failed_strategy(self, strategy: FailedStrategy) -> None:
        await self.store(
            WorkingMemoryEntry(
                id=strategy.id,
                type=MemoryEntryType.FAILED_STRATEGY,
                content=f"Failed: {strategy.description}. Reason: {strategy.reason}",
                metadata={
                    "description": strategy.description,
                    "reason": strategy.reason,
                    "avoidance_hint": strategy.avoidance_hint,
                },
                task_pattern=strategy.task_pattern,
                confidence=0.8,
                hit_count=strategy.hit_count,
                created_at=strategy.created_at,
            )
        )

    async def store_success_pattern(self, trial: Trial, task_pattern: str) -> None:
        approach = trial.solution.metadata.get("approach") or trial.solution.metadata.get(
            "exploration_strategy", "unknown"
        )
        await self.store(
            WorkingMemoryEntry(
                type=MemoryEntryType.SUCCESS_PATTERN,
                content=f"Success: {approach} achieved {trial.score.total_score:.3f}",
                metadata={
                    "approach": approach,
                    "score": trial.score.total_score,
                    "components": trial.score.components.as_dict(),
                    "tools_used": list(trial.tools_used),
                },
                task_pattern=task_pattern,
                confidence=trial.score.confidence,
            )
        )

    async def store_insight(self, insight: Insight, task_pattern: str) -> bool:
        if insight.confidence < self.config.min_confidence_for_learning:
            return False
        await self.store(
            WorkingMemoryEntry(
                id=insight.id,
                type=MemoryEntryType.INSIGHT,
                content=insight.content,
                metadata={
                    "insight_type": insight.type.value,
                    "applicable_to": list(insight.applicable_to),
                    "trial_id": insight.trial_id,
                },
                task_pattern=task_pattern,
                confidence=insight.confidence,
                created_at=insight.created_at,
            )
        )
        return True

    async def store_context(self, content: str, task_pattern: str, metadata: dict | None = None) -> None:
        await self.store(
            WorkingMemoryEntry(
                type=MemoryEntryType.CONTEXT,
                content=content,
                metadata=dict(metadata or {}),
                task_pattern=task_pattern,
                confidence=0.7,
            )
        )

    def similarity(self, task: str, entry: WorkingMemoryEntry) -> float:
        """Weighted word overlap: task vs. task pattern, then task vs. content."""
        task_words = word_set(task)
        weight = self.config.pattern_weight
        return overlap_ratio(task_words, word_set(entry.task_pattern)) * weight + overlap_ratio(
            task_words, word_set(entry.content)
        ) * (1 - weight)

    async def recall(self, task: str, entry_type: MemoryEntryType | None = None) -> list[PatternMatch]:
        matches: list[PatternMatch] = []
        now = utcnow()
        async with self._lock:
            for entry in self._entries.values():
                if entry_type is not None and entry.type != entry_type:
                    continue
                score = self.similarity(task, entry)
                if score < self.config.min_similarity:
                    continue
                entry.hit_count += 1
                entry.last_accessed = now
                matches.append(
                    PatternMatch(entry=_snapshot(entry), similarity=score, relevance=self._relevance(task, entry))
                )

        if self.availability is BackendAvailability.AVAILABLE:
            try:
                remote = await self._backend.search(task, entry_type)
            except Exception as e:
                logger.warning("External memory search failed: %s", e)
                remote = []
            known = {m.entry.id for m in matches}
            matches.extend(m for m in remote if m.entry.id not in known)

        matches.sort(key=lambda m: m.similarity, reverse=True)
        return matches[: self.config.max_matches]

    @staticmethod
    def _relevance(task: str, entry: WorkingMemoryEntry) -> str:
        common = sorted(word_set(task) & word_set(entry.task_pattern))
        if common:
            return "Matches keywords: " + ", ".join(common)
        return "Content similarity"

    async def recall_failed_strategies(self, task: str) -> list[FailedStrategy]:
        matches = await self.recall(task, MemoryEntryType.FAILED_STRATEGY)
        return [
            FailedStrategy(
                id=m.entry.id,
                description=str(m.entry.metadata.get("description", "unknown")),
                reason=str(m.entry.metadata.get("reason", "unknown")),
                task_pattern=m.entry.task_pattern,
                avoidance_hint=str(m.entry.metadata.get("avoidance_hint", "")),
                created_at=m.entry.created_at,
                hit_count=m.entry.hit_count,
            )
            for m in matches
        ]

    async def recall_success_patterns(self, task: str) -> list[PatternMatch]:
        return await self.recall(task, MemoryEntryType.SUCCESS_PATTERN)

    async def recall_insights(self, task: str) -> list[Insight]:
        insights: list[Insight] = []
        for m in await self.recall(task, MemoryEntryType.INSIGHT):
            try:
                kind = InsightType(m.entry.metadata.get("insight_type", "observation"))
            except ValueError:
                kind = InsightType.OBSERVATION
            tags = m.entry.metadata.get("applicable_to")
            insights.append(
                Insight(
                    id=m.entry.id,
                    trial_id=str(m.entry.metadata.get("trial_id", "")),
                    type=kind,
                    content=m.entry.content,
                    confidence=m.entry.confidence,
                    applicable_to=list(tags) if isinstance(tags, list) else [],
                    created_at=m.entry.created_at,
                )
            )
        return insights

    async def recall_context(self, task: str) -> list[PatternMatch]:
        return await self.recall(task, MemoryEntryType.CONTEXT)

    async def recall_all(self, task: str) -> RecallResult:
        failed, successes, insights, context = await asyncio.gather(
            self.recall_failed_strategies(task),
            self.recall_success_patterns(task),
            self.recall_insights(task),
            self.recall_context(task),
        )
        return RecallResult(
            failed_strategies=failed,
            success_patterns=successes,
            insights=insights,
            context=context,
        )

    async def learn_from_trials(self, trials: list[Trial], insights: list[Insight], task: str) -> LearningSummary:
        task_pattern = extract_task_pattern(task)
        summary = LearningSummary()

        if self.config.learn_from_failures:
            for trial in trials:
                if trial.score.total_score >= self.config.failure_score_threshold:
                    continue
                approach = str(
                    trial.solution.metadata.get("approach")
                    or trial.solution.metadata.get("exploration_strategy")
                    or "unknown"
                )
                await self.store_failed_strategy(
                    FailedStrategy(
                        description=approach,
                        reason=trial.score.reasoning,
                        task_pattern=task_pattern,
                        avoidance_hint=f"Avoid {approach} for {task_pattern}",
                    )
                )
                summary.failed_strategies_stored += 1

        if self.config.learn_from_successes:
            for trial in trials:
                if trial.score.total_score >= self.config.success_score_threshold:
                    await self.store_success_pattern(trial, task_pattern)
                    summary.success_patterns_stored += 1

        for insight in insights:
            if await self.store_insight(insight, task_pattern):
                summary.insights_stored += 1

        logger.info(
            "Learned from %d trials: %d failed strategies, %d success patterns, %d insights",
            len(trials),
            summary.failed_strategies_stored,
            summary.success_patterns_stored,
            summary.insights_stored,
        )
        return summary

    async def build_context_string(self, task: str) -> str:
        recalled = await self.recall_all(task)
        lines = ["## Working Memory Context", ""]

        if recalled.failed_strategies:
            lines.append("### Avoid These Approaches:")
            lines.extend(f"- {f.description}: {f.reason}" for f in recalled.failed_strategies[:3])
            lines.append("")

        if recalled.success_patterns:
            lines.append("### Successful Approaches:")
            for match in recalled.success_patterns[:3]:
                meta = match.entry.metadata
                lines.append(f"- {meta.get('approach', 'unknown')}: Score {meta.get('score', '?')}")
            lines.append("")

        if recalled.insights:
            lines.append("### Relevant Insights:")
            for insight in recalled.insights[:5]:
                text = insight.content if len(insight.content) <= 100 else insight.content[:97] + "..."
                lines.append(f"- [{insight.type.value}] {text}")
            lines.append("")

        return "\n".join(lines)

    def _evict(self) -> None:
        cfg = self.config
        if len(self._entries) <= cfg.max_entries:
            return

        now = utcnow()
        for entry_id, entry in list(self._entries.items()):
            if now - entry.created_at > cfg.max_age and entry.hit_count < cfg.min_hit_count_for_retention:
                del self._entries[entry_id]

        overflow = len(self._entries) - cfg.max_entries
        if overflow > 0:
            by_access = sorted(self._entries.values(), key=lambda e: e.last_accessed)
            for entry in by_access[:overflow]:
                del self._entries[entry.id]

        logger.debug("Evicted working memory down to %d entries", len(self._entries))

    def stats(self) -> MemoryStats:
        entries = list(self._entries.values())
        created = [e.created_at for e in entries]
        return MemoryStats(
            total_entries=len(entries),
            by_type=dict(Counter(e.type.value for e in entries)),
            availability=self.availability,
            oldest_entry=min(created) if created else None,
            newest_entry=max(created) if created else None,
        )

    def clear(self) -> None:
        self._entries.clear()
