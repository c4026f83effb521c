from __future__ import annotations

import asyncio
import inspect
import logging
import random
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from statistics import pvariance
from typing import Any, Callable

from .explorer import ExplorerConfig, ExplorerStats, SolutionSpaceExplorer
from .insights import InsightConfig, InsightsGenerator
from .memory import WorkingMemory
from .scoring import BlendedScorer, empty_score, empty_solution
from .types import (
    ALEPhase,
    ALEProgress,
    ALEStatus,
    ExplorationStrategy,
    FailedStrategy,
    GeneratorContext,
    Insight,
    ScorerContext,
    Solution,
    SolutionGenerator,
    SolutionScore,
    SolutionScorer,
    StoppedReason,
    Trial,
    new_id,
    utcnow,
)
from .virtual_power import VirtualPowerScorer

logger = logging.getLogger(__name__)

TrialCallback = Callable[[Trial], Any]
InsightCallback = Callable[[Insight], Any]
ProgressCallback = Callable[[ALEProgress], Any]
ResultCallback = Callable[["ALEResult"], Any]


@dataclass(slots=True)
class ALEConfig:
    task: str
    objective: str
    constraints: list[str] = field(default_factory=list)
    max_trials: int = 100
    max_duration: float = 300.0
    target_score: float = 0.95
    strategy: ExplorationStrategy | str = ExplorationStrategy.HYBRID
    # explorer overrides
    temperature: float | None = None
    cooling_rate: float | None = None
    beam_width: int | None = None
    population_size: int | None = None
    # virtual power
    virtual_power_weight: float = 0.3
    look_ahead_depth: int = 2
    # memory
    use_working_memory: bool = True
    store_insights: bool = True
    # agent integration
    agent_type: str | None = None
    tools: list[str] = field(default_factory=list)
    # convergence
    convergence_window: int = 5
    convergence_min_trials: int = 10
    convergence_threshold: float = 0.001
    refining_fraction: float = 0.3
    seed: int | None = None
    # fire-and-forget notifications
    on_trial_complete: TrialCallback | None = None
    on_insight_generated: InsightCallback | None = None
    on_progress_update: ProgressCallback | None = None
    # session lifecycle
    on_session_started: Callable[[str], Any] | None = None
    on_session_improved: TrialCallback | None = None
    on_session_completed: ResultCallback | None = None
    on_session_failed: ResultCallback | None = None
    on_session_stopped: ResultCallback | None = None

    def __post_init__(self) -> None:
        if self.max_trials < 1:
            raise ValueError("max_trials must be >= 1.")
        if self.max_duration <= 0:
            raise ValueError("max_duration must be positive.")
        if not 0.0 <= self.virtual_power_weight <= 1.0:
            raise ValueError("virtual_power_weight must be within [0, 1].")
        if self.convergence_window < 2:
            raise ValueError("convergence_window must be >= 2.")
        resolved = ExplorationStrategy.parse(self.strategy)
        if not isinstance(self.strategy, ExplorationStrategy) and resolved.value != str(self.strategy).strip().lower():
            logger.warning("Unknown strategy %r, sessions will use greedy", self.strategy)
        self.strategy = resolved

    def explorer_config(self, base: ExplorerConfig) -> ExplorerConfig:
        overrides: dict[str, Any] = {}
        if self.temperature is not None:
            overrides["initial_temperature"] = max(self.temperature, base.min_temperature)
        if self.cooling_rate is not None:
            overrides["cooling_rate"] = self.cooling_rate
        if self.beam_width is not None:
            overrides["beam_width"] = self.beam_width
        if self.population_size is not None:
            overrides["population_size"] = self.population_size
        return replace(base, **overrides)


@dataclass(slots=True)
class ALEState:
    id: str
    config: ALEConfig
    status: ALEStatus = ALEStatus.IDLE
    progress: ALEProgress = field(default_factory=ALEProgress)
    current_trial: Trial | None = None
    best_solution: Solution | None = None
    best_score: SolutionScore | None = None
    trials: list[Trial] = field(default_factory=list)
    insights: list[Insight] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    error: str | None = None
    stopped_reason: StoppedReason | None = None


@dataclass(slots=True)
class ALEResult:
    session_id: str
    status: ALEStatus
    success: bool
    best_solution: Solution
    best_score: SolutionScore
    total_trials: int
    total_duration: float
    average_score: float
    score_improvement: float
    trials: list[Trial]
    insights: list[Insight]
    config: ALEConfig
    completed_at: datetime
    stopped_reason: StoppedReason | None = None
    error: str | None = None


@dataclass(slots=True)
class QuickResult:
    solution: str
    score: float
    insights: list[str] = field(default_factory=list)


QUICK_PRESETS: dict[str, dict[str, Any]] = {
    "fast": {"max_trials": 20, "strategy": ExplorationStrategy.GREEDY, "virtual_power_weight": 0.1},
    "balanced": {"max_trials": 50, "strategy": ExplorationStrategy.HYBRID, "virtual_power_weight": 0.3},
    "thorough": {"max_trials": 100, "strategy": ExplorationStrategy.HYBRID, "virtual_power_weight": 0.4},
}


@dataclass(slots=True)
class _SessionControl:
    explorer: SolutionSpaceExplorer
    insights: InsightsGenerator
    resume: asyncio.Event
    stop: asyncio.Event
    paused_total: float = 0.0


class OptimizationHandle:
    """Handle on a running session: poll its status or await its result."""

    def __init__(self, engine: ALEEngine, session_id: str, task: asyncio.Task[ALEResult]) -> None:
        self.session_id = session_id
        self._engine = engine
        self._task = task

    @property
    def status(self) -> ALEStatus:
        state = self._engine.get_session(self.session_id)
        return state.status if state is not None else ALEStatus.IDLE

    def done(self) -> bool:
        return self._task.done()

    async def result(self) -> ALEResult:
        return await self._task

    def __await__(self):
        return self._task.__await__()


class ALEEngine:
    """
    Multi-trial optimization loop:
    - explore: the session's explorer generates and scores one candidate
    - record: the candidate becomes an immutable Trial
    - reflect: insights are extracted and failures join the avoid-list
    - check termination: target, trial budget, time budget, convergence, stop

    Each session owns its explorer and insights generator; only the working
    memory is shared between sessions.
    """

    def __init__(
        self,
        generator: SolutionGenerator | None = None,
        scorer: SolutionScorer | None = None,
        memory: WorkingMemory | None = None,
        explorer_config: ExplorerConfig | None = None,
        insight_config: InsightConfig | None = None,
        virtual_power: VirtualPowerScorer | None = None,
    ) -> None:
        self._generator = generator
        self._scorer = scorer
        self.memory = memory
        self.explorer_config = explorer_config or ExplorerConfig()
        self.insight_config = insight_config or InsightConfig()
        if virtual_power is None and isinstance(scorer, BlendedScorer):
            virtual_power = scorer.virtual_power
        self.virtual_power = virtual_power

        self._sessions: dict[str, ALEState] = {}
        self._controls: dict[str, _SessionControl] = {}
        self._explorers: dict[str, SolutionSpaceExplorer] = {}
        self._failed_strategies: dict[str, list[FailedStrategy]] = {}
        self._callback_tasks: set[asyncio.Task[Any]] = set()

    def set_generator(self, generator: SolutionGenerator | None) -> None:
        self._generator = generator

    def set_scorer(self, scorer: SolutionScorer | None) -> None:
        self._scorer = scorer
        if self.virtual_power is None and isinstance(scorer, BlendedScorer):
            self.virtual_power = scorer.virtual_power

    def start(self, config: ALEConfig) -> OptimizationHandle:
        """Create a session and schedule its loop on the running event loop."""
        session_id = new_id("ale")
        explorer = SolutionSpaceExplorer(
            config.explorer_config(self.explorer_config),
            rng=random.Random(config.seed),
        )
        state = ALEState(
            id=session_id,
            config=config,
            status=ALEStatus.RUNNING,
            progress=ALEProgress(
                total_trials=config.max_trials,
                estimated_remaining=config.max_duration,
                temperature=explorer.stats.current_temperature,
            ),
        )
        control = _SessionControl(
            explorer=explorer,
            insights=InsightsGenerator(self.insight_config),
            resume=asyncio.Event(),
            stop=asyncio.Event(),
        )
        control.resume.set()

        self._sessions[session_id] = state
        self._controls[session_id] = control
        self._explorers[session_id] = explorer
        self._failed_strategies[session_id] = []

        logger.info(
            "Session %s started: strategy=%s max_trials=%d task=%r",
            session_id, config.strategy.value, config.max_trials, config.task,
        )
        task = asyncio.get_running_loop().create_task(self._run(state, control))
        self._notify(config.on_session_started, session_id)
        return OptimizationHandle(self, session_id, task)

    async def optimize(self, config: ALEConfig) -> ALEResult:
        return await self.start(config).result()

    async def quick_optimize(
        self,
        task: str,
        objective: str,
        preset: str = "balanced",
        max_trials: int | None = None,
        timeout: float | None = None,
    ) -> QuickResult:
        options = dict(QUICK_PRESETS.get(preset, QUICK_PRESETS["balanced"]))
        if max_trials is not None:
            options["max_trials"] = max_trials
        result = await self.optimize(
            ALEConfig(task=task, objective=objective, max_duration=timeout or 300.0, **options)
        )
        return QuickResult(
            solution=result.best_solution.content,
            score=result.best_score.total_score,
            insights=[i.content for i in result.insights],
        )

    async def _run(self, state: ALEState, control: _SessionControl) -> ALEResult:
        config = state.config
        started = time.monotonic()
        reason: StoppedReason | None = None
        try:
            if config.use_working_memory and self.memory is not None:
                recalled = await self.memory.recall_failed_strategies(config.task)
                self._failed_strategies[state.id] = recalled
                logger.debug("Session %s recalled %d failed strategies", state.id, len(recalled))

            for iteration in range(config.max_trials):
                await self._checkpoint(state, control)
                if control.stop.is_set():
                    reason = StoppedReason.STOPPED
                    break
                elapsed = self._elapsed(started, control)
                if elapsed >= config.max_duration:
                    logger.info("Session %s timed out after %.1fs", state.id, elapsed)
                    reason = StoppedReason.TIMEOUT
                    break

                trial = await self._run_trial(state, control, iteration)
                if trial is None:
                    reason = StoppedReason.STOPPED
                    break
                self._record(state, control, trial, self._elapsed(started, control))

                if state.best_score is not None and state.best_score.total_score >= config.target_score:
                    logger.info("Session %s reached target score %.3f", state.id, config.target_score)
                    reason = StoppedReason.TARGET_REACHED
                    break
                if self._has_converged(state.trials, config):
                    logger.info("Session %s converged after %d trials", state.id, len(state.trials))
                    self._update_progress(state, current_phase=ALEPhase.CONVERGING)
                    reason = StoppedReason.CONVERGED
                    break
            else:
                reason = StoppedReason.MAX_TRIALS

            self._controls.pop(state.id, None)
            if config.use_working_memory and config.store_insights and self.memory is not None:
                await self.memory.learn_from_trials(state.trials, state.insights, config.task)
            if self.virtual_power is not None:
                self.virtual_power.update_weights(state.trials)
        except asyncio.CancelledError:
            self._finish(state, ALEStatus.STOPPED, StoppedReason.STOPPED)
            self._notify(config.on_session_stopped, self._result(state, self._elapsed(started, control)))
            raise
        except Exception as e:
            logger.exception("Session %s failed", state.id)
            state.error = str(e) or type(e).__name__
            self._finish(state, ALEStatus.FAILED, None)
        else:
            status = ALEStatus.STOPPED if reason is StoppedReason.STOPPED else ALEStatus.COMPLETED
            self._finish(state, status, reason)
            logger.info(
                "Session %s %s (%s) after %d trials, best=%.4f",
                state.id, status.value, reason.value if reason else "-", len(state.trials),
                state.best_score.total_score if state.best_score else 0.0,
            )
        finally:
            self._controls.pop(state.id, None)

        result = self._result(state, self._elapsed(started, control))
        self._notify(self._lifecycle_hook(config, state.status), result)
        return result

    @staticmethod
    def _lifecycle_hook(config: ALEConfig, status: ALEStatus) -> ResultCallback | None:
        if status is ALEStatus.FAILED:
            return config.on_session_failed
        if status is ALEStatus.STOPPED:
            return config.on_session_stopped
        return config.on_session_completed

    async def _checkpoint(self, state: ALEState, control: _SessionControl) -> None:
        if control.resume.is_set():
            return
        logger.info("Session %s paused at trial %d", state.id, len(state.trials))
        paused_at = time.monotonic()
        await control.resume.wait()
        control.paused_total += time.monotonic() - paused_at
        logger.info("Session %s resumed", state.id)

    @staticmethod
    def _elapsed(started: float, control: _SessionControl) -> float:
        return time.monotonic() - started - control.paused_total

    async def _run_trial(self, state: ALEState, control: _SessionControl, iteration: int) -> Trial | None:
        config = state.config
        failed = list(self._failed_strategies.get(state.id, []))
        insights = list(state.insights)
        generator_context = GeneratorContext(
            task=config.task,
            objective=config.objective,
            constraints=list(config.constraints),
            previous_solutions=[t.solution for t in state.trials],
            best_solution=state.best_solution,
            insights=insights,
            failed_strategies=failed,
            temperature=control.explorer.stats.current_temperature,
            iteration=iteration,
        )
        scorer_context = ScorerContext(
            task=config.task,
            objective=config.objective,
            constraints=list(config.constraints),
            previous_trials=list(state.trials),
            insights=insights,
            failed_strategies=failed,
            virtual_power_weight=config.virtual_power_weight,
            look_ahead_depth=config.look_ahead_depth,
        )

        self._update_progress(state, current_trial=iteration + 1)
        started_at = utcnow()
        t0 = time.perf_counter()

        exploration = asyncio.ensure_future(
            control.explorer.explore(
                config.strategy,
                generator_context,
                self._generate_fn(config),
                self._score_fn(scorer_context),
            )
        )
        stop_wait = asyncio.ensure_future(control.stop.wait())
        try:
            done, _ = await asyncio.wait({exploration, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            exploration.cancel()
            raise
        finally:
            stop_wait.cancel()

        if exploration not in done:
            exploration.cancel()
            await asyncio.gather(exploration, return_exceptions=True)
            logger.info("Session %s stopped during trial %d; candidate discarded", state.id, iteration)
            return None

        solution = exploration.result()
        score = control.explorer.last_score or empty_score(solution.id)
        return Trial(
            iteration=iteration,
            solution=solution,
            score=score,
            duration=time.perf_counter() - t0,
            tools_used=list(config.tools),
            started_at=started_at,
            completed_at=utcnow(),
        )

    def _generate_fn(self, config: ALEConfig):
        generator = self._generator

        async def generate(context: GeneratorContext) -> Solution:
            if generator is None:
                solution = empty_solution(config.task, context.iteration)
            else:
                solution = await generator(context)
            if not isinstance(solution, Solution):
                raise TypeError(f"Generator returned {type(solution).__name__}, expected Solution.")
            if context.failed_strategies and "avoiding_strategies" not in solution.metadata:
                avoided = [f.id for f in context.failed_strategies]
                solution = replace(solution, metadata={**solution.metadata, "avoiding_strategies": avoided})
            return solution

        return generate

    def _score_fn(self, context: ScorerContext):
        scorer = self._scorer

        async def score(solution: Solution) -> SolutionScore:
            if scorer is None:
                return empty_score(solution.id)
            result = await scorer(solution, context)
            if not isinstance(result, SolutionScore):
                raise TypeError(f"Scorer returned {type(result).__name__}, expected SolutionScore.")
            return result

        return score

    def _record(self, state: ALEState, control: _SessionControl, trial: Trial, elapsed: float) -> None:
        config = state.config
        state.trials.append(trial)
        state.current_trial = trial

        if state.best_score is None or trial.score.total_score > state.best_score.total_score:
            state.best_solution = trial.solution
            state.best_score = trial.score
            logger.info(
                "Session %s new best score %.4f at trial %d",
                state.id, trial.score.total_score, trial.iteration + 1,
            )
            self._notify(config.on_session_improved, trial)

        new_insights = control.insights.generate_insights(trial, state.trials, state.insights)
        state.insights.extend(new_insights)
        self._merge_failed(state.id, control.insights.extract_failed_strategies(new_insights, config.task))

        self._notify(config.on_trial_complete, trial)
        for insight in new_insights:
            self._notify(config.on_insight_generated, insight)

        done = len(state.trials)
        average = sum(t.score.total_score for t in state.trials) / done
        per_trial = elapsed / done
        remaining = min(
            max(0.0, config.max_duration - elapsed),
            per_trial * (config.max_trials - done),
        )
        phase = state.progress.current_phase
        if phase is ALEPhase.EXPLORING and done > config.max_trials * config.refining_fraction:
            phase = ALEPhase.REFINING
        self._update_progress(
            state,
            best_score=state.best_score.total_score if state.best_score else 0.0,
            average_score=average,
            elapsed_time=elapsed,
            estimated_remaining=remaining,
            current_phase=phase,
            temperature=control.explorer.stats.current_temperature,
        )
        self._notify(config.on_progress_update, replace(state.progress))

    def _merge_failed(self, session_id: str, discovered: list[FailedStrategy]) -> None:
        known = self._failed_strategies.setdefault(session_id, [])
        for strategy in discovered:
            existing = next((f for f in known if f.description == strategy.description), None)
            if existing is not None:
                existing.hit_count += 1
            else:
                known.append(strategy)

    @staticmethod
    def _has_converged(trials: list[Trial], config: ALEConfig) -> bool:
        """Low variance over the trailing window and no new best inside it."""
        window = config.convergence_window
        if len(trials) < max(config.convergence_min_trials, window + 1):
            return False
        scores = [t.score.total_score for t in trials]
        recent = scores[-window:]
        if pvariance(recent) >= config.convergence_threshold:
            return False
        return max(recent) <= max(scores[:-window])

    def _update_progress(self, state: ALEState, **changes: Any) -> None:
        for key, value in changes.items():
            setattr(state.progress, key, value)
        state.updated_at = utcnow()

    def _finish(self, state: ALEState, status: ALEStatus, reason: StoppedReason | None) -> None:
        state.status = status
        state.stopped_reason = reason
        state.completed_at = utcnow()
        state.updated_at = state.completed_at

    def _result(self, state: ALEState, elapsed: float) -> ALEResult:
        config = state.config
        scores = [t.score.total_score for t in state.trials]
        best = state.best_score
        return ALEResult(
            session_id=state.id,
            status=state.status,
            success=best is not None and best.total_score >= config.target_score,
            best_solution=state.best_solution or empty_solution(config.task),
            best_score=best or empty_score(),
            total_trials=len(state.trials),
            total_duration=elapsed,
            average_score=sum(scores) / len(scores) if scores else 0.0,
            score_improvement=(best.total_score - scores[0]) if best is not None and len(scores) > 1 else 0.0,
            trials=list(state.trials),
            insights=list(state.insights),
            config=config,
            completed_at=state.completed_at or utcnow(),
            stopped_reason=state.stopped_reason,
            error=state.error,
        )

    def _notify(self, callback: Callable[[Any], Any] | None, payload: Any) -> None:
        if callback is None:
            return
        asyncio.get_running_loop().call_soon(self._invoke_callback, callback, payload)

    def _invoke_callback(self, callback: Callable[[Any], Any], payload: Any) -> None:
        try:
            outcome = callback(payload)
        except Exception:
            logger.exception("Session callback %r failed", callback)
            return
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._callback_tasks.add(task)
            task.add_done_callback(self._callback_done)

    def _callback_done(self, task: asyncio.Future[Any]) -> None:
        self._callback_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Session callback failed: %s", task.exception())

    def stop(self, session_id: str) -> bool:
        control = self._controls.get(session_id)
        state = self._sessions.get(session_id)
        if control is None or state is None or control.stop.is_set():
            return False
        state.status = ALEStatus.STOPPED
        state.updated_at = utcnow()
        control.stop.set()
        control.resume.set()
        logger.info("Session %s stop requested", session_id)
        return True

    def pause(self, session_id: str) -> bool:
        control = self._controls.get(session_id)
        state = self._sessions.get(session_id)
        if control is None or state is None or state.status is not ALEStatus.RUNNING:
            return False
        state.status = ALEStatus.PAUSED
        state.updated_at = utcnow()
        control.resume.clear()
        return True

    def resume(self, session_id: str) -> bool:
        control = self._controls.get(session_id)
        state = self._sessions.get(session_id)
        if control is None or state is None or state.status is not ALEStatus.PAUSED:
            return False
        state.status = ALEStatus.RUNNING
        state.updated_at = utcnow()
        control.resume.set()
        return True

    def get_session(self, session_id: str) -> ALEState | None:
        return self._sessions.get(session_id)

    def list_sessions(self, status: ALEStatus | None = None) -> list[ALEState]:
        sessions = [s for s in self._sessions.values() if status is None or s.status is status]
        return sorted(sessions, key=lambda s: s.started_at, reverse=True)

    def get_running(self) -> list[ALEState]:
        return self.list_sessions(ALEStatus.RUNNING)

    def explorer_stats(self, session_id: str) -> ExplorerStats | None:
        explorer = self._explorers.get(session_id)
        return explorer.stats if explorer is not None else None

    def cleanup(self, max_age: float | timedelta = timedelta(hours=24)) -> int:
        """Drop finished sessions completed longer than max_age ago."""
        if not isinstance(max_age, timedelta):
            max_age = timedelta(seconds=max_age)
        cutoff = utcnow() - max_age
        finished = {ALEStatus.COMPLETED, ALEStatus.FAILED, ALEStatus.STOPPED}
        stale = [
            sid
            for sid, s in self._sessions.items()
            if s.status in finished
            and sid not in self._controls
            and s.completed_at is not None
            and s.completed_at < cutoff
        ]
        for sid in stale:
            del self._sessions[sid]
            self._explorers.pop(sid, None)
            self._failed_strategies.pop(sid, None)
        return len(stale)

    def get_failed_strategies(self, session_id: str) -> list[FailedStrategy]:
        return list(self._failed_strategies.get(session_id, []))

    def clear_failed_strategies(self, session_id: str) -> None:
        if session_id in self._failed_strategies:
            self._failed_strategies[session_id] = []
