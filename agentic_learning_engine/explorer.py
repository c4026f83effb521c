from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass, replace
from typing import Any

from .types import (
    ExplorationStrategy,
    GenerateFn,
    GeneratorContext,
    ScoreFn,
    Solution,
    SolutionScore,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ExplorerConfig:
    # annealing
    initial_temperature: float = 1.0
    min_temperature: float = 0.01
    cooling_rate: float = 0.95
    reheating_threshold: int = 10
    reheating_factor: float = 1.5
    # beam search
    beam_width: int = 3
    # evolutionary
    population_size: int = 10
    mutation_rate: float = 0.1
    tournament_size: int = 3
    # hybrid
    stuck_threshold: int = 15
    hybrid_greedy_iterations: int = 10
    reconstruction_probability: float = 0.05
    greedy_integration_probability: float = 0.3
    reconstruction_acceptance: float = 0.9

    def __post_init__(self) -> None:
        if self.min_temperature <= 0:
            raise ValueError("min_temperature must be positive.")
        if self.initial_temperature < self.min_temperature:
            raise ValueError("initial_temperature must be >= min_temperature.")
        if not 0 < self.cooling_rate <= 1:
            raise ValueError("cooling_rate must be in (0, 1].")
        if self.beam_width < 1 or self.population_size < 1 or self.tournament_size < 1:
            raise ValueError("beam_width, population_size and tournament_size must be >= 1.")


@dataclass(slots=True)
class ExplorationState:
    current_best: Solution | None = None
    current_best_score: float = 0.0
    # annealing walk position; an accepted worse candidate moves it, never the best
    current: Solution | None = None
    current_score: float = 0.0
    temperature: float = 1.0
    accepted_worse: int = 0
    rejected_worse: int = 0
    total_explorations: int = 0
    stuck_count: int = 0
    last_improvement: int = 0


@dataclass(slots=True)
class BeamCandidate:
    solution: Solution
    score: SolutionScore
    generation: int = 0
    parent_id: str | None = None


@dataclass(slots=True)
class ExplorerStats:
    total_explorations: int
    acceptance_rate: float
    current_temperature: float
    stuck_count: int
    best_score: float
    beam_size: int
    population_size: int


def _tag(solution: Solution, **diagnostics: Any) -> Solution:
    """Copy with merged metadata; scored solutions are never mutated in place."""
    return replace(solution, metadata={**solution.metadata, **diagnostics})


class SolutionSpaceExplorer:
    """
    Drives one exploration step per call with a pluggable strategy:
    greedy, simulated annealing with reheating, hybrid greedy/annealing with
    reconstruction, beam search, and tournament-based evolutionary search.

    One explorer holds the search state of one optimization run.
    """

    def __init__(self, config: ExplorerConfig | None = None, rng: random.Random | None = None) -> None:
        self.config = config or ExplorerConfig()
        self.rng = rng or random.Random()
        self.reset()

    def reset(self) -> None:
        self._state = ExplorationState(temperature=self.config.initial_temperature)
        self._beam: list[BeamCandidate] = []
        self._population: list[BeamCandidate] = []
        self.last_score: SolutionScore | None = None

    @property
    def state(self) -> ExplorationState:
        return replace(self._state)

    @property
    def beam(self) -> list[BeamCandidate]:
        return list(self._beam)

    @property
    def population(self) -> list[BeamCandidate]:
        return list(self._population)

    async def explore(
        self,
        strategy: ExplorationStrategy | str,
        context: GeneratorContext,
        generate: GenerateFn,
        score: ScoreFn,
    ) -> Solution:
        resolved = ExplorationStrategy.parse(strategy)
        requested = strategy.value if isinstance(strategy, ExplorationStrategy) else str(strategy)
        if resolved.value != requested.strip().lower():
            logger.warning("Unknown exploration strategy %r, falling back to greedy", strategy)

        self._state.total_explorations += 1
        handlers = {
            ExplorationStrategy.GREEDY: self._greedy,
            ExplorationStrategy.ANNEALING: self._annealing,
            ExplorationStrategy.HYBRID: self._hybrid,
            ExplorationStrategy.BEAM: self._beam_search,
            ExplorationStrategy.EVOLUTIONARY: self._evolutionary,
        }
        solution, result = await handlers[resolved](context, generate, score)
        self.last_score = result
        return _tag(solution, requested_strategy=requested)

    def _is_improvement(self, total: float) -> bool:
        return self._state.current_best is None or total > self._state.current_best_score

    def _improve(self, solution: Solution, result: SolutionScore) -> None:
        state = self._state
        state.current_best = solution
        state.current_best_score = result.total_score
        state.current = solution
        state.current_score = result.total_score
        state.last_improvement = state.total_explorations
        state.stuck_count = 0

    async def _greedy(
        self, context: GeneratorContext, generate: GenerateFn, score: ScoreFn
    ) -> tuple[Solution, SolutionScore]:
        candidate = await generate(
            replace(context, best_solution=self._state.current_best, temperature=0.0)
        )
        result = await score(candidate)
        accepted = self._is_improvement(result.total_score)
        if accepted:
            self._improve(candidate, result)
        else:
            self._state.stuck_count += 1
        logger.debug("greedy: score=%.4f accepted=%s", result.total_score, accepted)
        return (
            _tag(candidate, exploration_strategy="greedy", accepted=accepted, temperature=0.0),
            result,
        )

    async def _annealing(
        self, context: GeneratorContext, generate: GenerateFn, score: ScoreFn
    ) -> tuple[Solution, SolutionScore]:
        state = self._state
        temperature = state.temperature
        candidate = await generate(
            replace(
                context,
                best_solution=state.current or state.current_best,
                temperature=temperature,
            )
        )
        result = await score(candidate)
        delta = result.total_score - state.current_best_score

        if self._is_improvement(result.total_score):
            accepted, probability = True, 1.0
            self._improve(candidate, result)
        else:
            # Boltzmann acceptance, delta <= 0 here
            probability = math.exp(delta / temperature) if temperature > 0 else 0.0
            accepted = self.rng.random() < probability
            if accepted:
                state.accepted_worse += 1
                state.current = candidate
                state.current_score = result.total_score
            else:
                state.rejected_worse += 1
            state.stuck_count += 1

        state.temperature = max(self.config.min_temperature, temperature * self.config.cooling_rate)
        reheated = state.stuck_count >= self.config.reheating_threshold
        if reheated:
            self._reheat()

        logger.debug(
            "annealing: score=%.4f delta=%.4f T=%.4f p=%.4f accepted=%s",
            result.total_score, delta, temperature, probability, accepted,
        )
        return (
            _tag(
                candidate,
                exploration_strategy="annealing",
                accepted=accepted,
                temperature=temperature,
                acceptance_probability=probability,
                reheated=reheated,
            ),
            result,
        )

    def _reheat(self) -> None:
        state = self._state
        state.temperature = min(
            self.config.initial_temperature, state.temperature * self.config.reheating_factor
        )
        state.stuck_count = 0
        logger.debug("reheated to T=%.4f", state.temperature)

    async def _hybrid(
        self, context: GeneratorContext, generate: GenerateFn, score: ScoreFn
    ) -> tuple[Solution, SolutionScore]:
        cfg = self.config
        if context.iteration < cfg.hybrid_greedy_iterations or self._state.current_best is None:
            candidate, result = await self._greedy(context, generate, score)
            return _tag(candidate, hybrid_phase="greedy_baseline"), result

        if self._should_reconstruct():
            candidate, result = await self._reconstruction(context, generate, score)
            return _tag(candidate, hybrid_phase="reconstruction"), result

        candidate, result = await self._annealing(context, generate, score)
        candidate = _tag(candidate, hybrid_phase="annealing_refinement")

        if self.rng.random() < cfg.greedy_integration_probability:
            refined = await generate(replace(context, best_solution=candidate, temperature=0.0))
            refined_result = await score(refined)
            if refined_result.total_score > self._state.current_best_score:
                self._improve(refined, refined_result)
                return (
                    _tag(
                        refined,
                        exploration_strategy="greedy",
                        hybrid_phase="greedy_integration",
                        accepted=True,
                        temperature=0.0,
                    ),
                    refined_result,
                )
        return candidate, result

    def _should_reconstruct(self) -> bool:
        if self._state.stuck_count > self.config.stuck_threshold:
            return True
        return self.rng.random() < self.config.reconstruction_probability

    async def _reconstruction(
        self, context: GeneratorContext, generate: GenerateFn, score: ScoreFn
    ) -> tuple[Solution, SolutionScore]:
        """Rebuild from scratch, ignoring the current best, at high temperature."""
        cfg = self.config
        state = self._state
        reason = "stuck" if state.stuck_count > cfg.stuck_threshold else "exploration"
        candidate = await generate(
            replace(
                context,
                best_solution=None,
                temperature=cfg.initial_temperature,
                previous_solutions=context.previous_solutions[-5:],
            )
        )
        result = await score(candidate)

        accepted = result.total_score >= state.current_best_score * cfg.reconstruction_acceptance
        if accepted:
            if self._is_improvement(result.total_score):
                self._improve(candidate, result)
            else:
                state.current = candidate
                state.current_score = result.total_score
            state.stuck_count = 0
            state.temperature = cfg.initial_temperature * 0.5
        else:
            state.stuck_count += 1

        return (
            _tag(
                candidate,
                exploration_strategy="reconstruction",
                accepted=accepted,
                temperature=cfg.initial_temperature,
                reconstruction_reason=reason,
            ),
            result,
        )

    async def _beam_search(
        self, context: GeneratorContext, generate: GenerateFn, score: ScoreFn
    ) -> tuple[Solution, SolutionScore]:
        if not self._beam:
            initial = await generate(context)
            self._beam.append(BeamCandidate(solution=initial, score=await score(initial)))

        successors: list[BeamCandidate] = []
        for member in list(self._beam):
            for i in range(2):
                child = await generate(
                    replace(
                        context,
                        best_solution=member.solution,
                        temperature=self._state.temperature * (1 - i * 0.3),
                    )
                )
                successors.append(
                    BeamCandidate(
                        solution=child,
                        score=await score(child),
                        generation=member.generation + 1,
                        parent_id=member.solution.id,
                    )
                )

        merged = sorted(self._beam + successors, key=lambda c: c.score.total_score, reverse=True)
        self._beam = merged[: self.config.beam_width]

        top = self._beam[0]
        accepted = self._is_improvement(top.score.total_score)
        if accepted:
            self._improve(top.solution, top.score)
        else:
            self._state.stuck_count += 1

        return (
            _tag(
                top.solution,
                exploration_strategy="beam",
                accepted=accepted,
                temperature=self._state.temperature,
                beam_position=0,
                beam_width=len(self._beam),
                generation=top.generation,
            ),
            top.score,
        )

    async def _evolutionary(
        self, context: GeneratorContext, generate: GenerateFn, score: ScoreFn
    ) -> tuple[Solution, SolutionScore]:
        population = self._population
        if len(population) < self.config.population_size:
            candidate = await generate(context)
            result = await score(candidate)
            population.append(BeamCandidate(solution=candidate, score=result))
            accepted = self._is_improvement(result.total_score)
            if accepted:
                self._improve(candidate, result)
            else:
                self._state.stuck_count += 1
            return (
                _tag(
                    candidate,
                    exploration_strategy="evolutionary",
                    evolutionary_phase="initialization",
                    accepted=accepted,
                    generation=0,
                ),
                result,
            )

        first = self._tournament_select()
        second = self._tournament_select()
        seed = self.rng.choice([first, second])
        offspring = await generate(
            replace(
                context,
                best_solution=seed.solution,
                temperature=self.config.mutation_rate,
                previous_solutions=[first.solution, second.solution],
            )
        )
        result = await score(offspring)
        generation = max(first.generation, second.generation) + 1

        worst = min(range(len(population)), key=lambda i: population[i].score.total_score)
        replaced = result.total_score > population[worst].score.total_score
        if replaced:
            population[worst] = BeamCandidate(
                solution=offspring,
                score=result,
                generation=generation,
                parent_id=seed.solution.id,
            )

        accepted = self._is_improvement(result.total_score)
        if accepted:
            self._improve(offspring, result)
        else:
            self._state.stuck_count += 1

        return (
            _tag(
                offspring,
                exploration_strategy="evolutionary",
                evolutionary_phase="evolution",
                accepted=accepted,
                temperature=self.config.mutation_rate,
                generation=generation,
                parent_ids=[first.solution.id, second.solution.id],
                replaced_worst=replaced,
            ),
            result,
        )

    def _tournament_select(self) -> BeamCandidate:
        contenders = [self.rng.choice(self._population) for _ in range(self.config.tournament_size)]
        return max(contenders, key=lambda c: c.score.total_score)

    @property
    def stats(self) -> ExplorerStats:
        state = self._state
        worse = state.accepted_worse + state.rejected_worse
        return ExplorerStats(
            total_explorations=state.total_explorations,
            acceptance_rate=state.accepted_worse / worse if worse else 0.0,
            current_temperature=state.temperature,
            stuck_count=state.stuck_count,
            best_score=state.current_best_score,
            beam_size=len(self._beam),
            population_size=len(self._population),
        )

    def set_temperature(self, temperature: float) -> None:
        self._state.temperature = max(
            self.config.min_temperature, min(self.config.initial_temperature, temperature)
        )

    def warm_start(self, solution: Solution, score: SolutionScore) -> None:
        """Adopt a known-good solution as the best; counters are kept."""
        state = self._state
        state.current_best = solution
        state.current_best_score = score.total_score
        state.current = solution
        state.current_score = score.total_score
        state.last_improvement = state.total_explorations

        seeded = BeamCandidate(solution=solution, score=score)
        self._beam = sorted(
            self._beam + [seeded], key=lambda c: c.score.total_score, reverse=True
        )[: self.config.beam_width]

        if len(self._population) < self.config.population_size:
            self._population.append(seeded)
        else:
            worst = min(
                range(len(self._population)), key=lambda i: self._population[i].score.total_score
            )
            if score.total_score > self._population[worst].score.total_score:
                self._population[worst] = seeded
