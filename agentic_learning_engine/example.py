from __future__ import annotations

import argparse
import asyncio
import logging
import os
import random
from dataclasses import dataclass

from .engine import ALEConfig, ALEEngine
from .memory import WorkingMemory
from .openai_backend import OpenAISolutionGenerator
from .scoring import BlendedScorer
from .types import GeneratorContext, ScorerContext, Solution

REQUIREMENTS = ("validate", "retry", "cache", "log", "test")

SNIPPETS = {
    "validate": "def validate(payload):\n    if not payload:\n        raise ValueError('empty payload')",
    "retry": "def retry(fn, attempts=3):\n    for _ in range(attempts):\n        try:\n            return fn()\n        except IOError:\n            continue",
    "cache": "class Cache:\n    def get(self, key): ...",
    "log": "logger = logging.getLogger(__name__)",
    "test": "def test_fetch(): assert fetch('x')",
}


@dataclass
class ToyGenerator:
    """
    Generator that stitches snippets together and keeps whatever the best
    solution already covered, so the session improves over trials.
    """

    seed: int = 7

    def __post_init__(self) -> None:
        self.rng = random.Random(self.seed)

    async def __call__(self, context: GeneratorContext) -> Solution:
        covered = set()
        if context.best_solution is not None:
            covered = {r for r in REQUIREMENTS if r in context.best_solution.content}
        missing = [r for r in REQUIREMENTS if r not in covered]
        picks = set(covered)
        if missing and self.rng.random() < 0.6 + 0.3 * min(1.0, context.temperature):
            picks.add(self.rng.choice(missing))
        if picks and self.rng.random() < 0.15:
            picks.discard(self.rng.choice(sorted(picks)))
        body = "\n\n".join(SNIPPETS[r] for r in REQUIREMENTS if r in picks) or "pass"
        return Solution(
            content=body,
            code=body,
            iteration=context.iteration,
            metadata={"approach": "incremental" if covered else "scratch"},
        )


def coverage_evaluator(solution: Solution, context: ScorerContext) -> float:
    text = solution.content.lower()
    return sum(1 for r in REQUIREMENTS if r in text) / len(REQUIREMENTS)


def _print_result(result) -> None:
    print(
        f"status={result.status.value} reason={result.stopped_reason.value if result.stopped_reason else '-'} "
        f"trials={result.total_trials} best={result.best_score.total_score:.3f} "
        f"improvement={result.score_improvement:+.3f}"
    )
    for insight in result.insights[-5:]:
        print(f"  [{insight.type.value}] {insight.content}")
    print("\nBest solution:\n" + result.best_solution.content)


async def run_demo(strategy: str, max_trials: int) -> None:
    memory = await WorkingMemory.connect()
    engine = ALEEngine(
        generator=ToyGenerator(seed=12),
        scorer=BlendedScorer(immediate_evaluator=coverage_evaluator),
        memory=memory,
    )
    config = ALEConfig(
        task="Write a resilient HTTP fetch helper",
        objective="Cover validation, retries, caching, logging and tests",
        max_trials=max_trials,
        target_score=0.9,
        strategy=strategy,
        seed=3,
        on_progress_update=lambda p: logging.getLogger(__name__).debug(
            "trial %d/%d best=%.3f", p.current_trial, p.total_trials, p.best_score
        ),
    )
    _print_result(await engine.optimize(config))

    stats = memory.stats()
    print(f"\nWorking memory: {stats.total_entries} entries {stats.by_type}")


async def run_openai_demo(model: str, max_trials: int) -> None:
    if not os.getenv("OPENAI_API_KEY"):
        raise RuntimeError("Set OPENAI_API_KEY before running the OpenAI demo.")

    engine = ALEEngine(
        generator=OpenAISolutionGenerator(model=model),
        scorer=BlendedScorer(immediate_evaluator=coverage_evaluator),
        memory=await WorkingMemory.connect(),
    )
    config = ALEConfig(
        task="Write a resilient HTTP fetch helper in Python",
        objective="Cover validation, retries, caching, logging and tests",
        max_trials=max_trials,
        strategy="greedy",
    )
    _print_result(await engine.optimize(config))


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Agentic Learning Engine demo")
    parser.add_argument(
        "--backend",
        choices=["toy", "openai"],
        default="toy",
        help="Generator to use for demo.",
    )
    parser.add_argument(
        "--model",
        default="gpt-5.2",
        help="Model used when --backend openai.",
    )
    parser.add_argument("--strategy", default="hybrid", help="Exploration strategy.")
    parser.add_argument("--trials", type=int, default=30, help="Maximum number of trials.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.backend == "openai":
        asyncio.run(run_openai_demo(model=args.model, max_trials=min(args.trials, 5)))
    else:
        asyncio.run(run_demo(strategy=args.strategy, max_trials=args.trials))
