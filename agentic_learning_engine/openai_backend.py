from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

from openai import AsyncOpenAI

from .insights import InsightsGenerator
from .types import GeneratorContext, Solution

logger = logging.getLogger(__name__)


def _extract_response_text(response: Any) -> str:
    text = getattr(response, "output_text", None)
    if isinstance(text, str) and text.strip():
        return text

    out = []
    output = getattr(response, "output", None) or []
    for item in output:
        content = getattr(item, "content", None) or []
        for part in content:
            if getattr(part, "type", "") == "output_text":
                value = getattr(part, "text", "")
                if value:
                    out.append(value)

    return "\n".join(out).strip()


def build_prompt(context: GeneratorContext) -> str:
    blocks: list[str] = ["Task:\n" + context.task.strip(), "Objective:\n" + context.objective.strip()]
    if context.constraints:
        blocks.append("Constraints:\n" + "\n".join(f"- {c}" for c in context.constraints))
    if context.best_solution is not None:
        blocks.append("Current best solution:\n" + context.best_solution.content.strip())
    if context.insights:
        blocks.append("Lessons so far:\n" + InsightsGenerator.summarize_insights(context.insights))
    if context.failed_strategies:
        blocks.append(
            "Approaches that failed before (avoid them):\n"
            + "\n".join(f"- {f.description}: {f.avoidance_hint}" for f in context.failed_strategies)
        )
    blocks.append("Respond with a single improved solution and nothing else.")
    return "\n\n".join(blocks)


@dataclass(slots=True)
class OpenAISolutionGenerator:
    """
    Solution generator backed by the OpenAI Responses API.

    Set OPENAI_API_KEY in your environment, or pass api_key / client.
    The exploration temperature is forwarded as the sampling temperature.
    """

    model: str = "gpt-5.2"
    api_key: str | None = None
    client: Any = None
    max_temperature: float = 1.5

    def __post_init__(self) -> None:
        if self.client is not None:
            return
        key = self.api_key or os.getenv("OPENAI_API_KEY")
        if not key:
            raise ValueError("OPENAI_API_KEY is not set.")
        self.client = AsyncOpenAI(api_key=key)

    async def __call__(self, context: GeneratorContext) -> Solution:
        response = await self.client.responses.create(
            model=self.model,
            input=build_prompt(context),
            temperature=min(max(context.temperature, 0.0), self.max_temperature),
        )
        text = _extract_response_text(response)
        if not text:
            logger.warning("Empty response from %s at iteration %d", self.model, context.iteration)
        return Solution(
            content=text,
            iteration=context.iteration,
            parent_id=context.best_solution.id if context.best_solution else None,
            metadata={"model": self.model},
        )
