import asyncio
from types import SimpleNamespace

import pytest

from agentic_learning_engine.openai_backend import OpenAISolutionGenerator, build_prompt
from agentic_learning_engine.types import FailedStrategy, GeneratorContext, Insight, InsightType, Solution


class FakeResponses:
    def __init__(self, response):
        self.response = response
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        return self.response


def _client(response):
    return SimpleNamespace(responses=FakeResponses(response))


def _context():
    best = Solution(content="def rev(s): return s[::-1]")
    return GeneratorContext(
        task="reverse a string",
        objective="handle unicode",
        constraints=["no imports"],
        best_solution=best,
        insights=[Insight(trial_id="t", type=InsightType.SUCCESS, content="slicing works", confidence=0.9)],
        failed_strategies=[
            FailedStrategy(description="loop concat", reason="slow", task_pattern="reverse string",
                           avoidance_hint="avoid quadratic joins"),
        ],
        temperature=2.5,
        iteration=4,
    )


def test_prompt_includes_context_sections() -> None:
    prompt = build_prompt(_context())
    assert "Task:\nreverse a string" in prompt
    assert "- no imports" in prompt
    assert "Current best solution:" in prompt
    assert "slicing works" in prompt
    assert "- loop concat: avoid quadratic joins" in prompt


def test_generator_uses_output_text() -> None:
    client = _client(SimpleNamespace(output_text="def rev(s):\n    return ''.join(reversed(s))"))
    generator = OpenAISolutionGenerator(model="test-model", client=client)
    context = _context()
    solution = asyncio.run(generator(context))

    call = client.responses.calls[0]
    assert call["model"] == "test-model"
    assert call["temperature"] == 1.5
    assert solution.iteration == 4
    assert solution.parent_id == context.best_solution.id
    assert "reversed" in solution.content


def test_generator_falls_back_to_output_parts() -> None:
    part = SimpleNamespace(type="output_text", text="return s[::-1]")
    response = SimpleNamespace(output_text="", output=[SimpleNamespace(content=[part])])
    generator = OpenAISolutionGenerator(client=_client(response))
    assert asyncio.run(generator(_context())).content == "return s[::-1]"


def test_missing_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(ValueError):
        OpenAISolutionGenerator()
