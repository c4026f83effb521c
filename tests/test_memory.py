import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from agentic_learning_engine.memory import WorkingMemory, WorkingMemoryConfig
from agentic_learning_engine.memory_backend import (
    BackendAvailability,
    HttpMemoryBackend,
    LocalOnlyBackend,
    MemoryBackendError,
    resolve_backend,
)
from agentic_learning_engine.types import (
    FailedStrategy,
    Insight,
    InsightType,
    MemoryEntryType,
    Solution,
    SolutionScore,
    Trial,
    WorkingMemoryEntry,
    utcnow,
)

TASK = "parse json config files"


def _trial(i, total, approach):
    solution = Solution(content=f"solution {i}", metadata={"approach": approach})
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return Trial(
        iteration=i,
        solution=solution,
        score=SolutionScore(solution.id, total, 0.5, total, confidence=0.8, reasoning="scripted"),
        duration=0.01,
        started_at=now,
        completed_at=now,
    )


def test_round_trip_recall_by_task_pattern() -> None:
    async def go():
        memory = WorkingMemory()
        strategy = FailedStrategy(
            description="regex parsing",
            reason="breaks on nested objects",
            task_pattern=TASK,
            avoidance_hint="use a real parser",
        )
        await memory.store_failed_strategy(strategy)
        recalled = await memory.recall_failed_strategies(TASK)
        return memory, strategy, recalled

    memory, strategy, recalled = asyncio.run(go())
    assert [f.id for f in recalled] == [strategy.id]
    assert recalled[0].description == "regex parsing"
    assert recalled[0].avoidance_hint == "use a real parser"
    assert recalled[0].hit_count == 2

    entry = memory.entries[0]
    assert memory.similarity(TASK, entry) >= 0.7


def test_recall_filters_unrelated_tasks_and_types() -> None:
    async def go():
        memory = WorkingMemory()
        await memory.store_context("render charts", "render svg charts")
        await memory.store_context("json schemas help", TASK)
        unrelated = await memory.recall("render svg charts", MemoryEntryType.FAILED_STRATEGY)
        context = await memory.recall_context(TASK)
        return unrelated, context

    unrelated, context = asyncio.run(go())
    assert unrelated == []
    assert [m.entry.content for m in context] == ["json schemas help"]
    assert context[0].relevance.startswith("Matches keywords: ")


def test_recall_returns_copies() -> None:
    async def go():
        memory = WorkingMemory()
        await memory.store_context("keep me", TASK)
        match = (await memory.recall(TASK))[0]
        match.entry.content = "changed"
        return memory

    memory = asyncio.run(go())
    assert memory.entries[0].content == "keep me"


def test_eviction_prefers_stale_then_least_recently_used() -> None:
    now = utcnow()

    async def go():
        memory = WorkingMemory(WorkingMemoryConfig(max_entries=2, min_hit_count_for_retention=2))
        first = WorkingMemoryEntry(
            type=MemoryEntryType.CONTEXT, content="a", task_pattern=TASK,
            last_accessed=now - timedelta(days=2),
        )
        second = WorkingMemoryEntry(
            type=MemoryEntryType.CONTEXT, content="b", task_pattern="other words here",
            last_accessed=now - timedelta(days=1),
        )
        await memory.store(first)
        await memory.store(second)
        await memory.recall(TASK)  # touches `first`
        await memory.store(WorkingMemoryEntry(type=MemoryEntryType.CONTEXT, content="c", task_pattern="c"))
        lru = sorted(e.content for e in memory.entries)

        stale = WorkingMemoryEntry(
            type=MemoryEntryType.CONTEXT, content="stale", task_pattern="x",
            created_at=now - timedelta(days=30),
        )
        memory.clear()
        await memory.store(stale)
        await memory.store(WorkingMemoryEntry(type=MemoryEntryType.CONTEXT, content="d", task_pattern="d"))
        await memory.store(WorkingMemoryEntry(type=MemoryEntryType.CONTEXT, content="e", task_pattern="e"))
        return lru, sorted(e.content for e in memory.entries)

    lru, aged = asyncio.run(go())
    assert lru == ["a", "c"]
    assert aged == ["d", "e"]


def test_learn_from_trials_counts() -> None:
    insights = [
        Insight(trial_id="t", type=InsightType.PATTERN, content="memoize lookups", confidence=0.9),
        Insight(trial_id="t", type=InsightType.OBSERVATION, content="noise", confidence=0.3),
    ]
    trials = [_trial(0, 0.1, "regex"), _trial(1, 0.5, "split"), _trial(2, 0.9, "json_module")]

    async def go():
        memory = WorkingMemory()
        summary = await memory.learn_from_trials(trials, insights, "Parse JSON config files")
        recalled = await memory.recall_all(TASK)
        context = await memory.build_context_string(TASK)
        return memory, summary, recalled, context

    memory, summary, recalled, context = asyncio.run(go())
    assert (summary.failed_strategies_stored, summary.success_patterns_stored, summary.insights_stored) == (1, 1, 1)
    assert memory.stats().by_type == {"failed_strategy": 1, "success_pattern": 1, "insight": 1}
    assert [f.description for f in recalled.failed_strategies] == ["regex"]
    assert recalled.success_patterns[0].entry.metadata["approach"] == "json_module"
    assert [i.content for i in recalled.insights] == ["memoize lookups"]
    assert "### Avoid These Approaches:" in context
    assert "- json_module: Score 0.9" in context


class BrokenBackend:
    def __init__(self):
        self.stores = 0

    async def probe(self):
        return True

    async def store(self, entry):
        self.stores += 1
        raise MemoryBackendError("service down")

    async def search(self, query, entry_type=None):
        raise MemoryBackendError("service down")


def test_backend_failures_never_reach_caller() -> None:
    backend = BrokenBackend()

    async def go():
        memory = WorkingMemory(backend=backend, availability=BackendAvailability.AVAILABLE)
        await memory.store_context("local copy survives", TASK)
        return await memory.recall(TASK)

    matches = asyncio.run(go())
    assert backend.stores == 1
    assert [m.entry.content for m in matches] == ["local copy survives"]


def test_resolve_backend_degrades_to_local() -> None:
    class Unreachable(BrokenBackend):
        async def probe(self):
            raise ConnectionError("refused")

    async def go():
        return (
            await resolve_backend(None),
            await resolve_backend(Unreachable()),
            await resolve_backend(BrokenBackend()),
        )

    disabled, unavailable, available = asyncio.run(go())
    assert disabled[1] is BackendAvailability.DISABLED
    assert isinstance(unavailable[0], LocalOnlyBackend)
    assert unavailable[1] is BackendAvailability.UNAVAILABLE
    assert available[1] is BackendAvailability.AVAILABLE


def test_connect_without_service_url_is_local(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ALE_MEMORY_SERVICE_URL", raising=False)
    memory = asyncio.run(WorkingMemory.connect())
    assert memory.availability is BackendAvailability.DISABLED


def _memory_service():
    stored = []

    async def health(request):
        return web.json_response({"ok": True})

    async def store(request):
        stored.append(await request.json())
        return web.json_response({"id": "remote-1"})

    async def search(request):
        results = [
            {
                "id": "remote-1",
                "content": "Failed: xml parsing. Reason: slow",
                "score": 0.95,
                "metadata": {
                    "ale_working_memory": True,
                    "type": "failed_strategy",
                    "task_pattern": request.query["q"],
                    "description": "xml parsing",
                    "reason": "slow",
                },
            },
            {"id": "foreign", "content": "not ours", "metadata": {"type": "failed_strategy"}},
            "garbage",
        ]
        return web.json_response({"results": results})

    app = web.Application()
    app.router.add_get("/health", health)
    app.router.add_post("/api/memory/store", store)
    app.router.add_get("/api/memory/search", search)
    return app, stored


def test_http_backend_against_service() -> None:
    app, stored = _memory_service()

    async def go():
        async with TestServer(app) as server:
            url = str(server.make_url("/"))
            memory = await WorkingMemory.connect(service_url=url)
            await memory.store_context("json is fine", TASK)
            recalled = await memory.recall_failed_strategies(TASK)
            return memory.availability, recalled

    availability, recalled = asyncio.run(go())
    assert availability is BackendAvailability.AVAILABLE
    assert stored[0]["metadata"]["ale_working_memory"] is True
    assert stored[0]["userId"] == "ale_engine"
    assert [f.description for f in recalled] == ["xml parsing"]
    assert recalled[0].id == "remote-1"


def test_http_backend_maps_errors() -> None:
    async def boom(request):
        return web.Response(status=500, text="boom")

    app = web.Application()
    app.router.add_get("/health", boom)
    app.router.add_get("/api/memory/search", boom)

    async def go():
        async with TestServer(app) as server:
            backend = HttpMemoryBackend(base_url=str(server.make_url("/")))
            healthy = await backend.probe()
            with pytest.raises(MemoryBackendError):
                await backend.search(TASK)
            return healthy

    assert asyncio.run(go()) is False


def test_http_backend_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ALE_MEMORY_SERVICE_URL", "http://memory.internal:4005")
    backend = HttpMemoryBackend.from_env()
    assert backend is not None and backend.base_url == "http://memory.internal:4005"


def _mirroring_service():
    """Service that returns stored payloads from search under its own ids."""
    stored = []

    async def health(request):
        return web.json_response({"ok": True})

    async def store(request):
        stored.append(await request.json())
        return web.json_response({"id": f"svc-{len(stored)}"})

    async def search(request):
        results = [
            {"id": f"svc-{i}", "content": p["content"], "score": 0.99, "metadata": p["metadata"]}
            for i, p in enumerate(stored, start=1)
        ]
        return web.json_response({"results": results})

    app = web.Application()
    app.router.add_get("/health", health)
    app.router.add_post("/api/memory/store", store)
    app.router.add_get("/api/memory/search", search)
    return app, stored


def test_remote_copy_of_local_entry_is_not_recalled_twice() -> None:
    app, stored = _mirroring_service()

    async def go():
        async with TestServer(app) as server:
            memory = await WorkingMemory.connect(service_url=str(server.make_url("/")))
            await memory.store_context("json schemas help", TASK)
            await memory.store_failed_strategy(
                FailedStrategy(description="regex parsing", reason="nested", task_pattern=TASK, avoidance_hint="parser")
            )
            context = await memory.recall_context(TASK)
            failed = await memory.recall_failed_strategies(TASK)
            return memory, context, failed

    memory, context, failed = asyncio.run(go())
    local_ids = {e.id for e in memory.entries}
    assert [m.entry.content for m in context] == ["json schemas help"]
    assert context[0].entry.id in local_ids
    assert [f.description for f in failed] == ["regex parsing"]
    assert all(p["metadata"]["ale_id"] in local_ids for p in stored)


def test_recalled_metadata_is_a_copy() -> None:
    async def go():
        memory = WorkingMemory()
        await memory.store_context("keep me", TASK, {"source": "docs"})
        match = (await memory.recall(TASK))[0]
        match.entry.metadata["source"] = "changed"
        memory.entries[0].metadata["source"] = "changed again"
        return memory

    memory = asyncio.run(go())
    assert memory.entries[0].metadata == {"source": "docs"}
