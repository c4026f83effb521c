import asyncio
from datetime import timedelta

import pytest

from agentic_learning_engine.engine import ALEConfig, ALEEngine
from agentic_learning_engine.memory import WorkingMemory
from agentic_learning_engine.scoring import BlendedScorer
from agentic_learning_engine.types import (
    ALEPhase,
    ALEStatus,
    ExplorationStrategy,
    Solution,
    SolutionScore,
    StoppedReason,
    utcnow,
)


class ScriptedGenerator:
    """Returns solutions whose content is the next scripted score; repeats the last one."""

    def __init__(self, scores, approach=None, delay=0.0):
        self.scores = list(scores)
        self.approach = approach
        self.delay = delay
        self.contexts = []

    async def __call__(self, context):
        self.contexts.append(context)
        if self.delay:
            await asyncio.sleep(self.delay)
        value = self.scores[min(len(self.contexts), len(self.scores)) - 1]
        metadata = {"approach": self.approach} if self.approach else {}
        return Solution(content=str(value), iteration=context.iteration, metadata=metadata)


async def content_scorer(solution, context):
    value = float(solution.content)
    return SolutionScore(
        solution_id=solution.id,
        immediate_score=value,
        virtual_power_score=0.0,
        total_score=value,
        reasoning=f"scored {value}",
    )


def _config(**kwargs):
    defaults = {"task": "reverse string words", "objective": "correct output", "strategy": "greedy"}
    defaults.update(kwargs)
    return ALEConfig(**defaults)


def test_greedy_scenario_reaches_max_trials() -> None:
    engine = ALEEngine(generator=ScriptedGenerator([0.3, 0.7, 0.5]), scorer=content_scorer)
    result = asyncio.run(engine.optimize(_config(max_trials=3)))

    assert result.status is ALEStatus.COMPLETED
    assert result.stopped_reason is StoppedReason.MAX_TRIALS
    assert result.total_trials == 3
    assert result.best_score.total_score == pytest.approx(0.7)
    assert result.best_solution.content == "0.7"
    assert result.average_score == pytest.approx(0.5)
    assert result.score_improvement == pytest.approx(0.4)
    assert result.success is False
    assert [t.iteration for t in result.trials] == [0, 1, 2]
    assert all(t.solution.metadata["exploration_strategy"] == "greedy" for t in result.trials)


def test_target_reached_stops_early() -> None:
    engine = ALEEngine(generator=ScriptedGenerator([0.2, 0.96, 0.1]), scorer=content_scorer)
    result = asyncio.run(engine.optimize(_config(max_trials=10, target_score=0.95)))

    assert result.stopped_reason is StoppedReason.TARGET_REACHED
    assert result.total_trials == 2
    assert result.success is True


def test_convergence_after_flat_window() -> None:
    engine = ALEEngine(generator=ScriptedGenerator([0.5]), scorer=content_scorer)

    async def go():
        handle = engine.start(_config(max_trials=50))
        result = await handle
        return engine.get_session(handle.session_id), result

    state, result = asyncio.run(go())
    assert result.stopped_reason is StoppedReason.CONVERGED
    assert result.total_trials == 10
    assert state.progress.current_phase is ALEPhase.CONVERGING


def test_improving_run_does_not_converge_early() -> None:
    scores = [0.1 + 0.02 * i for i in range(20)]
    engine = ALEEngine(generator=ScriptedGenerator(scores), scorer=content_scorer)
    result = asyncio.run(engine.optimize(_config(max_trials=20)))
    assert result.stopped_reason is StoppedReason.MAX_TRIALS


def test_timeout_uses_max_duration() -> None:
    engine = ALEEngine(generator=ScriptedGenerator([0.1, 0.2, 0.3], delay=0.03), scorer=content_scorer)
    result = asyncio.run(engine.optimize(_config(max_trials=100, max_duration=0.05)))

    assert result.stopped_reason is StoppedReason.TIMEOUT
    assert result.status is ALEStatus.COMPLETED
    assert 1 <= result.total_trials < 100


def test_defaults_without_collaborators() -> None:
    engine = ALEEngine()
    result = asyncio.run(engine.optimize(_config(max_trials=2)))

    assert result.total_trials == 2
    assert result.best_score.total_score == 0.0
    assert result.best_score.reasoning == "No evaluation performed"
    assert result.best_solution.metadata["empty"] is True


def test_collaborator_failure_marks_session_failed() -> None:
    class Flaky(ScriptedGenerator):
        async def __call__(self, context):
            if context.iteration == 2:
                raise RuntimeError("model unavailable")
            return await super().__call__(context)

    engine = ALEEngine(generator=Flaky([0.4, 0.5]), scorer=content_scorer)
    result = asyncio.run(engine.optimize(_config(max_trials=5)))

    assert result.status is ALEStatus.FAILED
    assert result.error == "model unavailable"
    assert result.stopped_reason is None
    assert result.total_trials == 2
    assert result.best_score.total_score == pytest.approx(0.5)


def test_malformed_scorer_output_fails_session() -> None:
    async def bad_scorer(solution, context):
        return 0.9

    engine = ALEEngine(generator=ScriptedGenerator([0.4]), scorer=bad_scorer)
    result = asyncio.run(engine.optimize(_config(max_trials=3)))
    assert result.status is ALEStatus.FAILED
    assert "expected SolutionScore" in result.error


def test_pause_and_resume_continue_from_next_trial() -> None:
    engine = ALEEngine(scorer=content_scorer)
    holder = []

    async def generate(context):
        if context.iteration == 1:
            assert engine.pause(holder[0])
        return Solution(content=str(0.1 * (context.iteration + 1)), iteration=context.iteration)

    engine.set_generator(generate)

    async def go():
        handle = engine.start(_config(max_trials=4))
        holder.append(handle.session_id)
        await asyncio.sleep(0.05)
        paused = (handle.status, len(engine.get_session(handle.session_id).trials), handle.done())
        assert engine.resume(handle.session_id)
        assert not engine.resume(handle.session_id)
        return paused, await handle.result()

    paused, result = asyncio.run(go())
    assert paused == (ALEStatus.PAUSED, 2, False)
    assert result.status is ALEStatus.COMPLETED
    assert [t.iteration for t in result.trials] == [0, 1, 2, 3]


def test_stop_while_paused() -> None:
    engine = ALEEngine(generator=ScriptedGenerator([0.2]), scorer=content_scorer)

    async def go():
        handle = engine.start(_config(max_trials=10))
        assert engine.pause(handle.session_id)
        assert engine.stop(handle.session_id)
        return await handle

    result = asyncio.run(go())
    assert result.status is ALEStatus.STOPPED
    assert result.stopped_reason is StoppedReason.STOPPED
    assert result.total_trials == 0


def test_stop_cancels_in_flight_exploration() -> None:
    gate = asyncio.Event()
    cancelled = []

    async def blocked(context):
        try:
            await gate.wait()
        except asyncio.CancelledError:
            cancelled.append(context.iteration)
            raise
        return Solution(content="1.0")

    engine = ALEEngine(generator=blocked, scorer=content_scorer)

    async def go():
        handle = engine.start(_config(max_trials=5))
        await asyncio.sleep(0.02)
        assert engine.get_session(handle.session_id).status is ALEStatus.RUNNING
        assert engine.stop(handle.session_id)
        result = await handle
        return result, engine.stop(handle.session_id)

    result, second_stop = asyncio.run(go())
    assert result.status is ALEStatus.STOPPED
    assert result.stopped_reason is StoppedReason.STOPPED
    assert result.total_trials == 0
    assert cancelled == [0]
    assert second_stop is False


def test_invalid_session_operations_return_false() -> None:
    engine = ALEEngine(generator=ScriptedGenerator([0.5]), scorer=content_scorer)
    assert engine.stop("missing") is False
    assert engine.pause("missing") is False
    assert engine.resume("missing") is False

    async def go():
        handle = engine.start(_config(max_trials=1))
        not_paused = engine.resume(handle.session_id)
        await handle
        return not_paused, engine.pause(handle.session_id)

    assert asyncio.run(go()) == (False, False)


def test_callbacks_fire_and_failures_are_isolated() -> None:
    trials, insights, progress = [], [], []

    def broken(_):
        raise ValueError("listener bug")

    engine = ALEEngine(generator=ScriptedGenerator([0.9, 0.1, 0.5]), scorer=content_scorer)
    config = _config(
        max_trials=3,
        on_trial_complete=trials.append,
        on_insight_generated=insights.append,
        on_progress_update=progress.append,
    )
    result = asyncio.run(engine.optimize(config))

    assert [t.id for t in trials] == [t.id for t in result.trials]
    assert [i.id for i in insights] == [i.id for i in result.insights]
    assert [p.current_trial for p in progress] == [1, 2, 3]
    assert progress[-1].best_score == pytest.approx(0.9)

    engine = ALEEngine(generator=ScriptedGenerator([0.5]), scorer=content_scorer)
    result = asyncio.run(engine.optimize(_config(max_trials=2, on_trial_complete=broken)))
    assert result.status is ALEStatus.COMPLETED


def test_failures_feed_the_avoid_list() -> None:
    generator = ScriptedGenerator([0.05, 0.6], approach="brute_force")
    engine = ALEEngine(generator=generator, scorer=content_scorer)

    async def go():
        handle = engine.start(_config(max_trials=2))
        result = await handle
        return handle.session_id, result

    session_id, result = asyncio.run(go())
    assert generator.contexts[0].failed_strategies == []
    avoided = generator.contexts[1].failed_strategies
    assert [f.description for f in avoided] == ["brute_force"]
    assert result.trials[1].solution.metadata["avoiding_strategies"] == [avoided[0].id]
    assert engine.get_failed_strategies(session_id)[0].description == "brute_force"

    engine.clear_failed_strategies(session_id)
    assert engine.get_failed_strategies(session_id) == []


def test_working_memory_carries_failures_between_sessions() -> None:
    memory = WorkingMemory()
    engine = ALEEngine(generator=ScriptedGenerator([0.05], approach="recursion"), scorer=content_scorer, memory=memory)

    async def go():
        await engine.optimize(_config(max_trials=2))
        second = ScriptedGenerator([0.5])
        engine.set_generator(second)
        await engine.optimize(_config(max_trials=1))
        return second

    second = asyncio.run(go())
    assert len(memory) > 0
    assert "recursion" in [f.description for f in second.contexts[0].failed_strategies]


def test_concurrent_sessions_are_isolated() -> None:
    engine = ALEEngine(scorer=content_scorer)
    first_gen = ScriptedGenerator([0.2, 0.4], delay=0.001)
    second_gen = ScriptedGenerator([0.9, 0.3], delay=0.001)

    async def dispatch(context):
        generator = first_gen if context.task == "first task" else second_gen
        return await generator(context)

    engine.set_generator(dispatch)

    async def go():
        a = engine.start(_config(task="first task", max_trials=4))
        b = engine.start(_config(task="second task", max_trials=6))
        assert {s.id for s in engine.get_running()} == {a.session_id, b.session_id}
        results = await asyncio.gather(a.result(), b.result())
        return a, b, results

    a, b, (ra, rb) = asyncio.run(go())
    assert ra.total_trials == 4 and rb.total_trials == 6
    assert ra.best_score.total_score == pytest.approx(0.4)
    assert rb.best_score.total_score == pytest.approx(0.9)
    assert engine.explorer_stats(a.session_id).total_explorations == 4
    assert engine.explorer_stats(b.session_id).total_explorations == 6
    assert engine.get_running() == []
    assert len(engine.list_sessions(ALEStatus.COMPLETED)) == 2


def test_cleanup_drops_old_finished_sessions() -> None:
    engine = ALEEngine(generator=ScriptedGenerator([0.5]), scorer=content_scorer)

    async def go():
        old = engine.start(_config(max_trials=1))
        await old
        fresh = engine.start(_config(max_trials=1))
        await fresh
        return old.session_id, fresh.session_id

    old_id, fresh_id = asyncio.run(go())
    engine.get_session(old_id).completed_at = utcnow() - timedelta(days=2)

    assert engine.cleanup() == 1
    assert engine.get_session(old_id) is None
    assert engine.get_session(fresh_id) is not None


def test_explorer_overrides_apply_per_session() -> None:
    engine = ALEEngine(generator=ScriptedGenerator([0.5, 0.4]), scorer=content_scorer)

    async def go():
        handle = engine.start(_config(max_trials=2, strategy="annealing", temperature=0.5, cooling_rate=0.5))
        await handle
        return engine.explorer_stats(handle.session_id)

    stats = asyncio.run(go())
    assert stats.current_temperature == pytest.approx(0.125)
    assert engine.explorer_config.initial_temperature == 1.0


def test_quick_optimize_presets() -> None:
    engine = ALEEngine(
        generator=ScriptedGenerator([0.2, 0.99]),
        scorer=BlendedScorer(immediate_evaluator=lambda s, c: float(s.content), virtual_power_weight=0.0),
    )
    quick = asyncio.run(engine.quick_optimize("reverse string words", "correct", preset="fast"))
    assert quick.score == pytest.approx(0.99)
    assert quick.solution == "0.99"
    assert quick.insights


def test_config_validation() -> None:
    with pytest.raises(ValueError):
        _config(max_trials=0)
    with pytest.raises(ValueError):
        _config(virtual_power_weight=1.5)
    assert _config(strategy="quantum").strategy is ExplorationStrategy.GREEDY
    assert _config(strategy="BEAM").strategy is ExplorationStrategy.BEAM


def test_session_lifecycle_hooks() -> None:
    events = []

    def hooks():
        return {
            "on_session_started": lambda sid: events.append(("started", sid)),
            "on_session_improved": lambda trial: events.append(("improved", trial.score.total_score)),
            "on_session_completed": lambda result: events.append(("completed", result.status)),
            "on_session_failed": lambda result: events.append(("failed", result.error)),
            "on_session_stopped": lambda result: events.append(("stopped", result.stopped_reason)),
        }

    engine = ALEEngine(generator=ScriptedGenerator([0.3, 0.7, 0.5]), scorer=content_scorer)

    async def go():
        handle = engine.start(_config(max_trials=3, **hooks()))
        await handle
        return handle.session_id

    session_id = asyncio.run(go())
    assert events == [
        ("started", session_id),
        ("improved", 0.3),
        ("improved", 0.7),
        ("completed", ALEStatus.COMPLETED),
    ]

    events.clear()

    async def bad_scorer(solution, context):
        return 0.9

    failing = ALEEngine(generator=ScriptedGenerator([0.5]), scorer=bad_scorer)
    asyncio.run(failing.optimize(_config(max_trials=2, **hooks())))
    assert events[-1][0] == "failed"

    events.clear()
    stopping = ALEEngine(generator=ScriptedGenerator([0.5]), scorer=content_scorer)

    async def stop_early():
        handle = stopping.start(_config(max_trials=5, **hooks()))
        stopping.pause(handle.session_id)
        stopping.stop(handle.session_id)
        await handle

    asyncio.run(stop_early())
    assert events[-1] == ("stopped", StoppedReason.STOPPED)
    assert [e[0] for e in events] == ["started", "stopped"]


def test_repeated_stop_is_rejected_while_tearing_down() -> None:
    gate = asyncio.Event()

    async def blocked(context):
        await gate.wait()
        return Solution(content="1.0")

    engine = ALEEngine(generator=blocked, scorer=content_scorer)

    async def go():
        handle = engine.start(_config(max_trials=5))
        await asyncio.sleep(0.02)
        first, second = engine.stop(handle.session_id), engine.stop(handle.session_id)
        result = await handle
        return first, second, result

    first, second, result = asyncio.run(go())
    assert (first, second) == (True, False)
    assert result.stopped_reason is StoppedReason.STOPPED
