"""Tests for junkrat.runner.autonomous module."""

import asyncio
import json
import logging

import pytest

from junkrat.events import EventBus
from junkrat.lib.config import ExecutionSettings
from junkrat.lib.errors import APIError
from junkrat.pm.generator import PlanGenerationError
from junkrat.runner.autonomous import (
    NO_MARKER_ISSUE,
    AutonomousExecutor,
    detect_completion,
    detect_failure,
    next_incomplete_task,
    parse_confidence,
    validate_plan_tasks,
)
from junkrat.runner.context import RunContext

from fakes import FakeProvider, block_forever, make_dispatcher, make_plan

CONFIDENCE = "You are an autonomous coding agent assessing"
EXECUTION = "You are in autonomous execution mode"

DONE = "Implemented it.\n<promise>TASK_COMPLETE</promise>"


def agent(confidence="Confidence: 90\nReasoning: Clear goal", execution=DONE):
    """Answer confidence and execution prompts; either answer may be a callable."""
    def respond(request):
        system = request.messages[0]["content"]
        answer = confidence if system.startswith(CONFIDENCE) else execution
        return answer(request) if callable(answer) else answer
    return respond


def sequence(*answers):
    """Callable answer that walks through `answers`, repeating the last."""
    remaining = list(answers)

    def answer(request):
        return remaining.pop(0) if len(remaining) > 1 else remaining[0]
    return answer


def _executor(provider, prompts, events=None, **settings) -> AutonomousExecutor:
    values = {"max_iterations": 20, "pause_poll_interval": 0.01}
    values.update(settings)
    return AutonomousExecutor(
        make_dispatcher(provider),
        prompts,
        events=events,
        settings=ExecutionSettings(**values),
    )


def _execution_requests(provider) -> list:
    return [r for r in provider.requests if r.messages[0]["content"].startswith(EXECUTION)]


class TestHelpers:
    """Tests for the loop's parsing helpers."""

    def test_parse_confidence(self):
        confidence = parse_confidence("task-001", "Confidence: 85\nReasoning: The goal is clear.")
        assert confidence.score == 85
        assert confidence.reasoning == "The goal is clear."

    def test_parse_confidence_default(self):
        confidence = parse_confidence("task-001", "I think I can do it")
        assert confidence.score == 50
        assert confidence.reasoning is None

    def test_parse_confidence_clamped(self):
        assert parse_confidence("task-001", "confidence: 250").score == 100

    def test_detect_completion(self):
        assert detect_completion("ok <promise>DONE</promise>")
        assert detect_completion("<promise>TASK_VERIFIED</promise>")
        assert not detect_completion("TASK_COMPLETE without tags")

    def test_detect_failure(self):
        assert detect_failure("nope <promise>BLOCKED</promise>") == "<promise>BLOCKED</promise>"
        assert detect_failure("all good") is None

    def test_next_incomplete_task(self):
        plan = make_plan(2, 2)
        plan.phases[0].tasks[0].status = "completed"
        phase, task = next_incomplete_task(plan)
        assert (phase.id, task.id) == ("phase-001", "task-002")

        for _, t in plan.iter_tasks():
            t.status = "completed"
        assert next_incomplete_task(plan) is None

    def test_validate_plan_tasks(self):
        plan = make_plan(1, 2)
        assert validate_plan_tasks(plan) == []
        plan.phases[0].tasks[1].goal = "  "
        issues = validate_plan_tasks(plan)
        assert [(i.task_id, i.issue) for i in issues] == [("task-002", "Task has no goal defined")]


class TestRun:
    """Tests for complete autonomous runs."""

    pytestmark = pytest.mark.anyio

    async def test_completes_all_tasks(self, prompts):
        provider = FakeProvider(responses=[agent()])
        executor = _executor(provider, prompts)
        plan = make_plan(3, 2)

        outcome = await executor.start("Build the todo app", plan=plan)

        assert outcome.success
        assert outcome.status == "completed"
        assert (outcome.completed_tasks, outcome.total_tasks) == (6, 6)
        assert outcome.iterations == 7
        assert all(p.status == "completed" for p in plan.phases)
        assert executor.combo_multiplier == 1.6
        assert executor.achievements == ["perfectionist"]
        assert not executor.running
        assert executor.status().status == "completed"

    async def test_last_task_on_final_iteration_counts_as_completed(self, prompts):
        executor = _executor(FakeProvider(responses=[agent()]), prompts)
        outcome = await executor.start("Build it", max_iterations=2, plan=make_plan(1, 2))
        assert outcome.status == "completed"
        assert outcome.iterations == 2

    async def test_max_iterations(self, prompts):
        executor = _executor(FakeProvider(responses=[agent()]), prompts)
        outcome = await executor.start("Build it", max_iterations=3, plan=make_plan(3, 2))
        assert not outcome.success
        assert outcome.status == "max_iterations"
        assert outcome.completed_tasks == 3

    async def test_execution_prompt_contents(self, prompts):
        provider = FakeProvider(responses=[agent()])
        executor = _executor(provider, prompts)
        await executor.start("Build it", plan=make_plan(1, 1))

        user_prompt = _execution_requests(provider)[0].messages[1]["content"]
        assert "Phase: Phase 1" in user_prompt
        assert "Task: Task 1.1" in user_prompt
        assert "Acceptance Criteria:\n- Tests pass" in user_prompt
        assert "Previous attempts" not in user_prompt

    async def test_combo_caps_and_speed_demon(self, prompts):
        executor = _executor(FakeProvider(responses=[agent()]), prompts)
        outcome = await executor.start("Build it", plan=make_plan(4, 3))
        assert outcome.completed_tasks == 12
        assert executor.combo_multiplier == 2.0
        assert executor.achievements == ["perfectionist", "speed_demon"]


class TestConfidence:
    """Tests for the confidence gate."""

    pytestmark = pytest.mark.anyio

    async def test_low_confidence_skips(self, prompts):
        provider = FakeProvider(responses=[agent(confidence="Confidence: 10\nReasoning: Vague")])
        executor = _executor(provider, prompts)
        plan = make_plan(1, 1)

        outcome = await executor.start("Build it", max_iterations=3, plan=plan)

        assert outcome.status == "max_iterations"
        assert _execution_requests(provider) == []
        assert [r.status for r in executor.ctx.iterations] == ["skipped"] * 3
        assert plan.phases[0].tasks[0].status == "pending"

    async def test_confidence_failure_uses_default(self, prompts):
        """A provider error on the confidence call scores 50 and the task runs."""
        provider = FakeProvider(responses=[agent(confidence=APIError("overloaded", "ollama"))])
        executor = _executor(provider, prompts)
        outcome = await executor.start("Build it", plan=make_plan(1, 1))
        assert outcome.status == "completed"

    async def test_threshold_is_configurable(self, prompts):
        provider = FakeProvider(responses=[agent(confidence="Confidence: 60")])
        executor = _executor(provider, prompts, confidence_threshold=70)
        outcome = await executor.start("Build it", max_iterations=2, plan=make_plan(1, 1))
        assert outcome.completed_tasks == 0


class TestSelfCorrection:
    """Tests for verification, the failure journal and combo resets."""

    pytestmark = pytest.mark.anyio

    async def test_failure_marker_journaled_and_fed_back(self, prompts):
        provider = FakeProvider(responses=[agent(execution=sequence(
            "Missing dependency.\n<promise>FAILED</promise>",
            DONE,
        ))])
        executor = _executor(provider, prompts)

        outcome = await executor.start("Build it", plan=make_plan(1, 1))

        assert outcome.status == "completed"
        assert outcome.iterations == 3
        entry = executor.journal.get("task-001")
        assert len(entry.attempts) == 1
        assert entry.attempts[0].iteration == 1
        assert entry.attempts[0].error == "Task reported <promise>FAILED</promise>"

        retry_prompt = _execution_requests(provider)[1].messages[1]["content"]
        assert "Previous attempts that failed:" in retry_prompt
        assert "Attempt 1 (Iteration 1):" in retry_prompt
        assert "Learn from these failures and try a different approach." in retry_prompt

    async def test_failure_resets_combo(self, prompts):
        provider = FakeProvider(responses=[agent(execution=sequence(DONE, DONE, "<promise>BLOCKED</promise>", DONE))])
        executor = _executor(provider, prompts)
        await executor.start("Build it", max_iterations=3, plan=make_plan(1, 3))
        assert executor.consecutive_successes == 0
        assert executor.combo_multiplier == 1.0

    async def test_resilient_after_three_failures(self, prompts):
        failed = "<promise>FAILED</promise>"
        provider = FakeProvider(responses=[agent(execution=sequence(failed, failed, failed, DONE))])
        executor = _executor(provider, prompts)
        outcome = await executor.start("Build it", plan=make_plan(1, 1))
        assert outcome.status == "completed"
        assert "resilient" in executor.achievements
        assert executor.journal.total_failures() == 3

    async def test_lenient_accepts_missing_marker(self, prompts):
        provider = FakeProvider(responses=[agent(execution="Implemented the endpoint.")])
        executor = _executor(provider, prompts)
        outcome = await executor.start("Build it", plan=make_plan(1, 1))
        assert outcome.status == "completed"

    async def test_strict_requires_marker(self, prompts):
        provider = FakeProvider(responses=[agent(execution="Implemented the endpoint.")])
        executor = _executor(provider, prompts, verification="strict")
        outcome = await executor.start("Build it", max_iterations=2, plan=make_plan(1, 1))
        assert outcome.status == "max_iterations"
        assert executor.journal.get("task-001").attempts[0].error == NO_MARKER_ISSUE

    async def test_execution_error_journaled(self, prompts):
        provider = FakeProvider(responses=[agent(execution=sequence(APIError("bad gateway", "ollama", 502), DONE))])
        executor = _executor(provider, prompts)
        outcome = await executor.start("Build it", plan=make_plan(1, 1))
        assert outcome.status == "completed"
        assert "bad gateway" in executor.journal.get("task-001").attempts[0].error
        assert [r.success for r in executor.history] == [False, True]


class TestPlanSource:
    """Tests for runs that start without a plan."""

    pytestmark = pytest.mark.anyio

    async def test_plan_from_source(self, prompts):
        requested = []

        async def source(prompt):
            requested.append(prompt)
            return make_plan(1, 1)

        executor = AutonomousExecutor(make_dispatcher(FakeProvider(responses=[agent()])), prompts, plan_source=source)
        outcome = await executor.start("Build a todo app")
        assert outcome.status == "completed"
        assert requested == ["Build a todo app"]

    async def test_plan_source_failure_retried(self, prompts):
        attempts = []

        async def source(prompt):
            attempts.append(prompt)
            if len(attempts) == 1:
                raise PlanGenerationError("not json")
            return make_plan(1, 1)

        executor = AutonomousExecutor(make_dispatcher(FakeProvider(responses=[agent()])), prompts, plan_source=source)
        outcome = await executor.start("Build it")
        assert outcome.status == "completed"
        assert executor.ctx.iterations[0].status == "planning"
        assert len(attempts) == 2

    async def test_plan_source_never_delivers(self, prompts):
        async def source(prompt):
            return None

        executor = AutonomousExecutor(
            make_dispatcher(FakeProvider(responses=[agent()])), prompts, plan_source=source,
        )
        outcome = await executor.start("Build it", max_iterations=2)
        assert outcome.status == "max_iterations"
        assert (outcome.completed_tasks, outcome.total_tasks) == (0, 0)

    async def test_invalid_plan_is_refined(self, prompts):
        plan = make_plan(1, 1)
        plan.phases[0].tasks[0].goal = ""
        executor = _executor(FakeProvider(responses=[agent()]), prompts)
        outcome = await executor.start("Build it", max_iterations=2, plan=plan)
        assert outcome.status == "max_iterations"
        assert [r.status for r in executor.ctx.iterations] == ["refining", "refining"]

    async def test_unexpected_error_reported(self, prompts):
        async def source(prompt):
            raise RuntimeError("source exploded")

        events = EventBus()
        completions = []
        events.on_completion(completions.append)
        executor = AutonomousExecutor(
            make_dispatcher(FakeProvider(responses=[agent()])), prompts, plan_source=source, events=events,
        )
        outcome = await executor.start("Build it")
        assert outcome.status == "error"
        assert outcome.error == "source exploded"
        assert completions[0].status == "error"
        assert not completions[0].success


class TestControl:
    """Tests for start/stop/pause/resume."""

    pytestmark = pytest.mark.anyio

    async def test_needs_plan_or_source(self, prompts):
        executor = _executor(FakeProvider(), prompts)
        with pytest.raises(ValueError):
            await executor.start("Build it")

    async def test_stop_cancels_in_flight_request(self, prompts):
        provider = FakeProvider(responses=[agent(execution=block_forever)])
        executor = _executor(provider, prompts)
        run = asyncio.ensure_future(executor.start("Build it", plan=make_plan(1, 1)))

        while not _execution_requests(provider):
            await asyncio.sleep(0.01)
        assert executor.running
        with pytest.raises(RuntimeError):
            await executor.start("Again", plan=make_plan(1, 1))

        executor.stop()
        outcome = await asyncio.wait_for(run, timeout=5)
        assert outcome.status == "stopped"
        assert not outcome.success
        assert not executor.running

    async def test_pause_and_resume(self, prompts, caplog):
        caplog.set_level(logging.INFO, logger="junkrat")
        executor = _executor(FakeProvider(responses=[agent()]), prompts)
        seen = []

        def resume():
            seen.append(executor.status().status)
            executor.resume()

        def on_progress(event):
            if event.iteration == 1:
                executor.pause()
                asyncio.get_running_loop().call_later(0.05, resume)

        executor.events.on_progress(on_progress)
        outcome = await executor.start("Build it", plan=make_plan(1, 2))

        assert outcome.status == "completed"
        assert seen == ["paused"]
        assert "Execution paused, waiting..." in caplog.text

    async def test_stop_while_paused(self, prompts):
        executor = _executor(FakeProvider(responses=[agent()]), prompts)

        def on_progress(event):
            if event.iteration == 1:
                executor.pause()
                asyncio.get_running_loop().call_later(0.05, executor.stop)

        executor.events.on_progress(on_progress)
        outcome = await executor.start("Build it", plan=make_plan(1, 2))
        assert outcome.status == "stopped"
        assert outcome.completed_tasks == 1


class TestReporting:
    """Tests for events and the run directory."""

    pytestmark = pytest.mark.anyio

    async def test_progress_and_completion_events(self, prompts):
        events = EventBus()
        progress, completions = [], []
        events.on_progress(progress.append)
        events.on_completion(completions.append)
        executor = _executor(FakeProvider(responses=[agent()]), prompts, events=events)

        await executor.start("Build it", plan=make_plan(1, 2))

        assert [(p.iteration, p.completed_tasks) for p in progress[:2]] == [(1, 1), (2, 2)]
        assert progress[0].status == "running"
        assert progress[-1].status == "completed"
        assert len(completions) == 1
        assert completions[0].success
        assert completions[0].iterations == 3

    async def test_run_directory(self, prompts, tmp_path):
        ctx = RunContext.create(tmp_path, "todo")
        executor = AutonomousExecutor(
            make_dispatcher(FakeProvider(responses=[agent()])),
            prompts,
            settings=ExecutionSettings(),
            run_context=ctx,
        )
        await executor.start("Build it", plan=make_plan(1, 1))

        assert ctx.run_dir.parent == tmp_path / "runs"
        assert ctx.run_id.endswith("_todo")
        assert "Executing task: Task 1.1" in (ctx.run_dir / "run.log").read_text()

        result = json.loads((ctx.run_dir / "result.json").read_text())
        assert result["status"] == "completed"
        assert result["success"] is True
        assert result["tasks"] == {"completed": 1, "total": 1}
        assert result["iterations"][0] == {
            "iteration": 1, "status": "completed", "task_id": "task-001", "notes": "",
        }
        assert "error" not in result
