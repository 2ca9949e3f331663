"""Autonomous execution loop.

Works through a phase plan one task per iteration until every task is
completed, the run is stopped, or the iteration budget runs out.

Per iteration:
1. Get a plan (from the plan source) if there isn't one yet.
2. Check every task has a title and a goal; refine the plan if not.
3. Pick the first task, in phase then task order, that isn't completed.
4. Ask for a confidence score; below the threshold the task is skipped for
   this iteration.
5. Execute the task prompt (task, phase, acceptance criteria, earlier
   failures) and verify the response.
6. On success mark the task completed (phase status rolls up) and grow the
   combo; on failure journal the attempt and reset the combo.

Pausing is cooperative: the flag is polled between iterations, never in the
middle of a task. Stopping also cancels any in-flight provider request.
Errors raised while iterating end the run with status "error" reported via
the completion event; setup errors propagate to the caller.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from junkrat.events import CompletionEvent, EventBus, ProgressEvent
from junkrat.lib.config import ExecutionSettings
from junkrat.lib.constants import (
    COMBO_MAX,
    COMBO_STEP,
    COMPLETION_MARKERS,
    DEFAULT_CONFIDENCE,
    FAILURE_MARKERS,
)
from junkrat.lib.errors import AIError, CancellationError
from junkrat.lib.journal import FailureJournal, format_failure_history
from junkrat.lib.prompts import PromptEngine, PromptRole, build_section
from junkrat.lib.retry import CancelToken
from junkrat.lib.types import now_ms
from junkrat.pm.generator import PlanGenerationError
from junkrat.pm.models import Phase, PhasePlan, PhaseTask
from junkrat.pm.phases import PhaseManager
from junkrat.providers.base import ChatRequest
from junkrat.providers.dispatch import ProviderDispatcher
from junkrat.runner.context import RunContext

logger = logging.getLogger(__name__)

__all__ = [
    "AutonomousExecutor",
    "RunOutcome",
    "TaskConfidence",
    "TaskExecutionResult",
    "VerificationResult",
    "PlanIssue",
    "ACHIEVEMENTS",
    "parse_confidence",
    "detect_completion",
    "detect_failure",
    "next_incomplete_task",
    "validate_plan_tasks",
]

PlanSource = Callable[[str], Awaitable[PhasePlan | None]]

_CONFIDENCE_PATTERN = re.compile(r'Confidence:\s*(\d+)', re.IGNORECASE)
_REASONING_PATTERN = re.compile(r'Reasoning:\s*(.+)', re.IGNORECASE)

ACHIEVEMENTS = {
    "speed_demon": "Speed Demon",
    "perfectionist": "Perfectionist",
    "resilient": "Resilient",
    "marathon": "Marathon Runner",
}

NO_MARKER_ISSUE = "No completion marker found"


@dataclass(frozen=True)
class TaskConfidence:
    task_id: str
    score: int  # 0-100
    reasoning: str | None = None


@dataclass(frozen=True)
class TaskExecutionResult:
    task_id: str
    success: bool
    output: str | None = None
    error: str | None = None
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class VerificationResult:
    task_id: str
    success: bool
    issues: tuple[str, ...] = ()


@dataclass(frozen=True)
class PlanIssue:
    phase_id: str
    task_id: str
    issue: str


@dataclass(frozen=True)
class RunOutcome:
    success: bool
    status: str  # completed, stopped, max_iterations, error
    iterations: int
    completed_tasks: int
    total_tasks: int
    error: str | None = None


def parse_confidence(task_id: str, text: str) -> TaskConfidence:
    """Read "Confidence: N" / "Reasoning: ..." from a response, clamped to 0-100."""
    score_match = _CONFIDENCE_PATTERN.search(text)
    reasoning_match = _REASONING_PATTERN.search(text)
    score = int(score_match.group(1)) if score_match else DEFAULT_CONFIDENCE
    return TaskConfidence(
        task_id=task_id,
        score=min(100, max(0, score)),
        reasoning=reasoning_match.group(1).strip() if reasoning_match else None,
    )


def detect_completion(output: str) -> bool:
    return any(marker in output for marker in COMPLETION_MARKERS)


def detect_failure(output: str) -> str | None:
    return next((marker for marker in FAILURE_MARKERS if marker in output), None)


def next_incomplete_task(plan: PhasePlan) -> tuple[Phase, PhaseTask] | None:
    return next(((p, t) for p, t in plan.iter_tasks() if t.status != "completed"), None)


def validate_plan_tasks(plan: PhasePlan) -> list[PlanIssue]:
    """Every task needs a non-blank title and goal."""
    issues = []
    for phase, task in plan.iter_tasks():
        if not task.title.strip():
            issues.append(PlanIssue(phase.id, task.id, "Task has no title"))
        if not task.goal.strip():
            issues.append(PlanIssue(phase.id, task.id, "Task has no goal defined"))
    return issues


class AutonomousExecutor:
    """Self-correcting task loop over a phase plan."""

    def __init__(
        self,
        dispatcher: ProviderDispatcher,
        prompt_engine: PromptEngine,
        plan_source: PlanSource | None = None,
        events: EventBus | None = None,
        settings: ExecutionSettings | None = None,
        run_context: RunContext | None = None,
        provider_id: str | None = None,
    ):
        self.dispatcher = dispatcher
        self.prompt_engine = prompt_engine
        self.plan_source = plan_source
        self.events = events or EventBus()
        self.settings = settings or ExecutionSettings()
        self.ctx = run_context or RunContext(run_id="in-memory")
        self.provider_id = provider_id

        self.plan: PhasePlan | None = None
        self.journal = FailureJournal()
        self.iteration = 0
        self.max_iterations = self.settings.max_iterations
        self.combo_multiplier = 1.0
        self.consecutive_successes = 0
        self.achievements: list[str] = []
        self.history: list[TaskExecutionResult] = []

        self._running = False
        self._paused = False
        self._cancel_token: CancelToken | None = None
        self._last_status = "idle"
        self._current_task: str | None = None

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    @property
    def paused(self) -> bool:
        return self._paused

    def stop(self) -> None:
        self.ctx.log("Stopping autonomous execution")
        self._running = False
        self._paused = False
        if self._cancel_token is not None:
            self._cancel_token.cancel("Autonomous execution stopped")

    def pause(self) -> None:
        self.ctx.log("Pausing autonomous execution")
        self._paused = True

    def resume(self) -> None:
        self.ctx.log("Resuming autonomous execution")
        self._paused = False

    def status(self) -> ProgressEvent:
        completed, total = self.plan.count_tasks() if self.plan else (0, 0)
        if self._running:
            status = "paused" if self._paused else "running"
        else:
            status = self._last_status
        return ProgressEvent(
            iteration=self.iteration,
            max_iterations=self.max_iterations,
            completed_tasks=completed,
            total_tasks=total,
            status=status,
            combo_multiplier=self.combo_multiplier,
            achievements=tuple(self.achievements),
            current_task=self._current_task,
        )

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def start(
        self,
        initial_prompt: str,
        max_iterations: int | None = None,
        plan: PhasePlan | None = None,
    ) -> RunOutcome:
        """Run the loop to a terminal status.

        Raises:
            RuntimeError: If a run is already in progress
            ValueError: If there is neither a plan nor a plan source
        """
        if self._running:
            raise RuntimeError("Autonomous execution is already running")
        if plan is not None:
            self.plan = plan
        if self.plan is None and self.plan_source is None:
            raise ValueError("No plan given and no plan source configured")

        self._running = True
        self._paused = False
        self._cancel_token = CancelToken()
        self.iteration = 0
        self.max_iterations = max_iterations or self.settings.max_iterations

        self.ctx.log(f"Starting autonomous execution: {initial_prompt[:80]!r}")
        self.ctx.log(f"Max iterations: {self.max_iterations}, verification: {self.settings.verification}")

        status: str | None = None
        error: str | None = None
        try:
            status = await self._loop(initial_prompt)
        except CancellationError:
            status = "stopped"
        except Exception as e:
            status = "error"
            error = str(e)
            logger.exception(f"[LOOP] Error during autonomous execution: {e}")
            self.ctx.log(f"Error during autonomous execution: {e}")
        finally:
            self._running = False
            self._paused = False
            self._cancel_token = None
            self._current_task = None

        return self._finish(status, error)

    async def _loop(self, initial_prompt: str) -> str:
        while self._running and self.iteration < self.max_iterations:
            self.iteration += 1
            self.ctx.log(f"=== Iteration {self.iteration}/{self.max_iterations} ===")

            if self._paused:
                self.ctx.log("Execution paused, waiting...")
                await self._wait_for_resume()
                if not self._running:
                    break

            if self.plan is None:
                self.ctx.log("Creating initial plan...")
                self.plan = await self._create_plan(initial_prompt)
                if self.plan is None:
                    self.ctx.log("Failed to create plan, retrying...")
                    self.ctx.record_iteration(self.iteration, "planning", notes="plan creation failed")
                    continue

            issues = validate_plan_tasks(self.plan)
            if issues:
                self.ctx.log(f"Plan validation failed with {len(issues)} issue(s)")
                self.plan = await self.refine_plan(self.plan, issues)
                self.ctx.record_iteration(self.iteration, "refining", notes=f"{len(issues)} issue(s)")
                continue

            selection = next_incomplete_task(self.plan)
            if selection is None:
                return "completed"
            phase, task = selection
            self._current_task = task.id

            await self._run_task(phase, task)
            self._emit_progress()

        if not self._running:
            return "stopped"
        if self.plan is not None and next_incomplete_task(self.plan) is None and not validate_plan_tasks(self.plan):
            # Last task finished on the final iteration
            return "completed"
        return "max_iterations"

    async def _run_task(self, phase: Phase, task: PhaseTask) -> None:
        self.ctx.log(f"Checking confidence for task: {task.title}")
        confidence = await self.get_task_confidence(task)
        self.ctx.log(
            f"Confidence: {confidence.score}%" + (f" ({confidence.reasoning})" if confidence.reasoning else "")
        )
        if confidence.score < self.settings.confidence_threshold:
            self.ctx.log(f"Low confidence ({confidence.score}%). Skipping task for now")
            self.ctx.record_iteration(self.iteration, "skipped", task.id, f"confidence {confidence.score}")
            return

        manager = PhaseManager(self.plan)
        manager.update_task_status(phase.id, task.id, "in-progress")

        self.ctx.log(f"Executing task: {task.title}")
        result = await self.execute_task(task, phase)
        verification = self.verify_task(task, result)

        if verification.success:
            self.ctx.log(f"Task verified: {task.title}")
            manager.update_task_status(phase.id, task.id, "completed")
            self._update_combo(True)
            self.ctx.record_iteration(self.iteration, "completed", task.id)
        else:
            issues = "; ".join(verification.issues) or "Verification failed"
            self.ctx.log(f"Task verification failed: {issues}")
            self.journal.record(task.id, task.title, self.iteration, issues)
            manager.update_task_status(phase.id, task.id, "pending")
            self._update_combo(False)
            self.ctx.record_iteration(self.iteration, "failed", task.id, issues)

    async def _wait_for_resume(self) -> None:
        while self._paused and self._running:
            await asyncio.sleep(self.settings.pause_poll_interval)

    async def _create_plan(self, prompt: str) -> PhasePlan | None:
        try:
            return await self.plan_source(prompt)
        except CancellationError:
            raise
        except (AIError, PlanGenerationError) as e:
            self.ctx.log(f"Error creating plan: {e}")
            return None

    async def refine_plan(self, plan: PhasePlan, issues: list[PlanIssue]) -> PhasePlan:
        """Extension point for repairing an invalid plan. Returns it unchanged."""
        self.ctx.log(f"Plan refinement needed for {len(issues)} issue(s)")
        return plan

    async def _chat(self, messages: list[dict[str, str]]) -> str:
        response = await self.dispatcher.chat(
            ChatRequest(messages=messages, cancel_token=self._cancel_token),
            self.provider_id,
        )
        return response.content

    async def get_task_confidence(self, task: PhaseTask) -> TaskConfidence:
        """Confidence score for a task; 50 when the provider fails or the reply can't be parsed."""
        rendered = self.prompt_engine.render(
            PromptRole.TASK_CONFIDENCE, task_title=task.title, task_goal=task.goal
        )
        try:
            text = await self._chat(rendered.to_messages())
        except CancellationError:
            raise
        except AIError as e:
            self.ctx.log(f"Error getting confidence score: {e}")
            return TaskConfidence(task_id=task.id, score=DEFAULT_CONFIDENCE)
        return parse_confidence(task.id, text)

    def build_task_prompt(self, task: PhaseTask, phase: Phase) -> list[dict[str, str]]:
        criteria = "\n".join(f"- {c}" for c in task.acceptance_criteria)
        rendered = self.prompt_engine.render(
            PromptRole.TASK_EXECUTION,
            phase_title=phase.title,
            task_title=task.title,
            task_goal=task.goal,
            criteria_section=build_section(criteria, "Acceptance Criteria:"),
            failure_section=format_failure_history(self.journal.get(task.id)),
        )
        return rendered.to_messages()

    async def execute_task(self, task: PhaseTask, phase: Phase) -> TaskExecutionResult:
        try:
            output = await self._chat(self.build_task_prompt(task, phase))
        except CancellationError:
            raise
        except AIError as e:
            result = TaskExecutionResult(task_id=task.id, success=False, error=str(e))
        else:
            if detect_completion(output):
                self.ctx.log("Detected completion marker in response")
            result = TaskExecutionResult(task_id=task.id, success=True, output=output)
        self.history.append(result)
        return result

    def verify_task(self, task: PhaseTask, result: TaskExecutionResult) -> VerificationResult:
        """Decide whether an execution counts as done.

        Execution errors and explicit failure markers always fail. Without a
        completion marker, strict verification fails and lenient verification
        passes with a warning.
        """
        if not result.success:
            return VerificationResult(task.id, False, (result.error or "Execution failed",))

        output = result.output or ""
        failure = detect_failure(output)
        if failure:
            return VerificationResult(task.id, False, (f"Task reported {failure}",))

        if detect_completion(output):
            return VerificationResult(task.id, True)

        if self.settings.verification == "strict":
            return VerificationResult(task.id, False, (NO_MARKER_ISSUE,))

        logger.warning(f"[LOOP] {NO_MARKER_ISSUE} for task {task.id}, assuming it is complete")
        self.ctx.log(f"{NO_MARKER_ISSUE}, assuming task is complete")
        return VerificationResult(task.id, True)

    # ------------------------------------------------------------------
    # Combo and achievements
    # ------------------------------------------------------------------

    def _update_combo(self, success: bool) -> None:
        if success:
            self.consecutive_successes += 1
            self.combo_multiplier = round(min(1.0 + self.consecutive_successes * COMBO_STEP, COMBO_MAX), 1)
            if self.combo_multiplier > 1.0:
                self.ctx.log(f"COMBO {self.combo_multiplier:.1f}x ({self.consecutive_successes} consecutive successes)")
            self._check_achievements()
        else:
            if self.consecutive_successes:
                self.ctx.log(f"Combo broken (was {self.combo_multiplier:.1f}x)")
            self.consecutive_successes = 0
            self.combo_multiplier = 1.0

    def _check_achievements(self) -> None:
        completed, _ = self.plan.count_tasks() if self.plan else (0, 0)
        if completed >= 10 and self.iteration <= 20:
            self._unlock("speed_demon")
        if self.consecutive_successes >= 5:
            self._unlock("perfectionist")
        if self.journal.total_failures() >= 3 and self.consecutive_successes > 0:
            self._unlock("resilient")
        if self.iteration >= 50:
            self._unlock("marathon")

    def _unlock(self, achievement_id: str) -> None:
        if achievement_id in self.achievements:
            return
        self.achievements.append(achievement_id)
        self.ctx.log(f"Achievement unlocked: {ACHIEVEMENTS[achievement_id]}")

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _emit_progress(self) -> None:
        self.events.emit_progress(self.status())

    def _finish(self, status: str, error: str | None) -> RunOutcome:
        self._last_status = status
        completed, total = self.plan.count_tasks() if self.plan else (0, 0)
        success = status == "completed"

        if success:
            self.ctx.log(
                f"All tasks completed in {self.iteration} iteration(s); combo {self.combo_multiplier:.1f}x; "
                f"achievements: {', '.join(self.achievements) or 'none'}"
            )
        elif status == "max_iterations":
            self.ctx.log("Reached maximum iterations without completing all tasks")

        self.ctx.write_result(status, success, completed, total, list(self.achievements), error)
        self.events.emit_progress(self.status())
        self.events.emit_completion(CompletionEvent(
            success=success, iterations=self.iteration, status=status, error=error
        ))
        return RunOutcome(
            success=success,
            status=status,
            iterations=self.iteration,
            completed_tasks=completed,
            total_tasks=total,
            error=error,
        )
