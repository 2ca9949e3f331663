"""
Phase plan generation.

Turns free-text requirements into a validated PhasePlan:

1. Pick a phase-count range from the size and shape of the requirements.
2. Render the phase-planner prompt and ask the provider for strict JSON.
3. Extract and decode the JSON, validate it against
   schemas/llm_phase_plan.schema.json plus the semantic rules (unique ids,
   resolvable dependencies, count within range).
4. If that fails, ask once more with a corrective instruction. A second
   failure raises PlanGenerationError; a partial plan is never returned.
5. Normalise phases and tasks and compute plan metadata.

The provider is anything with an async chat(ChatRequest) -> ChatResponse:
a single ChatProvider or the ProviderDispatcher (retry + fallback).
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import Protocol

from junkrat.lib.constants import MAX_PHASES
from junkrat.lib.prompts import PromptEngine, PromptRole, RenderedPrompt
from junkrat.lib.retry import CancelToken
from junkrat.lib.types import ConversationState, new_id
from junkrat.lib.validate import ValidationError, validate
from junkrat.pm.analysis import (
    assess_plan_complexity,
    build_dependency_graph,
    estimate_duration,
    extract_technologies,
    find_cycles,
)
from junkrat.pm.models import COMPLEXITIES, Phase, PhasePlan, PhasePlanMetadata, PhaseTask
from junkrat.pm.parsing import ParseError, parse_json_object
from junkrat.providers.base import ChatRequest, ChatResponse

logger = logging.getLogger(__name__)

__all__ = [
    "PhaseCountRange",
    "PhaseGenerator",
    "PlanGenerationError",
    "PlanValidationError",
    "determine_phase_count",
    "format_phase_id",
    "format_task_id",
]

BASE_INSTRUCTION = "Generate the phase plan based on the requirements above."
RETRY_INSTRUCTION = (
    "The previous response could not be parsed. Return strict JSON only following the required schema."
)
SINGLE_PHASE_INSTRUCTION = "Generate the new phase now."

SCALE_KEYWORDS = ("microservices", "full-stack", "enterprise")
_TECH_PATTERN = re.compile(r'react|angular|vue|node|python|java|\.net|graphql', re.IGNORECASE)


class PlanGenerationError(Exception):
    """The provider could not produce a valid plan."""

    def __init__(self, message: str, reason: Exception | None = None):
        super().__init__(message)
        self.reason = reason


class PlanValidationError(ValueError):
    """Plan JSON is well-formed but breaks a plan rule."""
    pass


class ChatHandle(Protocol):
    async def chat(self, request: ChatRequest) -> ChatResponse: ...


@dataclass(frozen=True)
class PhaseCountRange:
    min_phases: int
    max_phases: int

    def __contains__(self, count: int) -> bool:
        return self.min_phases <= count <= self.max_phases


def determine_phase_count(requirements: str) -> PhaseCountRange:
    """Phase-count range for a block of requirements.

    Bands by word count: <100 -> 3-10, <500 -> 10-50, <1000 -> 50-200,
    otherwise 100-1000. Scale keywords raise the floor to 20 and the ceiling
    to 100; more than three distinct technology keywords add 50 to the ceiling.
    """
    word_count = len(requirements.split())
    lower = requirements.lower()

    if word_count < 100:
        min_phases, max_phases = 3, 10
    elif word_count < 500:
        min_phases, max_phases = 10, 50
    elif word_count < 1000:
        min_phases, max_phases = 50, 200
    else:
        min_phases, max_phases = 100, MAX_PHASES

    if any(keyword in lower for keyword in SCALE_KEYWORDS):
        min_phases = max(min_phases, 20)
        max_phases = max(max_phases, 100)

    if len({m.lower() for m in _TECH_PATTERN.findall(requirements)}) > 3:
        max_phases = min(MAX_PHASES, max_phases + 50)

    return PhaseCountRange(min_phases=min_phases, max_phases=min(MAX_PHASES, max_phases))


def format_phase_id(order: int) -> str:
    return f"phase-{order:03d}"


def format_task_id(order: int) -> str:
    return f"task-{order:03d}"


def _complexity(raw: dict) -> str:
    value = raw.get("estimatedComplexity") or raw.get("estimated_complexity") or "medium"
    return value if value in COMPLEXITIES else "medium"


def _string_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value]


def _normalize_task(raw: dict, index: int) -> PhaseTask:
    return PhaseTask(
        id=raw.get("id") or format_task_id(index + 1),
        title=raw.get("title") or "",
        goal=raw.get("goal") or "",
        files=_string_list(raw.get("files")),
        instructions=_string_list(raw.get("instructions")),
        acceptance_criteria=_string_list(raw.get("acceptance_criteria") or raw.get("acceptanceCriteria")),
        status="pending",
    )


def _normalize_phase(raw: dict, index: int) -> Phase:
    order = index + 1
    return Phase(
        id=raw.get("id") or format_phase_id(order),
        title=raw.get("title") or f"Phase {order}",
        description=raw.get("description") or "No description provided.",
        order=order,
        estimated_complexity=_complexity(raw),
        dependencies=_string_list(raw.get("dependencies")),
        tags=_string_list(raw.get("tags")),
        files=_string_list(raw.get("files")),
        tasks=[_normalize_task(t, i) for i, t in enumerate(raw.get("tasks") or []) if isinstance(t, dict)],
        status="pending",
    )


def validate_plan_data(data: dict, count_range: PhaseCountRange) -> None:
    """Check decoded plan JSON against the schema and the plan rules.

    Raises:
        ValidationError: Schema mismatch (missing title, empty phases, ...)
        PlanValidationError: Duplicate ids, self or dangling dependencies,
            or a phase count outside `count_range`
    """
    validate(data, "llm_phase_plan")

    phases = data["phases"]
    ids: set[str] = set()
    for index, phase in enumerate(phases):
        phase_id = phase.get("id") or format_phase_id(index + 1)
        if phase_id in ids:
            raise PlanValidationError(f"Duplicate phase id detected: {phase_id}")
        ids.add(phase_id)

    for index, phase in enumerate(phases):
        phase_id = phase.get("id") or format_phase_id(index + 1)
        for dependency in phase.get("dependencies") or []:
            if dependency == phase_id:
                raise PlanValidationError(f"Phase cannot depend on itself: {phase_id}")
            if dependency not in ids:
                raise PlanValidationError(f"Phase dependency not found: {dependency}")

    if len(phases) < count_range.min_phases:
        raise PlanValidationError(
            f"Generated plan contains fewer phases than requested minimum "
            f"({len(phases)} < {count_range.min_phases})."
        )
    if len(phases) > count_range.max_phases:
        raise PlanValidationError(
            f"Generated plan contains more phases than requested maximum "
            f"({len(phases)} > {count_range.max_phases})."
        )


class PhaseGenerator:
    """Requests, validates and normalises phase plans."""

    def __init__(self, prompt_engine: PromptEngine):
        self.prompt_engine = prompt_engine

    async def _request(
        self,
        provider: ChatHandle,
        rendered: RenderedPrompt,
        instruction: str,
        cancel_token: CancelToken | None,
    ) -> ChatResponse:
        messages = rendered.to_messages()
        messages.append({"role": "user", "content": instruction})
        return await provider.chat(ChatRequest(messages=messages, cancel_token=cancel_token))

    def build_plan(
        self,
        content: str,
        conversation_id: str,
        count_range: PhaseCountRange,
        requirements: str,
    ) -> PhasePlan:
        """Parse, validate and normalise one model response into a PhasePlan."""
        data = parse_json_object(content)
        validate_plan_data(data, count_range)

        phases = [_normalize_phase(raw, i) for i, raw in enumerate(data["phases"])]

        cycles = find_cycles(build_dependency_graph(phases))
        if cycles:
            logger.warning(f"[PLAN] Plan has dependency cycle(s): {cycles}")

        return PhasePlan(
            id=new_id(),
            conversation_id=conversation_id,
            title=data.get("title") or "Phase Plan",
            description=data.get("description") or "Automatically generated phase plan.",
            phases=phases,
            created_at=int(time.time() * 1000),
            metadata=PhasePlanMetadata(
                complexity=assess_plan_complexity(len(phases)),
                technologies=extract_technologies(requirements),
                estimated_duration=estimate_duration(phases),
            ),
        )

    async def generate_phase_plan(
        self,
        requirements: str,
        conversation_id: str,
        provider: ChatHandle,
        cancel_token: CancelToken | None = None,
    ) -> PhasePlan:
        """
        Generate a validated plan for `requirements`.

        Raises:
            PlanGenerationError: If neither the first response nor the
                corrective retry yields a valid plan
            AIError: Provider failures propagate unchanged
        """
        count_range = determine_phase_count(requirements)
        logger.info(
            f"[PLAN] Generating plan for conversation {conversation_id} "
            f"({count_range.min_phases}-{count_range.max_phases} phases)"
        )

        rendered = self.prompt_engine.render(
            PromptRole.PHASE_PLANNER,
            conversation_state=ConversationState.GENERATING_PHASES,
            requirements=requirements,
            min_phases=count_range.min_phases,
            max_phases=count_range.max_phases,
        )

        response = await self._request(provider, rendered, BASE_INSTRUCTION, cancel_token)
        try:
            plan = self.build_plan(response.content, conversation_id, count_range, requirements)
        except (ParseError, ValidationError, PlanValidationError) as e:
            logger.warning(f"[PLAN] First response rejected: {e}. Retrying with strict JSON instruction")
            response = await self._request(provider, rendered, RETRY_INSTRUCTION, cancel_token)
            try:
                plan = self.build_plan(response.content, conversation_id, count_range, requirements)
            except (ParseError, ValidationError, PlanValidationError) as retry_error:
                raise PlanGenerationError(
                    f"Could not produce a valid plan: {retry_error}", retry_error
                ) from retry_error

        logger.info(f"[PLAN] Generated plan '{plan.title}' with {plan.total_phases} phases")
        return plan

    async def generate_single_phase(
        self,
        plan: PhasePlan,
        prompt: str,
        after_phase_id: str | None,
        provider: ChatHandle,
        cancel_token: CancelToken | None = None,
    ) -> Phase:
        """
        Ask the provider for one new phase to insert into `plan`.

        The returned phase has a fresh id not used by the plan and keeps only
        dependencies that resolve within it. Ordering is left to PhaseManager.

        Raises:
            PlanGenerationError: If the response isn't a valid phase
        """
        rendered = self.prompt_engine.render(
            PromptRole.SINGLE_PHASE_PLANNER,
            conversation_state=ConversationState.COMPLETE,
            requirements=prompt,
            existing_plan=_plan_outline(plan),
            after_phase_id=after_phase_id or "(start of plan)",
        )
        response = await self._request(provider, rendered, SINGLE_PHASE_INSTRUCTION, cancel_token)

        try:
            data = parse_json_object(response.content)
            validate(data, "llm_phase")
        except (ParseError, ValidationError) as e:
            raise PlanGenerationError(f"Could not produce a valid phase: {e}", e) from e

        existing = {p.id for p in plan.phases}
        phase = _normalize_phase(data, len(plan.phases))
        phase.id = _next_free_phase_id(existing)
        phase.dependencies = [d for d in phase.dependencies if d in existing]
        return phase


def _next_free_phase_id(existing: set[str]) -> str:
    n = len(existing) + 1
    while format_phase_id(n) in existing:
        n += 1
    return format_phase_id(n)


def _plan_outline(plan: PhasePlan) -> str:
    lines = [f"Plan: {plan.title}", plan.description, ""]
    for phase in plan.phases:
        deps = ", ".join(phase.dependencies) or "none"
        lines.append(f"- {phase.id} (order {phase.order}): {phase.title} [depends on: {deps}]")
    return "\n".join(lines)
