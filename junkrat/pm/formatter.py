"""
Phase plan rendering.

Markdown for people and chat history, JSON for storage and prompt context,
plain text and one-line summaries for the CLI, and a copyable block for a
single task.

Markdown output is deterministic: the creation time is rendered in UTC.
"""

import json
from datetime import datetime, timezone

from junkrat.pm.models import PhasePlan, PhaseTask

__all__ = [
    "to_markdown",
    "to_json",
    "from_json",
    "to_plain_text",
    "to_summary",
    "format_task_for_copy",
]


def _format_created(created_at: int) -> str:
    return datetime.fromtimestamp(created_at / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def _code_list(items: list[str]) -> str:
    return ", ".join(f"`{item}`" for item in items)


def to_markdown(plan: PhasePlan) -> str:
    lines = [
        f"# {plan.title}",
        "",
        plan.description,
        "",
        "## Overview",
        "",
        f"- **Total Phases**: {plan.total_phases}",
        f"- **Complexity**: {plan.metadata.complexity or 'unknown'}",
        f"- **Technologies**: {', '.join(plan.metadata.technologies) or 'None'}",
        f"- **Created**: {_format_created(plan.created_at)}",
        "",
        "## Phases",
        "",
    ]

    for phase in plan.phases:
        lines += [
            f"### Phase {phase.order}: {phase.title}",
            "",
            f"**ID**: `{phase.id}`",
            f"**Status**: {(phase.status or 'pending').upper()}",
            f"**Complexity**: {phase.estimated_complexity or 'unspecified'}",
            f"**Dependencies**: {', '.join(phase.dependencies) or 'None'}",
            "",
            phase.description,
            "",
        ]

        if phase.tasks:
            lines += ["#### Tasks", ""]
            for i, task in enumerate(phase.tasks, 1):
                lines += [f"##### Task {i}: {task.title}", "", f"**Goal**: {task.goal}", ""]
                if task.files:
                    lines += [f"**Files**: {_code_list(task.files)}", ""]
                lines.append("**Instructions**:")
                lines += [f"{n}. {step}" for n, step in enumerate(task.instructions, 1)]
                lines += ["", "**Acceptance Criteria**:"]
                lines += [f"- [ ] {criterion}" for criterion in task.acceptance_criteria]
                lines.append("")

        if phase.files:
            lines += [f"**Files**: {_code_list(phase.files)}", ""]
        lines += ["---", ""]

    return "\n".join(lines)


def to_json(plan: PhasePlan, pretty: bool = True) -> str:
    if pretty:
        return json.dumps(plan.to_dict(), indent=2)
    return json.dumps(plan.to_dict(), separators=(",", ":"))


def from_json(text: str) -> PhasePlan:
    return PhasePlan.from_dict(json.loads(text))


def to_plain_text(plan: PhasePlan) -> str:
    lines = [plan.title, plan.description, "", f"Total Phases: {plan.total_phases}", ""]
    for phase in plan.phases:
        lines += [f"Phase {phase.order}: {phase.title}", phase.description, ""]
    return "\n".join(lines)


def to_summary(plan: PhasePlan) -> str:
    return f"Project: {plan.title} | {plan.total_phases} phases | Complexity: {plan.metadata.complexity}"


def format_task_for_copy(task: PhaseTask, phase_title: str | None = None) -> str:
    """Render one task as a self-contained prompt to paste into an assistant."""
    heading = f"## {phase_title} - {task.title}" if phase_title else f"## {task.title}"
    lines = [heading, "", f"**Goal**: {task.goal}", ""]

    if task.files:
        lines.append("**Files to create/modify**:")
        lines += [f"- `{f}`" for f in task.files]
        lines.append("")

    lines.append("**Instructions**:")
    lines += [f"{n}. {step}" for n, step in enumerate(task.instructions, 1)]
    lines += ["", "**When complete, verify**:"]
    lines += [f"- {criterion}" for criterion in task.acceptance_criteria]
    return "\n".join(lines)
