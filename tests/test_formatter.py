"""Tests for junkrat.pm.models and junkrat.pm.formatter modules."""

import json

from junkrat.pm.formatter import (
    format_task_for_copy,
    from_json,
    to_json,
    to_markdown,
    to_plain_text,
    to_summary,
)
from junkrat.pm.models import PhasePlan, PhaseTask

from fakes import make_plan


class TestPhasePlanModel:
    """Tests for the plan dataclasses."""

    def test_dict_round_trip(self):
        plan = make_plan()
        assert PhasePlan.from_dict(plan.to_dict()) == plan

    def test_total_phases_tracks_list(self):
        """total_phases is derived and follows the phase list."""
        plan = make_plan(count=3)
        assert plan.total_phases == 3
        plan.phases.pop()
        assert plan.total_phases == 2
        assert plan.to_dict()["total_phases"] == 2

    def test_iter_tasks_order(self):
        plan = make_plan(count=2, tasks_per_phase=2)
        pairs = [(p.id, t.id) for p, t in plan.iter_tasks()]
        assert pairs == [
            ("phase-001", "task-001"), ("phase-001", "task-002"),
            ("phase-002", "task-001"), ("phase-002", "task-002"),
        ]

    def test_count_tasks(self):
        plan = make_plan(count=2, tasks_per_phase=2)
        plan.phases[0].tasks[0].status = "completed"
        assert plan.count_tasks() == (1, 4)

    def test_lookups(self):
        plan = make_plan()
        assert plan.get_phase("phase-002").title == "Phase 2"
        assert plan.get_phase("phase-999") is None
        assert plan.phases[0].get_task("task-002").title == "Task 1.2"
        assert plan.phases[0].get_task("task-999") is None

    def test_from_dict_defaults(self):
        """Missing optional fields fall back to defaults."""
        plan = PhasePlan.from_dict({"id": "p", "phases": [{"id": "phase-001"}]})
        phase = plan.phases[0]
        assert phase.status == "pending"
        assert phase.estimated_complexity == "medium"
        assert phase.tasks == []
        assert plan.metadata.complexity == "simple"


class TestMarkdown:
    """Tests for to_markdown."""

    def test_structure(self):
        md = to_markdown(make_plan(count=2, tasks_per_phase=1))
        assert md.startswith("# Todo App\n")
        assert "## Overview" in md
        assert "- **Total Phases**: 2" in md
        assert "- **Technologies**: python" in md
        assert "### Phase 1: Phase 1" in md
        assert "**ID**: `phase-001`" in md
        assert "**Status**: PENDING" in md
        assert "**Dependencies**: phase-001" in md
        assert "##### Task 1: Task 1.1" in md
        assert "- [ ] Tests pass" in md

    def test_created_in_utc(self):
        """Creation time renders the same regardless of local timezone."""
        md = to_markdown(make_plan())
        assert "- **Created**: 2023-11-14 22:13 UTC" in md

    def test_deterministic(self):
        plan = make_plan()
        assert to_markdown(plan) == to_markdown(plan)

    def test_no_dependencies_shows_none(self):
        md = to_markdown(make_plan(count=1))
        assert "**Dependencies**: None" in md

    def test_files_listed(self):
        plan = make_plan(count=1, tasks_per_phase=1)
        plan.phases[0].files = ["app.py"]
        plan.phases[0].tasks[0].files = ["app.py", "models.py"]
        md = to_markdown(plan)
        assert "**Files**: `app.py`, `models.py`" in md
        assert "**Files**: `app.py`\n" in md


class TestJson:
    """Tests for to_json / from_json."""

    def test_round_trip(self):
        plan = make_plan()
        assert from_json(to_json(plan)) == plan

    def test_compact(self):
        text = to_json(make_plan(), pretty=False)
        assert "\n" not in text
        assert json.loads(text)["id"] == "plan-1"

    def test_pretty_indented(self):
        assert '\n  "id": "plan-1"' in to_json(make_plan())


class TestTextFormats:
    """Tests for plain text, summary and task copy formats."""

    def test_plain_text(self):
        text = to_plain_text(make_plan(count=2))
        assert text.startswith("Todo App\nA small todo application\n")
        assert "Total Phases: 2" in text
        assert "Phase 2: Phase 2" in text

    def test_summary(self):
        assert to_summary(make_plan(count=3)) == "Project: Todo App | 3 phases | Complexity: simple"

    def test_task_copy(self):
        task = PhaseTask(
            id="task-001",
            title="Add login",
            goal="Users can log in",
            files=["auth.py"],
            instructions=["Create form", "Check password"],
            acceptance_criteria=["Login works"],
        )
        text = format_task_for_copy(task, "Auth")
        assert text.startswith("## Auth - Add login\n")
        assert "**Goal**: Users can log in" in text
        assert "- `auth.py`" in text
        assert "1. Create form\n2. Check password" in text
        assert text.endswith("**When complete, verify**:\n- Login works")

    def test_task_copy_without_phase(self):
        task = PhaseTask(id="t", title="Solo", goal="g")
        text = format_task_for_copy(task)
        assert text.startswith("## Solo\n")
        assert "Files to create/modify" not in text
