"""
Phase and task status management.

PhaseManager mutates one PhasePlan in place. Task status changes roll up to
the owning phase; a verified phase is never reverted by task changes.
Structural edits (insert, edit, delete) renumber phase orders 1..n.
"""

import logging
from dataclasses import dataclass

from junkrat.pm.models import PHASE_STATUSES, TASK_STATUSES, Phase, PhasePlan, PhaseTask

logger = logging.getLogger(__name__)

__all__ = ["PhaseManager", "PhaseOperationError", "PhaseProgress", "Check"]

# Fields edit_phase may change
EDITABLE_FIELDS = ("title", "description", "estimated_complexity", "dependencies", "tags", "files", "tasks")


class PhaseOperationError(Exception):
    """A phase operation was refused."""
    pass


@dataclass(frozen=True)
class Check:
    ok: bool
    reason: str | None = None


@dataclass(frozen=True)
class PhaseProgress:
    completed: int  # completed or verified
    verified: int
    total: int


class PhaseManager:
    def __init__(self, plan: PhasePlan):
        self.plan = plan

    def _phase(self, phase_id: str) -> Phase:
        phase = self.plan.get_phase(phase_id)
        if phase is None:
            raise PhaseOperationError(f"Phase {phase_id} not found")
        return phase

    def _renumber(self) -> None:
        for index, phase in enumerate(self.plan.phases, 1):
            phase.order = index

    def update_phase_status(self, phase_id: str, status: str) -> Phase:
        if status not in PHASE_STATUSES:
            raise PhaseOperationError(f"Invalid phase status: {status}")
        phase = self._phase(phase_id)
        phase.status = status
        return phase

    def update_task_status(self, phase_id: str, task_id: str, status: str) -> PhaseTask:
        """Set a task's status and roll the change up to its phase.

        - every task completed: phase becomes completed (unless verified)
        - a task reopened on a completed phase: phase goes back to in-progress
        - work starting on a pending phase: phase becomes in-progress
        """
        if status not in TASK_STATUSES:
            raise PhaseOperationError(f"Invalid task status: {status}")
        phase = self._phase(phase_id)
        task = phase.get_task(task_id)
        if task is None:
            raise PhaseOperationError(f"Task {task_id} not found in phase {phase_id}")

        task.status = status

        if all(t.status == "completed" for t in phase.tasks):
            if phase.status != "verified":
                phase.status = "completed"
        elif phase.status == "completed":
            phase.status = "in-progress"
        elif phase.status == "pending" and status in ("in-progress", "completed"):
            phase.status = "in-progress"

        logger.debug(f"[PLAN] Task {task_id} -> {status}; phase {phase_id} is {phase.status}")
        return task

    def can_verify_phase(self, phase_id: str) -> Check:
        phase = self.plan.get_phase(phase_id)
        if phase is None:
            return Check(False, "Phase not found")
        if phase.status == "verified":
            return Check(False, "Phase already verified")
        if phase.status != "completed":
            return Check(False, "Phase must be completed first")
        incomplete = [t for t in phase.tasks if t.status != "completed"]
        if incomplete:
            return Check(False, f"{len(incomplete)} task(s) not completed")
        return Check(True)

    def verify_phase(self, phase_id: str) -> Phase:
        check = self.can_verify_phase(phase_id)
        if not check.ok:
            raise PhaseOperationError(f"Cannot verify phase {phase_id}: {check.reason}")
        phase = self._phase(phase_id)
        phase.status = "verified"
        return phase

    def progress(self) -> PhaseProgress:
        phases = self.plan.phases
        return PhaseProgress(
            completed=sum(1 for p in phases if p.status in ("completed", "verified")),
            verified=sum(1 for p in phases if p.status == "verified"),
            total=len(phases),
        )

    def next_phase(self) -> Phase | None:
        return next((p for p in self.plan.phases if p.status == "pending"), None)

    def current_phase(self) -> Phase | None:
        return next((p for p in self.plan.phases if p.status == "in-progress"), None)

    def insert_phase(self, phase: Phase, after_phase_id: str | None) -> Phase:
        """Insert `phase` after `after_phase_id` (None inserts it first)."""
        if self.plan.get_phase(phase.id) is not None:
            raise PhaseOperationError(f"Phase id {phase.id} already exists")

        if after_phase_id is None:
            index = 0
        else:
            ids = [p.id for p in self.plan.phases]
            if after_phase_id not in ids:
                raise PhaseOperationError(f"Phase {after_phase_id} not found")
            index = ids.index(after_phase_id) + 1

        self.plan.phases.insert(index, phase)
        self._renumber()
        return phase

    def can_edit_phase(self, phase_id: str) -> Check:
        phase = self.plan.get_phase(phase_id)
        if phase is None:
            return Check(False, "Phase not found")
        if phase.status != "pending":
            return Check(False, "Only pending phases can be edited")
        return Check(True)

    def can_delete_phase(self, phase_id: str) -> Check:
        check = self.can_edit_phase(phase_id)
        if not check.ok:
            return check
        dependents = [
            p for p in self.plan.phases
            if phase_id in p.dependencies and p.status != "pending"
        ]
        if dependents:
            return Check(False, f"Cannot delete phase: {len(dependents)} active/completed phases depend on it")
        return Check(True)

    def edit_phase(self, phase_id: str, **updates) -> Phase:
        check = self.can_edit_phase(phase_id)
        if not check.ok:
            raise PhaseOperationError(check.reason)

        unknown = set(updates) - set(EDITABLE_FIELDS)
        if unknown:
            raise PhaseOperationError(f"Cannot edit field(s): {', '.join(sorted(unknown))}")

        phase = self._phase(phase_id)
        for dep in updates.get("dependencies") or []:
            if dep == phase_id:
                raise PhaseOperationError("A phase cannot depend on itself")
            if self.plan.get_phase(dep) is None:
                raise PhaseOperationError(f"Phase dependency not found: {dep}")

        for key, value in updates.items():
            setattr(phase, key, value)
        return phase

    def delete_phase(self, phase_id: str) -> None:
        check = self.can_delete_phase(phase_id)
        if not check.ok:
            raise PhaseOperationError(check.reason)

        self.plan.phases = [p for p in self.plan.phases if p.id != phase_id]
        for phase in self.plan.phases:
            if phase_id in phase.dependencies:
                phase.dependencies = [d for d in phase.dependencies if d != phase_id]
        self._renumber()
