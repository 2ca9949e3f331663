"""
Phase plan data model.

A PhasePlan owns an ordered list of Phases; a Phase owns an ordered list of
PhaseTasks. Plans reference their conversation by id only.

to_dict()/from_dict() are lossless: from_dict(plan.to_dict()) == plan.
"""

from dataclasses import dataclass, field

PHASE_STATUSES = ("pending", "in-progress", "completed", "verified")
TASK_STATUSES = ("pending", "in-progress", "completed")
COMPLEXITIES = ("low", "medium", "high")
PLAN_COMPLEXITIES = ("simple", "moderate", "complex", "very-complex")


@dataclass
class PhaseTask:
    """A single actionable task, sized to be completed in one prompt."""
    id: str
    title: str
    goal: str
    files: list[str] = field(default_factory=list)
    instructions: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    status: str = "pending"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "goal": self.goal,
            "files": list(self.files),
            "instructions": list(self.instructions),
            "acceptance_criteria": list(self.acceptance_criteria),
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PhaseTask":
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            goal=data.get("goal", ""),
            files=list(data.get("files", [])),
            instructions=list(data.get("instructions", [])),
            acceptance_criteria=list(data.get("acceptance_criteria", [])),
            status=data.get("status", "pending"),
        )


@dataclass
class Phase:
    id: str
    title: str
    description: str
    order: int
    estimated_complexity: str = "medium"
    dependencies: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    tasks: list[PhaseTask] = field(default_factory=list)
    status: str = "pending"

    def get_task(self, task_id: str) -> PhaseTask | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "order": self.order,
            "estimated_complexity": self.estimated_complexity,
            "dependencies": list(self.dependencies),
            "tags": list(self.tags),
            "files": list(self.files),
            "tasks": [t.to_dict() for t in self.tasks],
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Phase":
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            description=data.get("description", ""),
            order=data.get("order", 0),
            estimated_complexity=data.get("estimated_complexity", "medium"),
            dependencies=list(data.get("dependencies", [])),
            tags=list(data.get("tags", [])),
            files=list(data.get("files", [])),
            tasks=[PhaseTask.from_dict(t) for t in data.get("tasks", [])],
            status=data.get("status", "pending"),
        )


@dataclass
class PhasePlanMetadata:
    complexity: str = "simple"
    technologies: list[str] = field(default_factory=list)
    estimated_duration: str | None = None

    def to_dict(self) -> dict:
        return {
            "estimated_duration": self.estimated_duration,
            "complexity": self.complexity,
            "technologies": list(self.technologies),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PhasePlanMetadata":
        return cls(
            complexity=data.get("complexity", "simple"),
            technologies=list(data.get("technologies", [])),
            estimated_duration=data.get("estimated_duration"),
        )


@dataclass
class PhasePlan:
    id: str
    conversation_id: str
    title: str
    description: str
    phases: list[Phase]
    created_at: int
    metadata: PhasePlanMetadata = field(default_factory=PhasePlanMetadata)

    @property
    def total_phases(self) -> int:
        # Derived, so it can never drift from the phase list
        return len(self.phases)

    def get_phase(self, phase_id: str) -> Phase | None:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        return None

    def iter_tasks(self):
        """Yield (phase, task) pairs in phase order, then task order."""
        for phase in self.phases:
            for task in phase.tasks:
                yield phase, task

    def count_tasks(self) -> tuple[int, int]:
        """Return (completed, total) task counts."""
        completed = total = 0
        for _, task in self.iter_tasks():
            total += 1
            if task.status == "completed":
                completed += 1
        return completed, total

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "title": self.title,
            "description": self.description,
            "phases": [p.to_dict() for p in self.phases],
            "total_phases": self.total_phases,
            "created_at": self.created_at,
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PhasePlan":
        return cls(
            id=data["id"],
            conversation_id=data.get("conversation_id", ""),
            title=data.get("title", ""),
            description=data.get("description", ""),
            phases=[Phase.from_dict(p) for p in data.get("phases", [])],
            created_at=data.get("created_at", 0),
            metadata=PhasePlanMetadata.from_dict(data.get("metadata") or {}),
        )
