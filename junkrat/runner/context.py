"""
Run context and directory management for autonomous runs.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from junkrat.lib.storage import atomic_write_json

logger = logging.getLogger(__name__)


@dataclass
class IterationRecord:
    iteration: int
    status: str  # completed, failed, skipped, planning, refining
    task_id: Optional[str] = None
    notes: str = ""


@dataclass
class RunContext:
    """Context for a single autonomous run.

    run_dir is optional: without one, log() only goes to the logger.
    """
    run_id: str
    run_dir: Optional[Path] = None
    start_time: datetime = field(default_factory=datetime.now)
    iterations: list[IterationRecord] = field(default_factory=list)

    @classmethod
    def create(cls, base_dir: Path, label: str = "run") -> 'RunContext':
        """Create a new run context with a fresh run directory."""
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        run_id = f"{timestamp}_{label}"

        run_dir = base_dir / "runs" / run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        return cls(run_id=run_id, run_dir=run_dir)

    def log(self, message: str):
        """Append to run log."""
        logger.info(f"[LOOP] {message}")
        if self.run_dir is None:
            return
        timestamp = datetime.now().isoformat()
        with open(self.run_dir / "run.log", "a") as f:
            f.write(f"[{timestamp}] {message}\n")

    def record_iteration(self, iteration: int, status: str, task_id: Optional[str] = None, notes: str = ""):
        self.iterations.append(IterationRecord(iteration=iteration, status=status, task_id=task_id, notes=notes))

    def write_result(self, status: str, success: bool, completed_tasks: int, total_tasks: int,
                     achievements: list[str], error: Optional[str] = None):
        """Write result.json."""
        if self.run_dir is None:
            return
        end_time = datetime.now()
        result = {
            "version": 1,
            "run_id": self.run_id,
            "status": status,
            "success": success,
            "timestamps": {
                "started": self.start_time.isoformat(),
                "ended": end_time.isoformat(),
                "duration_seconds": (end_time - self.start_time).total_seconds(),
            },
            "tasks": {"completed": completed_tasks, "total": total_tasks},
            "achievements": achievements,
            "iterations": [
                {"iteration": r.iteration, "status": r.status, "task_id": r.task_id, "notes": r.notes}
                for r in self.iterations
            ],
        }
        if error:
            result["error"] = error
        atomic_write_json(self.run_dir / "result.json", result)
