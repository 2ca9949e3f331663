"""
Failure journal for the autonomous loop.

Each task accumulates an append-only list of failed attempts. The journal is
only ever read back as prompt context so the next attempt can avoid repeating
the same mistake; it is never truncated during a run.
"""

from dataclasses import dataclass, field

from junkrat.lib.types import now_ms

__all__ = ["FailureAttempt", "FailureJournalEntry", "FailureJournal", "format_failure_history"]


@dataclass(frozen=True)
class FailureAttempt:
    iteration: int
    error: str
    analysis: str | None = None
    correction_attempt: str | None = None
    timestamp: int = field(default_factory=now_ms)


@dataclass
class FailureJournalEntry:
    task_id: str
    task_title: str
    attempts: list[FailureAttempt] = field(default_factory=list)


class FailureJournal:
    """Per-task failure log, keyed by task id."""

    def __init__(self):
        self._entries: dict[str, FailureJournalEntry] = {}

    def record(
        self,
        task_id: str,
        task_title: str,
        iteration: int,
        error: str,
        analysis: str | None = None,
        correction_attempt: str | None = None,
    ) -> FailureJournalEntry:
        entry = self._entries.get(task_id)
        if entry is None:
            entry = FailureJournalEntry(task_id=task_id, task_title=task_title)
            self._entries[task_id] = entry
        entry.attempts.append(FailureAttempt(
            iteration=iteration,
            error=error,
            analysis=analysis,
            correction_attempt=correction_attempt,
        ))
        return entry

    def get(self, task_id: str) -> FailureJournalEntry | None:
        return self._entries.get(task_id)

    def total_failures(self) -> int:
        return sum(len(e.attempts) for e in self._entries.values())

    def entries(self) -> list[FailureJournalEntry]:
        return list(self._entries.values())

    def clear(self) -> None:
        self._entries.clear()


def format_failure_history(entry: FailureJournalEntry | None) -> str:
    """
    Format a task's failed attempts for the execution prompt.

    Shows every earlier attempt so the model learns from them.

    Returns:
        Formatted text for insertion into the prompt, or "" when there is no history
    """
    if entry is None or not entry.attempts:
        return ""

    parts = ["Previous attempts that failed:"]
    for i, attempt in enumerate(entry.attempts, 1):
        lines = [f"Attempt {i} (Iteration {attempt.iteration}):", f"  Error: {attempt.error}"]
        if attempt.analysis:
            lines.append(f"  Analysis: {attempt.analysis}")
        if attempt.correction_attempt:
            lines.append(f"  Tried: {attempt.correction_attempt}")
        parts.append("\n".join(lines))

    parts.append("Learn from these failures and try a different approach.")
    return "\n\n".join(parts)
