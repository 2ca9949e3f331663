"""Tests for junkrat.lib.journal module."""

from junkrat.lib.journal import FailureJournal, format_failure_history


class TestFailureJournal:
    """Test per-task failure recording."""

    def test_record_appends(self):
        journal = FailureJournal()
        journal.record("task-001", "Create models", 1, "ImportError")
        entry = journal.record("task-001", "Create models", 3, "Tests failed", analysis="Wrong path")

        assert entry is journal.get("task-001")
        assert [a.iteration for a in entry.attempts] == [1, 3]
        assert entry.attempts[1].analysis == "Wrong path"
        assert entry.task_title == "Create models"

    def test_totals_across_tasks(self):
        journal = FailureJournal()
        journal.record("task-001", "A", 1, "e1")
        journal.record("task-002", "B", 2, "e2")
        journal.record("task-001", "A", 3, "e3")
        assert journal.total_failures() == 3
        assert [e.task_id for e in journal.entries()] == ["task-001", "task-002"]

    def test_unknown_task(self):
        assert FailureJournal().get("task-404") is None

    def test_clear(self):
        journal = FailureJournal()
        journal.record("task-001", "A", 1, "e1")
        journal.clear()
        assert journal.total_failures() == 0
        assert journal.get("task-001") is None


class TestFormatFailureHistory:
    """Test rendering of failure history for prompts."""

    def test_empty(self):
        assert format_failure_history(None) == ""

    def test_all_attempts_shown(self):
        journal = FailureJournal()
        journal.record("task-001", "A", 2, "SyntaxError in models.py")
        entry = journal.record(
            "task-001", "A", 4, "Tests failed",
            analysis="Fixture missing", correction_attempt="Added conftest",
        )

        text = format_failure_history(entry)

        assert text == (
            "Previous attempts that failed:\n\n"
            "Attempt 1 (Iteration 2):\n"
            "  Error: SyntaxError in models.py\n\n"
            "Attempt 2 (Iteration 4):\n"
            "  Error: Tests failed\n"
            "  Analysis: Fixture missing\n"
            "  Tried: Added conftest\n\n"
            "Learn from these failures and try a different approach."
        )
