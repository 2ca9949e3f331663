"""Tests for junkrat.cli module."""

import os

import pytest

from junkrat.cli import main
from junkrat.lib.storage import JsonFileStore
from junkrat.lib.types import Conversation, ConversationMetadata, ConversationState, Message

from fakes import make_plan


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("JUNKRAT_"):
            monkeypatch.delenv(name)


@pytest.fixture
def project(tmp_path):
    """Project directory with one planned and one in-progress conversation."""
    store = JsonFileStore(tmp_path / ".junkrat")
    planned = Conversation(
        metadata=ConversationMetadata(
            id="conv-1", title="Todo app", state=ConversationState.COMPLETE, updated_at=2, phase_count=3,
        ),
        messages=[Message(role="user", content="Build a todo app")],
        phase_plan=make_plan(conversation_id="conv-1"),
    )
    chatting = Conversation(
        metadata=ConversationMetadata(
            id="conv-2", title="Blog", state=ConversationState.GATHERING_REQUIREMENTS, updated_at=1,
        ),
        messages=[
            Message(role="system", content="You are an expert"),
            Message(role="user", content="I want a blog"),
            Message(role="assistant", content="Who reads it?"),
        ],
    )
    store.save_conversation(planned)
    store.save_conversation(chatting)
    store.set_active_id("conv-1")
    return tmp_path


class TestConversationsCommand:
    """Test `junkrat conversations`."""

    def test_empty(self, tmp_path, capsys):
        assert main(["--project", str(tmp_path), "conversations"]) == 0
        assert "No conversations yet." in capsys.readouterr().out

    def test_lists_most_recent_first(self, project, capsys):
        assert main(["--project", str(project), "conversations"]) == 0
        lines = capsys.readouterr().out.splitlines()
        assert lines[0].startswith("* conv-1")
        assert "Todo app (3 phases)" in lines[0]
        assert lines[1].startswith("  conv-2")
        assert "GATHERING_REQUIREMENTS" in lines[1]


class TestShowCommand:
    """Test `junkrat show`."""

    def test_plan_markdown(self, project, capsys):
        assert main(["--project", str(project), "show", "conv-1"]) == 0
        assert capsys.readouterr().out.startswith("# Todo App")

    def test_plan_summary(self, project, capsys):
        assert main(["--project", str(project), "show", "conv-1", "--format", "summary"]) == 0
        assert "Project: Todo App | 3 phases | Complexity: simple" in capsys.readouterr().out

    def test_history_without_plan(self, project, capsys):
        assert main(["--project", str(project), "show", "conv-2"]) == 0
        out = capsys.readouterr().out
        assert "Blog [GATHERING_REQUIREMENTS]" in out
        assert "USER:\nI want a blog" in out
        assert "You are an expert" not in out

    def test_unknown(self, project, capsys):
        assert main(["--project", str(project), "show", "nope"]) == 1
        assert "not found" in capsys.readouterr().out


class TestCommandErrors:
    """Test error exits."""

    def test_bad_config(self, tmp_path, capsys):
        (tmp_path / "junkrat.yaml").write_text("execution:\n  verification: maybe\n")
        assert main(["--project", str(tmp_path), "conversations"]) == 2
        assert "verification" in capsys.readouterr().out

    def test_plan_missing_file(self, tmp_path, capsys):
        assert main(["--project", str(tmp_path), "plan", str(tmp_path / "missing.md")]) == 1
        assert "Requirements file not found" in capsys.readouterr().out

    def test_run_conversation_without_plan(self, project, capsys):
        assert main(["--project", str(project), "run", "Build it", "--conversation", "conv-2"]) == 1
        assert "has no phase plan" in capsys.readouterr().out
