"""Tests for junkrat.lib.storage module."""

import asyncio
import json

import pytest

from junkrat.lib.storage import DebouncedSaver, JsonFileStore, atomic_write_json
from junkrat.lib.types import Conversation, ConversationMetadata, ConversationState, Message
from junkrat.lib.validate import ValidationError

from fakes import make_plan


def _conversation(conversation_id: str = "conv-1", with_plan: bool = False) -> Conversation:
    return Conversation(
        metadata=ConversationMetadata(
            id=conversation_id,
            title="Todo app",
            state=ConversationState.COMPLETE if with_plan else ConversationState.GATHERING_REQUIREMENTS,
        ),
        messages=[Message(role="user", content="Build a todo app"), Message(role="assistant", content="Sure")],
        phase_plan=make_plan(conversation_id=conversation_id) if with_plan else None,
    )


class TestAtomicWrite:
    """Tests for atomic_write_json."""

    def test_writes_and_leaves_no_temp_files(self, tmp_path):
        path = tmp_path / "nested" / "data.json"
        atomic_write_json(path, {"a": 1})
        atomic_write_json(path, {"a": 2})
        assert json.loads(path.read_text()) == {"a": 2}
        assert [p.name for p in path.parent.iterdir()] == ["data.json"]

    def test_unserializable_keeps_previous_file(self, tmp_path):
        path = tmp_path / "data.json"
        atomic_write_json(path, {"a": 1})
        with pytest.raises(TypeError):
            atomic_write_json(path, {"a": object()})
        assert json.loads(path.read_text()) == {"a": 1}
        assert [p.name for p in tmp_path.iterdir()] == ["data.json"]


class TestJsonFileStore:
    """Tests for JsonFileStore."""

    def test_round_trip(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.save_conversation(_conversation())
        loaded = store.load_conversation("conv-1")
        assert loaded.metadata.title == "Todo app"
        assert loaded.state == ConversationState.GATHERING_REQUIREMENTS
        assert [m.content for m in loaded.messages] == ["Build a todo app", "Sure"]

    def test_plan_written_separately(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.save_conversation(_conversation(with_plan=True))
        assert (tmp_path / "plans" / "conv-1.json").exists()

        plan = store.load_plan("conv-1")
        assert plan.id == "plan-1"
        assert plan.total_phases == 3
        assert store.load_conversation("conv-1").phase_plan.id == "plan-1"

    def test_invalid_plan_refused(self, tmp_path):
        store = JsonFileStore(tmp_path)
        plan = make_plan()
        plan.phases[0].status = "abandoned"
        with pytest.raises(ValidationError, match="Refusing to write"):
            store.save_plan("conv-1", plan)
        assert not (tmp_path / "plans" / "conv-1.json").exists()

    def test_missing_returns_none(self, tmp_path):
        store = JsonFileStore(tmp_path)
        assert store.load_conversation("nope") is None
        assert store.load_plan("nope") is None
        assert store.load_all() == []
        assert store.get_active_id() is None

    def test_corrupt_file_skipped(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.save_conversation(_conversation("good"))
        (tmp_path / "conversations" / "bad.json").write_text("{not json")
        (tmp_path / "conversations" / "empty.json").write_text("{}")

        assert store.load_conversation("bad") is None
        assert [c.id for c in store.load_all()] == ["good"]

    def test_active_id(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.set_active_id("conv-1")
        assert store.get_active_id() == "conv-1"
        assert json.loads((tmp_path / "active.json").read_text()) == {"active_conversation_id": "conv-1"}

    def test_delete_clears_active(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.save_conversation(_conversation(with_plan=True))
        store.set_active_id("conv-1")

        store.delete_conversation("conv-1")
        assert store.load_conversation("conv-1") is None
        assert not (tmp_path / "plans" / "conv-1.json").exists()
        assert store.get_active_id() is None

    def test_delete_missing_is_harmless(self, tmp_path):
        JsonFileStore(tmp_path).delete_conversation("nope")


class TestDebouncedSaver:
    """Tests for DebouncedSaver."""

    pytestmark = pytest.mark.anyio

    async def test_burst_coalesced_to_last(self):
        saved = []
        saver = DebouncedSaver(lambda value: saved.append(value), delay=0.01)
        for value in range(5):
            saver.schedule("k", value)
        await asyncio.sleep(0.05)
        assert saved == [4]
        assert saver.pending_keys() == []

    async def test_keys_independent(self):
        saved = []
        saver = DebouncedSaver(lambda key: saved.append(key), delay=0.01)
        saver.schedule("a", "a")
        saver.schedule("b", "b")
        await asyncio.sleep(0.05)
        assert sorted(saved) == ["a", "b"]

    async def test_flush_runs_pending_now(self):
        saved = []
        saver = DebouncedSaver(lambda value: saved.append(value), delay=60)
        saver.schedule("k", "v")
        assert saver.pending_keys() == ["k"]
        await saver.flush()
        assert saved == ["v"]
        assert saver.pending_keys() == []

    async def test_async_save_fn(self):
        saved = []

        async def save(value):
            await asyncio.sleep(0)
            saved.append(value)

        saver = DebouncedSaver(save, delay=60)
        saver.schedule("k", "v")
        await saver.flush()
        assert saved == ["v"]

    async def test_locks_released_after_saves(self):
        """Per-key locks do not outlive the saves that needed them."""
        saved = []
        saver = DebouncedSaver(lambda key: saved.append(key), delay=0.01)
        for n in range(20):
            saver.schedule(f"conv-{n}", n)
        await asyncio.sleep(0.05)
        assert len(saved) == 20
        assert saver._locks == {}
        saver.schedule("conv-x", "x")
        await saver.flush()
        assert saver._locks == {}

    async def test_overlapping_saves_serialized(self):
        """A save that comes due while one is running waits for it."""
        events = []
        release = asyncio.Event()

        async def save(value):
            events.append(("start", value))
            if value == 1:
                await release.wait()
            events.append(("end", value))

        saver = DebouncedSaver(save, delay=0.01)
        saver.schedule("k", 1)
        await asyncio.sleep(0.03)
        saver.schedule("k", 2)
        await asyncio.sleep(0.03)
        assert events == [("start", 1)]
        release.set()
        await saver.flush()
        assert events == [("start", 1), ("end", 1), ("start", 2), ("end", 2)]
        assert saver._locks == {}

    async def test_cancel(self):
        saved = []
        saver = DebouncedSaver(lambda value: saved.append(value), delay=0.01)
        saver.schedule("k", "v")
        assert saver.cancel("k")
        assert not saver.cancel("k")
        await asyncio.sleep(0.05)
        assert saved == []

    async def test_cancel_all(self):
        saved = []
        saver = DebouncedSaver(lambda value: saved.append(value), delay=0.01)
        saver.schedule("a", 1)
        saver.schedule("b", 2)
        saver.cancel_all()
        await asyncio.sleep(0.05)
        assert saved == []

    async def test_save_error_logged(self, caplog):
        def boom(value):
            raise OSError("disk full")

        saver = DebouncedSaver(boom, delay=60)
        saver.schedule("k", "v")
        await saver.flush()
        assert "Save failed for k" in caplog.text
