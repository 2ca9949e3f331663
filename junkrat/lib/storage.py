"""
Persistence for conversations and phase plans.

Layout under the storage directory (default .junkrat/ in the project):

    conversations/<conversation_id>.json
    plans/<conversation_id>.json
    active.json                         {"active_conversation_id": "..."}

Every write goes to a temp file in the same directory and is moved into
place with Path.replace, so saving the same conversation twice is harmless
and a crash never leaves a half-written file. Plans are validated against
schemas/phase_plan.schema.json before they are written.

DebouncedSaver coalesces bursts of saves for the same key (one conversation)
into a single write.
"""

import asyncio
import inspect
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Protocol

from junkrat.lib.types import Conversation
from junkrat.lib.validate import validate_before_write
from junkrat.pm.models import PhasePlan

logger = logging.getLogger(__name__)

__all__ = ["ConversationStore", "JsonFileStore", "DebouncedSaver", "atomic_write_json"]


class ConversationStore(Protocol):
    """What the conversation manager needs from persistence."""

    def load_conversation(self, conversation_id: str) -> Conversation | None: ...

    def save_conversation(self, conversation: Conversation) -> None: ...

    def load_all(self) -> list[Conversation]: ...

    def delete_conversation(self, conversation_id: str) -> None: ...

    def save_plan(self, conversation_id: str, plan: PhasePlan) -> None: ...

    def load_plan(self, conversation_id: str) -> PhasePlan | None: ...

    def get_active_id(self) -> str | None: ...

    def set_active_id(self, conversation_id: str | None) -> None: ...


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON via a temp file in the same directory, then replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
        tmp_path.replace(path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


class JsonFileStore:
    """ConversationStore backed by one JSON file per entity."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.conversations_dir = self.directory / "conversations"
        self.plans_dir = self.directory / "plans"
        self.active_path = self.directory / "active.json"

    def _conversation_path(self, conversation_id: str) -> Path:
        return self.conversations_dir / f"{conversation_id}.json"

    def _plan_path(self, conversation_id: str) -> Path:
        return self.plans_dir / f"{conversation_id}.json"

    def _read_json(self, path: Path) -> Any | None:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"[STORE] Could not read {path}: {e}")
            return None

    def load_conversation(self, conversation_id: str) -> Conversation | None:
        data = self._read_json(self._conversation_path(conversation_id))
        if data is None:
            return None
        try:
            conversation = Conversation.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"[STORE] Corrupt conversation {conversation_id}: {e}")
            return None
        if conversation.phase_plan is None:
            conversation.phase_plan = self.load_plan(conversation_id)
        return conversation

    def save_conversation(self, conversation: Conversation) -> None:
        path = self._conversation_path(conversation.id)
        atomic_write_json(path, conversation.to_dict())
        logger.debug(f"[STORE] Saved conversation {conversation.id}")
        if conversation.phase_plan is not None:
            self.save_plan(conversation.id, conversation.phase_plan)

    def load_all(self) -> list[Conversation]:
        if not self.conversations_dir.exists():
            return []
        conversations = []
        for path in sorted(self.conversations_dir.glob("*.json")):
            conversation = self.load_conversation(path.stem)
            if conversation is not None:
                conversations.append(conversation)
        return conversations

    def delete_conversation(self, conversation_id: str) -> None:
        self._conversation_path(conversation_id).unlink(missing_ok=True)
        self._plan_path(conversation_id).unlink(missing_ok=True)
        if self.get_active_id() == conversation_id:
            self.set_active_id(None)
        logger.debug(f"[STORE] Deleted conversation {conversation_id}")

    def save_plan(self, conversation_id: str, plan: PhasePlan) -> None:
        path = self._plan_path(conversation_id)
        data = plan.to_dict()
        validate_before_write(data, "phase_plan", path)
        atomic_write_json(path, data)

    def load_plan(self, conversation_id: str) -> PhasePlan | None:
        data = self._read_json(self._plan_path(conversation_id))
        if data is None:
            return None
        try:
            return PhasePlan.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"[STORE] Corrupt plan for {conversation_id}: {e}")
            return None

    def get_active_id(self) -> str | None:
        data = self._read_json(self.active_path)
        if not isinstance(data, dict):
            return None
        return data.get("active_conversation_id")

    def set_active_id(self, conversation_id: str | None) -> None:
        atomic_write_json(self.active_path, {"active_conversation_id": conversation_id})


class DebouncedSaver:
    """Per-key debounced saves.

    schedule(key, *args) (re)starts the key's timer; when it expires,
    save_fn(*args) runs. At most one save per key is in flight: a save that
    comes due while the previous one is still running waits for it.
    """

    def __init__(self, save_fn: Callable[..., Any], delay: float = 0.3):
        self._save_fn = save_fn
        self._delay = delay
        self._timers: dict[str, tuple[asyncio.Task, tuple]] = {}
        # Locks live only while a save for the key is running or waiting
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def pending_keys(self) -> list[str]:
        return list(self._timers)

    def schedule(self, key: str, *args: Any) -> None:
        """Schedule a save for `key`, replacing any save still waiting on its timer."""
        existing = self._timers.pop(key, None)
        if existing is not None:
            existing[0].cancel()
        task = asyncio.get_running_loop().create_task(self._delayed(key, args))
        self._timers[key] = (task, args)

    async def _delayed(self, key: str, args: tuple) -> None:
        await asyncio.sleep(self._delay)
        # Timer expired; from here on the save can no longer be replaced
        entry = self._timers.get(key)
        if entry is not None and entry[0] is asyncio.current_task():
            del self._timers[key]
        await self._run(key, args)

    async def _run(self, key: str, args: tuple) -> None:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                try:
                    result = self._save_fn(*args)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(f"[STORE] Save failed for {key}: {e}")
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    async def flush(self) -> None:
        """Run every pending save now and wait for in-flight ones."""
        timers, self._timers = self._timers, {}
        for key, (task, args) in timers.items():
            task.cancel()
            await self._run(key, args)
        # Wait out saves whose timers had already fired
        for lock in list(self._locks.values()):
            async with lock:
                pass

    def cancel(self, key: str) -> bool:
        """Drop the pending save for `key`. Returns True if one was waiting."""
        entry = self._timers.pop(key, None)
        if entry is None:
            return False
        entry[0].cancel()
        return True

    def cancel_all(self) -> None:
        for task, _ in self._timers.values():
            task.cancel()
        self._timers.clear()
