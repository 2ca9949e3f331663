"""
Shared conversation data types.

Dataclasses used by the state machine, context manager, conversation
manager and storage. Plan types live in junkrat.pm.models.

All timestamps are epoch milliseconds (int) so serialized conversations are
stable across platforms.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from junkrat.pm.models import PhasePlan


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


class ConversationState(str, Enum):
    IDLE = "IDLE"
    GATHERING_REQUIREMENTS = "GATHERING_REQUIREMENTS"
    ANALYZING_REQUIREMENTS = "ANALYZING_REQUIREMENTS"
    GENERATING_PHASES = "GENERATING_PHASES"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"


@dataclass
class MessageMetadata:
    """Optional per-message metadata."""
    token_count: int | None = None  # Cached token estimate
    is_system_prompt: bool = False
    is_summary: bool = False
    template_id: str | None = None  # Prompt template that produced a system message
    phase_plan_id: str | None = None  # Set on messages that render or embed a plan

    def to_dict(self) -> dict:
        data: dict[str, Any] = {}
        if self.token_count is not None:
            data["token_count"] = self.token_count
        if self.is_system_prompt:
            data["is_system_prompt"] = True
        if self.is_summary:
            data["is_summary"] = True
        if self.template_id:
            data["template_id"] = self.template_id
        if self.phase_plan_id:
            data["phase_plan_id"] = self.phase_plan_id
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "MessageMetadata":
        return cls(
            token_count=data.get("token_count"),
            is_system_prompt=bool(data.get("is_system_prompt", False)),
            is_summary=bool(data.get("is_summary", False)),
            template_id=data.get("template_id"),
            phase_plan_id=data.get("phase_plan_id"),
        )


@dataclass
class Message:
    role: str  # "user", "assistant", "system"
    content: str
    id: str = field(default_factory=new_id)
    timestamp: int = field(default_factory=now_ms)
    metadata: MessageMetadata = field(default_factory=MessageMetadata)

    def to_chat(self) -> dict[str, str]:
        """Wire form sent to providers."""
        return {"role": self.role, "content": self.content}

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        meta = self.metadata.to_dict()
        if meta:
            data["metadata"] = meta
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(
            id=data["id"],
            role=data["role"],
            content=data["content"],
            timestamp=data.get("timestamp", 0),
            metadata=MessageMetadata.from_dict(data.get("metadata") or {}),
        )


@dataclass
class ConversationMetadata:
    id: str
    title: str
    state: ConversationState = ConversationState.IDLE
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)
    requirements_summary: str | None = None
    phase_count: int | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "state": self.state.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "requirements_summary": self.requirements_summary,
            "phase_count": self.phase_count,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ConversationMetadata":
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            state=ConversationState(data.get("state", ConversationState.IDLE.value)),
            created_at=data.get("created_at", 0),
            updated_at=data.get("updated_at", 0),
            requirements_summary=data.get("requirements_summary"),
            phase_count=data.get("phase_count"),
        )


@dataclass
class Conversation:
    """A conversation exclusively owns its messages and its phase plan."""
    metadata: ConversationMetadata
    messages: list[Message] = field(default_factory=list)
    summary: str | None = None
    phase_plan: PhasePlan | None = None

    @property
    def id(self) -> str:
        return self.metadata.id

    @property
    def state(self) -> ConversationState:
        return self.metadata.state

    def user_messages(self) -> list[Message]:
        return [m for m in self.messages if m.role == "user"]

    def to_dict(self) -> dict:
        return {
            "metadata": self.metadata.to_dict(),
            "messages": [m.to_dict() for m in self.messages],
            "summary": self.summary,
            "phase_plan": self.phase_plan.to_dict() if self.phase_plan else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Conversation":
        plan_data = data.get("phase_plan")
        return cls(
            metadata=ConversationMetadata.from_dict(data["metadata"]),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            summary=data.get("summary"),
            phase_plan=PhasePlan.from_dict(plan_data) if plan_data else None,
        )
