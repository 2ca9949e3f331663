"""
Event collaborator for junkrat.

The conversation manager and the autonomous loop report what they do
through an EventBus: state transitions, loop progress and loop completion.
Front ends (the CLI, tests, a UI) subscribe with plain callables.

A listener that raises is logged and skipped; one broken subscriber must
not stop a conversation turn or an autonomous run.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from junkrat.lib.types import ConversationState, now_ms

logger = logging.getLogger(__name__)

__all__ = ["TransitionEvent", "ProgressEvent", "CompletionEvent", "EventBus"]


@dataclass(frozen=True)
class TransitionEvent:
    conversation_id: str
    from_state: ConversationState
    to_state: ConversationState
    trigger: str | None = None
    timestamp: int = field(default_factory=now_ms)
    payload: dict[str, Any] | None = None


@dataclass(frozen=True)
class ProgressEvent:
    iteration: int
    max_iterations: int
    completed_tasks: int
    total_tasks: int
    status: str  # idle, running, paused, completed, stopped, max_iterations, error
    combo_multiplier: float = 1.0
    achievements: tuple[str, ...] = ()
    current_task: str | None = None


@dataclass(frozen=True)
class CompletionEvent:
    success: bool
    iterations: int
    status: str  # completed, stopped, max_iterations, error
    error: str | None = None


class EventBus:
    """Synchronous fan-out to registered listeners."""

    def __init__(self):
        self._transition: list[Callable[[TransitionEvent], None]] = []
        self._progress: list[Callable[[ProgressEvent], None]] = []
        self._completion: list[Callable[[CompletionEvent], None]] = []

    def on_transition(self, listener: Callable[[TransitionEvent], None]) -> None:
        self._transition.append(listener)

    def on_progress(self, listener: Callable[[ProgressEvent], None]) -> None:
        self._progress.append(listener)

    def on_completion(self, listener: Callable[[CompletionEvent], None]) -> None:
        self._completion.append(listener)

    def _fire(self, listeners: list[Callable], event: Any) -> None:
        for listener in list(listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Event listener {listener!r} failed on {type(event).__name__}: {e}")

    def emit_transition(self, event: TransitionEvent) -> None:
        self._fire(self._transition, event)

    def emit_progress(self, event: ProgressEvent) -> None:
        self._fire(self._progress, event)

    def emit_completion(self, event: CompletionEvent) -> None:
        self._fire(self._completion, event)
