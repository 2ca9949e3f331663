"""Conversation state machine using the transitions library.

Each conversation moves through:

    IDLE -> GATHERING_REQUIREMENTS -> ANALYZING_REQUIREMENTS
         -> GENERATING_PHASES -> COMPLETE

Any working state can fail into ERROR. ERROR is only left through an
explicit reset (back to IDLE). Regenerating a plan lands in COMPLETE from
any non-error state without passing through the intermediate states.

Usage:
    from junkrat.workflow.fsm import ConversationFSM

    fsm = ConversationFSM(conversation, on_transition=events.emit_transition)
    fsm.start_gathering()
    fsm.begin_analysis()
    fsm.begin_generation()
    fsm.plan_ready()
"""

import logging
from typing import Any, Callable

from transitions import Machine, MachineError

from junkrat.events import TransitionEvent
from junkrat.lib.types import Conversation, ConversationState, now_ms

logger = logging.getLogger(__name__)

__all__ = ["ConversationFSM", "InvalidTransition", "STATES", "TRANSITIONS", "TRIGGER_FOR"]

IDLE = ConversationState.IDLE.value
GATHERING = ConversationState.GATHERING_REQUIREMENTS.value
ANALYZING = ConversationState.ANALYZING_REQUIREMENTS.value
GENERATING = ConversationState.GENERATING_PHASES.value
COMPLETE = ConversationState.COMPLETE.value
ERROR = ConversationState.ERROR.value

STATES = [state.value for state in ConversationState]

TRANSITIONS = [
    # First user turn
    {"trigger": "start_gathering", "source": IDLE, "dest": GATHERING},

    # Readiness predicate fired
    {"trigger": "begin_analysis", "source": GATHERING, "dest": ANALYZING},
    {"trigger": "begin_generation", "source": ANALYZING, "dest": GENERATING},
    {"trigger": "plan_ready", "source": GENERATING, "dest": COMPLETE},

    # Explicit regeneration side command
    {"trigger": "plan_regenerated", "source": [IDLE, GATHERING, ANALYZING, GENERATING, COMPLETE], "dest": COMPLETE},

    # Unrecoverable failure
    {"trigger": "fail", "source": [IDLE, GATHERING, ANALYZING, GENERATING, COMPLETE], "dest": ERROR},

    # Explicit recovery / clearing a conversation
    {"trigger": "reset", "source": STATES, "dest": IDLE},
]


def _build_trigger_lookup() -> dict[tuple[str, str], str]:
    """Build lookup from (source, dest) -> trigger name."""
    lookup: dict[tuple[str, str], str] = {}
    for t in TRANSITIONS:
        sources = t["source"] if isinstance(t["source"], list) else [t["source"]]
        for source in sources:
            key = (source, t["dest"])
            if key not in lookup:  # First trigger wins for a given source->dest
                lookup[key] = t["trigger"]
    return lookup


TRIGGER_FOR = _build_trigger_lookup()


class InvalidTransition(Exception):
    """Raised when attempting an invalid state transition."""

    def __init__(self, from_state: ConversationState, to_state: ConversationState, conversation_id: str = ""):
        self.from_state = from_state
        self.to_state = to_state
        self.conversation_id = conversation_id
        super().__init__(
            f"Invalid transition: {from_state.value} -> {to_state.value}"
            + (f" (conversation: {conversation_id})" if conversation_id else "")
        )


class ConversationFSM:
    """State machine bound to one Conversation.

    The conversation's metadata.state is the source of truth; the machine
    starts from it and writes every change back, touching updated_at.
    """

    def __init__(
        self,
        conversation: Conversation,
        on_transition: Callable[[TransitionEvent], None] | None = None,
    ):
        self.conversation = conversation
        self.on_transition = on_transition

        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=conversation.state.value,
            auto_transitions=False,  # Only explicit transitions
            send_event=True,  # Pass EventData to callbacks
            after_state_change="on_state_change",
        )

    @property
    def current(self) -> ConversationState:
        return ConversationState(self.state)

    def on_state_change(self, event) -> None:
        """Write the new state back to the conversation and report it."""
        from_state = ConversationState(event.transition.source)
        to_state = ConversationState(event.transition.dest)
        trigger = event.event.name

        self.conversation.metadata.state = to_state
        self.conversation.metadata.updated_at = now_ms()

        logger.info(f"[FSM] {self.conversation.id}: {from_state.value} -> {to_state.value} ({trigger})")

        if self.on_transition:
            self.on_transition(TransitionEvent(
                conversation_id=self.conversation.id,
                from_state=from_state,
                to_state=to_state,
                trigger=trigger,
                payload=event.kwargs.get("payload"),
            ))

    def can(self, trigger: str) -> bool:
        """Check if a trigger can be executed in current state."""
        return trigger in self.machine.get_triggers(self.state)

    def get_available_triggers(self) -> list[str]:
        """Get list of triggers available in current state."""
        return self.machine.get_triggers(self.state)

    def fire(self, trigger: str, payload: dict[str, Any] | None = None) -> ConversationState:
        """Run a named trigger, raising InvalidTransition if it isn't allowed here."""
        if not self.can(trigger):
            dest = next((ConversationState(d) for (s, d), t in TRIGGER_FOR.items() if t == trigger), self.current)
            raise InvalidTransition(self.current, dest, self.conversation.id)
        try:
            self.trigger(trigger, payload=payload)
        except MachineError as e:
            raise InvalidTransition(self.current, self.current, self.conversation.id) from e
        return self.current

    def transition_to(self, to_state: ConversationState, payload: dict[str, Any] | None = None) -> ConversationState:
        """Move to `to_state` via whichever trigger connects the two states.

        Raises:
            InvalidTransition: If no transition connects current state and `to_state`
        """
        to_state = ConversationState(to_state)
        trigger = TRIGGER_FOR.get((self.state, to_state.value))
        if trigger is None:
            raise InvalidTransition(self.current, to_state, self.conversation.id)
        return self.fire(trigger, payload)
