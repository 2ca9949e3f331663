"""Tests for junkrat.workflow.fsm module."""

import pytest

from junkrat.lib.types import Conversation, ConversationMetadata, ConversationState
from junkrat.workflow.fsm import (
    STATES,
    TRANSITIONS,
    TRIGGER_FOR,
    ConversationFSM,
    InvalidTransition,
)


def _conversation(state: ConversationState = ConversationState.IDLE) -> Conversation:
    return Conversation(metadata=ConversationMetadata(id="conv-1", title="Test", state=state, updated_at=0))


class TestFSMDefinitions:
    """Tests for FSM state and transition tables."""

    def test_all_states_defined(self):
        assert set(STATES) == {
            "IDLE", "GATHERING_REQUIREMENTS", "ANALYZING_REQUIREMENTS",
            "GENERATING_PHASES", "COMPLETE", "ERROR",
        }

    def test_every_transition_uses_known_states(self):
        for t in TRANSITIONS:
            sources = t["source"] if isinstance(t["source"], list) else [t["source"]]
            assert set(sources) <= set(STATES)
            assert t["dest"] in STATES

    def test_trigger_lookup(self):
        assert TRIGGER_FOR[("IDLE", "GATHERING_REQUIREMENTS")] == "start_gathering"
        assert TRIGGER_FOR[("GENERATING_PHASES", "COMPLETE")] == "plan_ready"
        assert TRIGGER_FOR[("COMPLETE", "COMPLETE")] == "plan_regenerated"
        assert TRIGGER_FOR[("ERROR", "IDLE")] == "reset"

    def test_error_only_leaves_via_reset(self):
        """ERROR has exactly one way out: back to IDLE."""
        exits = {dest for (source, dest) in TRIGGER_FOR if source == "ERROR"}
        assert exits == {"IDLE"}


class TestConversationFSM:
    """Tests for ConversationFSM bound to a conversation."""

    def test_initial_state_from_conversation(self):
        fsm = ConversationFSM(_conversation(ConversationState.COMPLETE))
        assert fsm.current == ConversationState.COMPLETE

    def test_happy_path(self):
        conversation = _conversation()
        fsm = ConversationFSM(conversation)
        fsm.start_gathering()
        fsm.begin_analysis()
        fsm.begin_generation()
        fsm.plan_ready()
        assert conversation.state == ConversationState.COMPLETE

    def test_state_written_back_and_touched(self):
        conversation = _conversation()
        ConversationFSM(conversation).fire("start_gathering")
        assert conversation.metadata.state == ConversationState.GATHERING_REQUIREMENTS
        assert conversation.metadata.updated_at > 0

    def test_transition_event(self):
        events = []
        fsm = ConversationFSM(_conversation(), on_transition=events.append)
        fsm.fire("start_gathering", {"source": "test"})

        assert len(events) == 1
        event = events[0]
        assert event.conversation_id == "conv-1"
        assert event.from_state == ConversationState.IDLE
        assert event.to_state == ConversationState.GATHERING_REQUIREMENTS
        assert event.trigger == "start_gathering"
        assert event.payload == {"source": "test"}

    def test_invalid_trigger_raises(self):
        fsm = ConversationFSM(_conversation())
        with pytest.raises(InvalidTransition) as exc_info:
            fsm.fire("plan_ready")
        assert exc_info.value.from_state == ConversationState.IDLE
        assert exc_info.value.to_state == ConversationState.COMPLETE
        assert "conversation: conv-1" in str(exc_info.value)
        assert fsm.current == ConversationState.IDLE

    def test_cannot_skip_analysis(self):
        fsm = ConversationFSM(_conversation(ConversationState.GATHERING_REQUIREMENTS))
        with pytest.raises(InvalidTransition):
            fsm.transition_to(ConversationState.GENERATING_PHASES)

    def test_error_blocks_everything_but_reset(self):
        fsm = ConversationFSM(_conversation(ConversationState.ERROR))
        assert fsm.get_available_triggers() == ["reset"]
        with pytest.raises(InvalidTransition):
            fsm.transition_to(ConversationState.COMPLETE)
        fsm.fire("reset")
        assert fsm.current == ConversationState.IDLE

    @pytest.mark.parametrize("state", [
        ConversationState.IDLE,
        ConversationState.GATHERING_REQUIREMENTS,
        ConversationState.ANALYZING_REQUIREMENTS,
        ConversationState.GENERATING_PHASES,
        ConversationState.COMPLETE,
    ])
    def test_fail_from_working_states(self, state):
        fsm = ConversationFSM(_conversation(state))
        assert fsm.transition_to(ConversationState.ERROR) == ConversationState.ERROR

    @pytest.mark.parametrize("state", [
        ConversationState.IDLE,
        ConversationState.GATHERING_REQUIREMENTS,
        ConversationState.GENERATING_PHASES,
        ConversationState.COMPLETE,
    ])
    def test_regeneration_lands_in_complete(self, state):
        fsm = ConversationFSM(_conversation(state))
        fsm.fire("plan_regenerated")
        assert fsm.current == ConversationState.COMPLETE

    def test_can(self):
        fsm = ConversationFSM(_conversation())
        assert fsm.can("start_gathering")
        assert not fsm.can("begin_analysis")

    def test_no_auto_transitions(self):
        """Only the declared triggers exist; no to_<state> shortcuts."""
        fsm = ConversationFSM(_conversation())
        assert not any(t.startswith("to_") for t in fsm.get_available_triggers())
