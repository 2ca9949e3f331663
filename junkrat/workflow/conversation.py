"""
Conversation management.

ConversationManager drives one user turn at a time through the conversation
state machine:

    IDLE                    render the gatherer prompt, start gathering, reply
    GATHERING_REQUIREMENTS  reply, or (once ready) analyze and generate a plan
    ANALYZING_REQUIREMENTS  finish an interrupted analysis
    GENERATING_PHASES       finish an interrupted generation
    COMPLETE                follow-up chat with the plan as context
    ERROR                   fixed reply; needs reset or a new conversation

Provider calls go through the ProviderDispatcher (retry + fallback). A
provider or generation failure during a turn moves the conversation to
ERROR and is re-raised; a cancelled turn leaves the state where it was so
the next turn can pick it up.

Every change schedules a debounced save when a store is configured.
"""

import asyncio
import logging
from dataclasses import dataclass

from junkrat.events import EventBus, TransitionEvent
from junkrat.lib.constants import (
    DEFAULT_CONVERSATION_TITLE,
    READINESS_CHAR_THRESHOLD,
    READINESS_MIN_USER_TURNS,
    READINESS_PHRASES,
    SAVE_DEBOUNCE_SECONDS,
    TITLE_CUT_LEN,
    TITLE_MAX_LEN,
    TITLE_MIN_WORD_CUT,
)
from junkrat.lib.errors import CancellationError
from junkrat.lib.prompts import PromptEngine, PromptRole, RenderedPrompt
from junkrat.lib.retry import CancelToken
from junkrat.lib.storage import ConversationStore, DebouncedSaver
from junkrat.lib.types import (
    Conversation,
    ConversationMetadata,
    ConversationState,
    Message,
    MessageMetadata,
    new_id,
    now_ms,
)
from junkrat.lib.validate import ValidationError
from junkrat.pm.formatter import to_json, to_markdown
from junkrat.pm.generator import ChatHandle, PhaseGenerator
from junkrat.pm.models import Phase, PhasePlan
from junkrat.pm.phases import PhaseManager
from junkrat.providers.base import ChatRequest
from junkrat.providers.dispatch import ProviderDispatcher
from junkrat.workflow.context import ContextBudgetManager
from junkrat.workflow.fsm import ConversationFSM

logger = logging.getLogger(__name__)

__all__ = [
    "ConversationManager",
    "ConversationError",
    "SendResult",
    "generate_title",
    "is_ready_for_planning",
    "ERROR_STATE_MESSAGE",
    "NO_REQUIREMENTS_MESSAGE",
]

ERROR_STATE_MESSAGE = "The conversation is in an error state. Please start a new conversation or reset it."
NO_REQUIREMENTS_MESSAGE = "Unable to generate a phase plan without requirements. Please provide more details."
ANALYZED_MESSAGE = "Requirements analyzed. Generating phase plan..."
NO_REQUIREMENTS_SUMMARY = "No requirements provided."


class ConversationError(Exception):
    """Unknown conversation or an operation the conversation can't support."""
    pass


@dataclass
class SendResult:
    response: str
    conversation: Conversation


def generate_title(first_message: str) -> str:
    """Conversation title from the first user message.

    Up to 50 characters are kept verbatim. Longer text is cut to 47
    characters, backed up to the last space when that space is past
    character 20, and ended with "...".
    """
    trimmed = first_message.strip()
    if not trimmed:
        return DEFAULT_CONVERSATION_TITLE
    if len(trimmed) <= TITLE_MAX_LEN:
        return trimmed

    shortened = trimmed[:TITLE_CUT_LEN]
    last_space = shortened.rfind(" ")
    if last_space > TITLE_MIN_WORD_CUT:
        shortened = shortened[:last_space]
    return f"{shortened}..."


def is_ready_for_planning(conversation: Conversation) -> bool:
    """Readiness predicate for leaving GATHERING_REQUIREMENTS.

    Needs at least two user turns, plus either a confirmation phrase in the
    latest one or more than 400 characters of user text in total.
    """
    user_messages = conversation.user_messages()
    if len(user_messages) < READINESS_MIN_USER_TURNS:
        return False

    last = user_messages[-1].content.lower()
    if any(phrase in last for phrase in READINESS_PHRASES):
        return True

    return sum(len(m.content) for m in user_messages) > READINESS_CHAR_THRESHOLD


def collect_requirements(conversation: Conversation) -> str:
    return "\n\n".join(m.content for m in conversation.user_messages())


class ConversationManager:
    """Owns the in-memory conversations and their state machines."""

    def __init__(
        self,
        dispatcher: ProviderDispatcher,
        prompt_engine: PromptEngine,
        generator: PhaseGenerator | None = None,
        context: ContextBudgetManager | None = None,
        store: ConversationStore | None = None,
        events: EventBus | None = None,
        save_debounce: float = SAVE_DEBOUNCE_SECONDS,
    ):
        self.dispatcher = dispatcher
        self.prompt_engine = prompt_engine
        self.generator = generator or PhaseGenerator(prompt_engine)
        self.context = context or ContextBudgetManager(prompt_engine)
        self.store = store
        self.events = events or EventBus()

        self._conversations: dict[str, Conversation] = {}
        self._machines: dict[str, ConversationFSM] = {}
        self._active_id: str | None = None
        self._saver = DebouncedSaver(self._persist, delay=save_debounce)

    # ------------------------------------------------------------------
    # Conversation CRUD
    # ------------------------------------------------------------------

    def create_conversation(self, title: str | None = None) -> Conversation:
        conversation = Conversation(
            metadata=ConversationMetadata(id=new_id(), title=title or DEFAULT_CONVERSATION_TITLE)
        )
        self._conversations[conversation.id] = conversation
        self._active_id = conversation.id
        logger.info(f"Created conversation {conversation.id}: {conversation.metadata.title}")
        self._schedule_save(conversation)
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def get_active_conversation(self) -> Conversation | None:
        return self._conversations.get(self._active_id) if self._active_id else None

    @property
    def active_id(self) -> str | None:
        return self._active_id

    def set_active_conversation(self, conversation_id: str) -> None:
        self._require(conversation_id)
        self._active_id = conversation_id
        if self.store is not None:
            self.store.set_active_id(conversation_id)

    def list_conversations(self) -> list[ConversationMetadata]:
        """Conversation metadata, most recently updated first."""
        return sorted(
            (c.metadata for c in self._conversations.values()),
            key=lambda m: m.updated_at,
            reverse=True,
        )

    def get_history(self, conversation_id: str) -> list[Message]:
        conversation = self._conversations.get(conversation_id)
        return list(conversation.messages) if conversation else []

    def rename_conversation(self, conversation_id: str, title: str) -> None:
        conversation = self._require(conversation_id)
        conversation.metadata.title = title
        conversation.metadata.updated_at = now_ms()
        self._save_now(conversation)

    def clear_conversation(self, conversation_id: str) -> None:
        """Drop messages, summary and plan, and return to IDLE."""
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return
        conversation.messages = []
        conversation.summary = None
        conversation.phase_plan = None
        conversation.metadata.phase_count = None
        conversation.metadata.requirements_summary = None
        self._fsm(conversation).fire("reset", {"reason": "cleared"})
        self._touch(conversation)

    def reset_conversation(self, conversation_id: str) -> Conversation:
        """Explicit recovery: back to IDLE, keeping the message history."""
        conversation = self._require(conversation_id)
        self._fsm(conversation).fire("reset", {"reason": "reset"})
        self._touch(conversation)
        return conversation

    def delete_conversation(self, conversation_id: str) -> bool:
        conversation = self._conversations.pop(conversation_id, None)
        if conversation is None:
            return False
        self._machines.pop(conversation_id, None)
        self._saver.cancel(conversation_id)
        if self._active_id == conversation_id:
            self._active_id = None
        if self.store is not None:
            self.store.delete_conversation(conversation_id)
        logger.info(f"Deleted conversation {conversation_id}")
        return True

    def transition_state(self, conversation_id: str, new_state: ConversationState) -> ConversationState:
        """Move a conversation to `new_state` if the state machine allows it.

        Raises:
            ConversationError: Unknown conversation
            InvalidTransition: No transition between the two states
        """
        conversation = self._require(conversation_id)
        state = self._fsm(conversation).transition_to(new_state)
        self._touch(conversation)
        return state

    def load_from_storage(self) -> int:
        """Load every stored conversation. Returns how many were loaded."""
        if self.store is None:
            return 0
        conversations = self.store.load_all()
        for conversation in conversations:
            self._conversations[conversation.id] = conversation
            self._machines.pop(conversation.id, None)

        active_id = self.store.get_active_id()
        if active_id and active_id in self._conversations:
            self._active_id = active_id

        logger.info(f"Loaded {len(conversations)} conversations from storage")
        return len(conversations)

    async def flush(self) -> None:
        """Write every pending debounced save now."""
        await self._saver.flush()

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def send_message(
        self,
        text: str,
        conversation_id: str | None = None,
        provider_id: str | None = None,
        cancel_token: CancelToken | None = None,
    ) -> SendResult:
        """
        Handle one user turn.

        Raises:
            ConversationError: Unknown conversation_id
            CancellationError: The turn was cancelled (state is left unchanged)
            AIError / PlanGenerationError: After moving the conversation to ERROR
        """
        conversation = self._resolve_conversation(conversation_id, text)
        conversation.messages.append(Message(role="user", content=text))
        self._touch(conversation)

        if conversation.state == ConversationState.ERROR:
            return SendResult(ERROR_STATE_MESSAGE, conversation)

        self.context.configure_for_provider(provider_id or self.dispatcher.registry.active_id)
        handle = self.dispatcher.bind(provider_id)

        try:
            response = await self._handle_turn(conversation, handle, cancel_token)
        except CancellationError:
            logger.info(f"Turn cancelled for conversation {conversation.id} in {conversation.state.value}")
            raise
        except Exception as e:
            self._fail(conversation, e)
            raise

        return SendResult(response, conversation)

    async def regenerate_plan(
        self,
        conversation_id: str,
        provider_id: str | None = None,
        cancel_token: CancelToken | None = None,
    ) -> PhasePlan:
        """Generate a fresh plan from the stored requirements and land in COMPLETE.

        Raises:
            ConversationError: Unknown conversation, or no requirements yet
            InvalidTransition: The conversation is in ERROR
        """
        conversation = self._require(conversation_id)
        fsm = self._fsm(conversation)
        if not fsm.can("plan_regenerated"):
            fsm.transition_to(ConversationState.COMPLETE)  # raises InvalidTransition

        requirements = conversation.metadata.requirements_summary or collect_requirements(conversation)
        if not requirements:
            raise ConversationError("Cannot regenerate phase plan without requirements.")

        self.context.configure_for_provider(provider_id or self.dispatcher.registry.active_id)
        plan = await self.generator.generate_phase_plan(
            requirements, conversation.id, self.dispatcher.bind(provider_id), cancel_token
        )
        self._attach_plan(conversation, plan)
        fsm.fire("plan_regenerated", {"phase_plan_id": plan.id})
        self._touch(conversation)
        return plan

    async def plan_from_requirements(
        self,
        requirements: str,
        title: str | None = None,
        provider_id: str | None = None,
        cancel_token: CancelToken | None = None,
    ) -> Conversation:
        """One-shot planning: new conversation, requirements as its only user turn, plan generated."""
        conversation = self.create_conversation(title or generate_title(requirements))
        conversation.messages.append(Message(role="user", content=requirements))
        self._fsm(conversation).fire("start_gathering")
        try:
            await self.regenerate_plan(conversation.id, provider_id, cancel_token)
        except CancellationError:
            raise
        except Exception as e:
            self._fail(conversation, e)
            raise
        return conversation

    def save_conversation(self, conversation_id: str) -> None:
        """Schedule a save after changes made outside the manager (e.g. task progress)."""
        self._touch(self._require(conversation_id))

    async def add_phase_with_ai(
        self,
        conversation_id: str,
        prompt: str,
        after_phase_id: str | None = None,
        provider_id: str | None = None,
        cancel_token: CancelToken | None = None,
    ) -> Phase:
        """Ask the provider for one new phase and insert it after `after_phase_id`."""
        conversation = self._require(conversation_id)
        plan = self._require_plan(conversation)

        phase = await self.generator.generate_single_phase(
            plan, prompt, after_phase_id, self.dispatcher.bind(provider_id), cancel_token
        )
        PhaseManager(plan).insert_phase(phase, after_phase_id)
        conversation.metadata.phase_count = plan.total_phases
        logger.info(f"[PLAN] Added phase {phase.id} '{phase.title}' to conversation {conversation.id}")
        self._touch(conversation)
        return phase

    def edit_phase(self, conversation_id: str, phase_id: str, **updates) -> Phase:
        conversation = self._require(conversation_id)
        phase = PhaseManager(self._require_plan(conversation)).edit_phase(phase_id, **updates)
        self._touch(conversation)
        return phase

    def delete_phase(self, conversation_id: str, phase_id: str) -> None:
        conversation = self._require(conversation_id)
        plan = self._require_plan(conversation)
        PhaseManager(plan).delete_phase(phase_id)
        conversation.metadata.phase_count = plan.total_phases
        self._touch(conversation)

    async def _handle_turn(
        self,
        conversation: Conversation,
        handle: ChatHandle,
        cancel_token: CancelToken | None,
    ) -> str:
        state = conversation.state

        if state == ConversationState.IDLE:
            self._ensure_system_prompt(conversation, self._render_gatherer())
            self._fsm(conversation).fire("start_gathering")
            return await self._send(conversation, handle, cancel_token)

        if state == ConversationState.GATHERING_REQUIREMENTS:
            if is_ready_for_planning(conversation):
                return await self._proceed_to_generation(conversation, handle, cancel_token)
            self._ensure_system_prompt(conversation, self._render_gatherer())
            return await self._send(conversation, handle, cancel_token)

        if state == ConversationState.ANALYZING_REQUIREMENTS:
            conversation.metadata.requirements_summary = await self._analyze(conversation, handle, cancel_token)
            self._fsm(conversation).fire("begin_generation")
            return ANALYZED_MESSAGE

        if state == ConversationState.GENERATING_PHASES:
            return await self._generate_plan(conversation, handle, cancel_token)

        if state == ConversationState.COMPLETE:
            self._ensure_plan_context(conversation)
            return await self._send(conversation, handle, cancel_token)

        return ERROR_STATE_MESSAGE

    async def _proceed_to_generation(
        self,
        conversation: Conversation,
        handle: ChatHandle,
        cancel_token: CancelToken | None,
    ) -> str:
        fsm = self._fsm(conversation)
        fsm.fire("begin_analysis")
        conversation.metadata.requirements_summary = await self._analyze(conversation, handle, cancel_token)
        fsm.fire("begin_generation")
        return await self._generate_plan(conversation, handle, cancel_token)

    async def _analyze(
        self,
        conversation: Conversation,
        handle: ChatHandle,
        cancel_token: CancelToken | None,
    ) -> str:
        requirements = collect_requirements(conversation)
        if not requirements:
            return NO_REQUIREMENTS_SUMMARY

        rendered = self.prompt_engine.render(
            PromptRole.REQUIREMENT_ANALYZER,
            conversation_state=ConversationState.ANALYZING_REQUIREMENTS,
            requirements=requirements,
        )
        response = await handle.chat(ChatRequest(messages=rendered.to_messages(), cancel_token=cancel_token))
        logger.debug(f"Requirements analysis for {conversation.id}: {len(response.content)} chars")
        return response.content

    async def _generate_plan(
        self,
        conversation: Conversation,
        handle: ChatHandle,
        cancel_token: CancelToken | None,
    ) -> str:
        requirements = conversation.metadata.requirements_summary or collect_requirements(conversation)
        if not requirements:
            self._fsm(conversation).fire("fail", {"error": NO_REQUIREMENTS_MESSAGE})
            return NO_REQUIREMENTS_MESSAGE

        plan = await self.generator.generate_phase_plan(requirements, conversation.id, handle, cancel_token)
        markdown = self._attach_plan(conversation, plan)
        self._fsm(conversation).fire("plan_ready", {"phase_plan_id": plan.id})
        self._touch(conversation)
        return markdown

    async def _send(
        self,
        conversation: Conversation,
        handle: ChatHandle,
        cancel_token: CancelToken | None,
    ) -> str:
        messages = await self.context.build_context(conversation, handle, cancel_token)
        response = await handle.chat(ChatRequest(
            messages=[m.to_chat() for m in messages],
            cancel_token=cancel_token,
        ))
        conversation.messages.append(Message(role="assistant", content=response.content))
        self._touch(conversation)
        return response.content

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationError(f"Conversation not found: {conversation_id}")
        return conversation

    def _require_plan(self, conversation: Conversation) -> PhasePlan:
        if conversation.phase_plan is None:
            raise ConversationError(f"Conversation {conversation.id} has no phase plan")
        return conversation.phase_plan

    def _resolve_conversation(self, conversation_id: str | None, first_message: str) -> Conversation:
        if conversation_id:
            conversation = self._require(conversation_id)
            self._active_id = conversation_id
            return conversation

        active = self.get_active_conversation()
        if active is not None:
            return active
        return self.create_conversation(generate_title(first_message))

    def _fsm(self, conversation: Conversation) -> ConversationFSM:
        fsm = self._machines.get(conversation.id)
        if fsm is None:
            fsm = ConversationFSM(conversation, on_transition=self._on_transition)
            self._machines[conversation.id] = fsm
        return fsm

    def _on_transition(self, event: TransitionEvent) -> None:
        self.events.emit_transition(event)
        conversation = self._conversations.get(event.conversation_id)
        if conversation is not None:
            self._schedule_save(conversation)

    def _fail(self, conversation: Conversation, error: Exception) -> None:
        fsm = self._fsm(conversation)
        logger.error(f"Turn failed for conversation {conversation.id} in {conversation.state.value}: {error}")
        if fsm.can("fail"):
            fsm.fire("fail", {"error": str(error)})

    def _render_gatherer(self) -> RenderedPrompt:
        return self.prompt_engine.render(
            PromptRole.REQUIREMENT_GATHERER,
            conversation_state=ConversationState.GATHERING_REQUIREMENTS,
        )

    def _ensure_system_prompt(self, conversation: Conversation, rendered: RenderedPrompt) -> None:
        """Insert the rendered prompt at the front unless that template is already there."""
        for message in conversation.messages:
            if message.role == "system" and message.metadata.template_id == rendered.template_id:
                return
        conversation.messages.insert(0, Message(
            role="system",
            content=rendered.system_message,
            metadata=MessageMetadata(is_system_prompt=True, template_id=rendered.template_id),
        ))

    def _ensure_plan_context(self, conversation: Conversation) -> None:
        """Inject the plan's compact JSON as a system message, once per plan."""
        plan = conversation.phase_plan
        if plan is None:
            return
        for message in conversation.messages:
            if message.role == "system" and message.metadata.phase_plan_id == plan.id:
                return
        conversation.messages.append(Message(
            role="system",
            content=to_json(plan, pretty=False),
            metadata=MessageMetadata(is_system_prompt=True, phase_plan_id=plan.id),
        ))

    def _attach_plan(self, conversation: Conversation, plan: PhasePlan) -> str:
        conversation.phase_plan = plan
        conversation.metadata.phase_count = plan.total_phases
        markdown = to_markdown(plan)
        conversation.messages.append(Message(
            role="assistant",
            content=markdown,
            metadata=MessageMetadata(phase_plan_id=plan.id),
        ))
        return markdown

    def _touch(self, conversation: Conversation) -> None:
        conversation.metadata.updated_at = now_ms()
        self._schedule_save(conversation)

    def _persist(self, conversation: Conversation) -> None:
        self.store.save_conversation(conversation)
        self.store.set_active_id(self._active_id)

    def _save_now(self, conversation: Conversation) -> None:
        if self.store is None:
            return
        self._saver.cancel(conversation.id)
        try:
            self._persist(conversation)
        except (OSError, ValidationError) as e:
            logger.error(f"[STORE] Save failed for {conversation.id}: {e}")

    def _schedule_save(self, conversation: Conversation) -> None:
        if self.store is None:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # Synchronous caller; nothing to debounce against
            self._save_now(conversation)
            return
        self._saver.schedule(conversation.id, conversation)
