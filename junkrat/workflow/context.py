"""
Context budget management.

Keeps the history sent to a provider inside that provider's context window:

- Every message's token estimate is ceil(len(content) / 4) + 5, cached on
  message.metadata.token_count. Totals add 10 framing tokens per message.
- When the total passes max_tokens * trigger_ratio, the non-system history
  is summarized with the summarizer prompt, and the context becomes one
  synthetic summary message plus the last N messages.
- System prompts that fell out of the window are put back at the front, in
  their original order, so role instructions are never lost.

The conversation's stored messages are never modified; only the list handed
to the provider is trimmed. The latest summary is kept on
conversation.summary.
"""

import logging
import math
from dataclasses import dataclass

from junkrat.lib.config import ContextSettings
from junkrat.lib.constants import (
    CHARS_PER_TOKEN,
    DEFAULT_CONTEXT_TOKENS,
    MESSAGE_FRAMING_TOKENS,
    MESSAGE_TOKEN_OVERHEAD,
    PROVIDER_CONTEXT_TOKENS,
    SUMMARY_MESSAGE_ID,
)
from junkrat.lib.prompts import PromptEngine, PromptRole
from junkrat.lib.retry import CancelToken
from junkrat.lib.types import Conversation, ConversationState, Message, MessageMetadata
from junkrat.pm.generator import ChatHandle
from junkrat.providers.base import ChatRequest

logger = logging.getLogger(__name__)

__all__ = ["ContextBudgetManager", "ContextStats", "estimate_message_tokens"]


def estimate_message_tokens(message: Message) -> int:
    """Token estimate for one message, cached on its metadata."""
    if message.metadata.token_count is None:
        message.metadata.token_count = math.ceil(len(message.content) / CHARS_PER_TOKEN) + MESSAGE_TOKEN_OVERHEAD
    return message.metadata.token_count


@dataclass(frozen=True)
class ContextStats:
    total_messages: int
    total_tokens: int
    utilization_percent: float
    needs_summarization: bool
    messages_in_window: int


class ContextBudgetManager:
    def __init__(
        self,
        prompt_engine: PromptEngine,
        settings: ContextSettings | None = None,
        max_context_tokens: int = DEFAULT_CONTEXT_TOKENS,
    ):
        settings = settings or ContextSettings()
        self.prompt_engine = prompt_engine
        self.max_context_tokens = max_context_tokens
        self.trigger_ratio = settings.summary_trigger_ratio
        self.window_size = settings.sliding_window_size

    def configure_for_provider(self, provider_id: str | None) -> None:
        self.max_context_tokens = PROVIDER_CONTEXT_TOKENS.get(provider_id or "", DEFAULT_CONTEXT_TOKENS)
        logger.debug(f"[CONTEXT] Budget for {provider_id}: {self.max_context_tokens} tokens")

    @property
    def trigger_tokens(self) -> float:
        return self.max_context_tokens * self.trigger_ratio

    def estimate_tokens(self, messages: list[Message]) -> int:
        return sum(estimate_message_tokens(m) + MESSAGE_FRAMING_TOKENS for m in messages)

    def should_summarize(self, messages: list[Message]) -> bool:
        """Over budget, and summarizing could still shrink the history.

        A history that is already one summary plus no more than the window
        can't get smaller by summarizing again.
        """
        if self.estimate_tokens(messages) <= self.trigger_tokens:
            return False
        has_summary = any(m.metadata.is_summary for m in messages)
        rest = [m for m in messages if not m.metadata.is_summary]
        if has_summary and len(rest) <= self.window_size:
            logger.debug("[CONTEXT] Over budget but already summarized and trimmed")
            return False
        return True

    def stats(self, messages: list[Message]) -> ContextStats:
        total = self.estimate_tokens(messages)
        return ContextStats(
            total_messages=len(messages),
            total_tokens=total,
            utilization_percent=min(100.0, total / self.max_context_tokens * 100) if self.max_context_tokens else 100.0,
            needs_summarization=total > self.trigger_tokens,
            messages_in_window=min(len(messages), self.window_size),
        )

    async def summarize(
        self,
        messages: list[Message],
        provider: ChatHandle,
        state: ConversationState = ConversationState.IDLE,
        cancel_token: CancelToken | None = None,
    ) -> str:
        """Ask the provider for a summary of the non-system history.

        An earlier summary in `messages` is carried into the request so its
        content survives the new summary.
        """
        rendered = self.prompt_engine.render(PromptRole.SUMMARIZER, conversation_state=state)

        parts = []
        for m in messages:
            if m.metadata.is_summary:
                parts.append(f"PREVIOUS SUMMARY: {m.content}")
            elif m.role != "system":
                parts.append(f"{m.role.upper()}: {m.content}")

        response = await provider.chat(ChatRequest(
            messages=[
                {"role": "system", "content": rendered.system_message},
                {"role": "user", "content": "\n\n".join(parts)},
            ],
            cancel_token=cancel_token,
        ))
        return response.content

    def trim(self, messages: list[Message], summary: str | None) -> list[Message]:
        """Summary message plus the last N messages, or the last 2N without a summary."""
        if summary:
            recent = [m for m in messages if not m.metadata.is_summary][-self.window_size:]
            summary_message = Message(
                id=SUMMARY_MESSAGE_ID,
                role="system",
                content=summary,
                metadata=MessageMetadata(is_summary=True, is_system_prompt=True),
            )
            return [summary_message] + recent
        return messages[-(self.window_size * 2):]

    def restore_system_prompts(self, messages: list[Message], conversation: Conversation) -> list[Message]:
        """Put back conversation system messages missing from `messages`, in original order."""
        present = {m.id for m in messages}
        missing = [m for m in conversation.messages if m.role == "system" and m.id not in present]
        if missing:
            logger.debug(f"[CONTEXT] Re-injecting {len(missing)} system prompt(s)")
        return missing + messages

    async def compact(
        self,
        messages: list[Message],
        provider: ChatHandle,
        state: ConversationState = ConversationState.IDLE,
        cancel_token: CancelToken | None = None,
    ) -> tuple[list[Message], str | None]:
        """Summarize and trim `messages` if they are over budget.

        Returns the (possibly trimmed) messages and the new summary, or None
        when nothing was summarized. A trim that doesn't strictly lower the
        estimate is discarded.
        """
        if not self.should_summarize(messages):
            return messages, None

        before = self.estimate_tokens(messages)
        logger.info(f"[CONTEXT] {before} tokens exceeds {self.trigger_tokens:.0f}; summarizing history")

        summary = await self.summarize(messages, provider, state, cancel_token)
        trimmed = self.trim(messages, summary)
        after = self.estimate_tokens(trimmed)
        if after >= before:
            logger.warning(f"[CONTEXT] Summary did not shrink context ({before} -> {after}); keeping history")
            return messages, None

        logger.info(f"[CONTEXT] Context reduced from {before} to {after} tokens")
        return trimmed, summary

    async def build_context(
        self,
        conversation: Conversation,
        provider: ChatHandle,
        cancel_token: CancelToken | None = None,
    ) -> list[Message]:
        """Messages to send for the conversation's next provider call."""
        messages, summary = await self.compact(
            list(conversation.messages), provider, conversation.state, cancel_token
        )
        if summary is not None:
            conversation.summary = summary
        return self.restore_system_prompts(messages, conversation)
