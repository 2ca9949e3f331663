"""
Chat dispatch: retry per provider, then fall back to the next one.

The requested (or active) provider is tried first. Each provider gets a
bounded retry loop (its own max_retries, delays from the retry settings).
When a provider exhausts its retries, or fails with a non-retryable error,
the next registered provider in priority order is tried, excluding every
provider already attempted. The last error is raised once no provider is
left.

Cancellation is never treated as a provider failure: a CancellationError
ends the dispatch immediately.
"""

import contextlib
import logging
from typing import Awaitable, Callable

from junkrat.lib.config import RetrySettings
from junkrat.lib.errors import CancellationError, NoProviderError, is_retryable_error
from junkrat.lib.retry import RetryOptions, retry
from junkrat.providers.base import ChatProvider, ChatRequest, ChatResponse
from junkrat.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

__all__ = ["ProviderDispatcher", "BoundDispatcher"]

NO_PROVIDER_MESSAGE = (
    "No AI providers configured. Please configure at least one provider "
    "(Ollama recommended) in junkrat.yaml."
)


class ProviderDispatcher:
    """Resilient chat entry point shared by the conversation manager and the loop."""

    def __init__(self, registry: ProviderRegistry, retry_settings: RetrySettings | None = None):
        self.registry = registry
        self.retry_settings = retry_settings or RetrySettings()
        self.last_provider_id: str | None = None

    def _options(self, provider: ChatProvider, request: ChatRequest, label: str, **overrides) -> RetryOptions:
        rs = self.retry_settings

        def on_retry(attempt: int, delay: float, error: BaseException) -> None:
            logger.info(f"[DISPATCH] {label} via {provider.id}: retry {attempt} in {delay:.2f}s ({error})")

        return RetryOptions(
            max_retries=provider.settings.max_retries,
            initial_delay=rs.initial_delay,
            max_delay=rs.max_delay,
            factor=rs.factor,
            jitter=rs.jitter,
            on_retry=on_retry,
            cancel_token=request.cancel_token,
            **overrides,
        )

    async def _dispatch(
        self,
        request: ChatRequest,
        provider_id: str | None,
        label: str,
        attempt_fn: Callable[[ChatProvider], Awaitable],
        options_for: Callable[[ChatProvider], RetryOptions],
    ):
        if len(self.registry) == 0:
            raise NoProviderError(NO_PROVIDER_MESSAGE, "system")

        attempted: list[str] = []
        provider = self.registry.get(provider_id)
        if provider is None:
            if provider_id:
                logger.warning(f"[DISPATCH] Provider {provider_id} is not registered, falling back")
                attempted.append(provider_id)
            provider = self.registry.next_available(attempted)

        last_error: Exception | None = None
        while provider is not None:
            attempted.append(provider.id)
            try:
                result = await retry(lambda p=provider: attempt_fn(p), options_for(provider))
                self.last_provider_id = provider.id
                return result
            except CancellationError:
                raise
            except Exception as e:
                last_error = e
                provider = self.registry.next_available(attempted)
                if provider is not None:
                    logger.warning(f"[DISPATCH] {label} failed on {attempted[-1]}: {e}. Falling back to {provider.id}")
                else:
                    logger.warning(f"[DISPATCH] {label} failed on {attempted[-1]}: {e}. No providers left")

        if last_error is None:
            raise NoProviderError("No AI provider available", "system")
        raise last_error

    async def chat(self, request: ChatRequest, provider_id: str | None = None) -> ChatResponse:
        """Single-shot chat with retry and provider fallback.

        Raises:
            NoProviderError: If no provider is registered
            CancellationError: If the request's cancel token fires
            AIError: The last provider's error when every provider failed
        """
        return await self._dispatch(
            request,
            provider_id,
            "Chat request",
            lambda provider: provider.chat(request),
            lambda provider: self._options(provider, request, "Chat request"),
        )

    async def stream_chat(
        self,
        request: ChatRequest,
        provider_id: str | None = None,
        on_chunk: Callable[[str], Awaitable[None] | None] | None = None,
    ) -> str:
        """Streamed chat; returns the accumulated text.

        A provider is never retried once it has produced data, since the
        caller has already seen part of the reply.
        """
        received = {"data": False}

        async def attempt(provider: ChatProvider) -> str:
            received["data"] = False
            parts: list[str] = []
            async with contextlib.aclosing(provider.stream_chat(request)) as stream:
                async for chunk in stream:
                    received["data"] = True
                    if chunk.delta:
                        parts.append(chunk.delta)
                        if on_chunk is not None:
                            maybe = on_chunk(chunk.delta)
                            if maybe is not None:
                                await maybe
                    if chunk.done:
                        break
            return "".join(parts)

        def should_retry(error: BaseException, attempt_no: int) -> bool:
            return not received["data"] and is_retryable_error(error)

        return await self._dispatch(
            request,
            provider_id,
            "Streaming request",
            attempt,
            lambda provider: self._options(provider, request, "Streaming request", should_retry=should_retry),
        )

    def bind(self, provider_id: str | None) -> "BoundDispatcher":
        """A chat handle that always prefers `provider_id`."""
        return BoundDispatcher(self, provider_id)


class BoundDispatcher:
    """ProviderDispatcher pinned to a preferred provider.

    Lets code that only knows `chat(request)` (the generator, the context
    manager) still honour a per-turn provider choice.
    """

    def __init__(self, dispatcher: ProviderDispatcher, provider_id: str | None):
        self.dispatcher = dispatcher
        self.provider_id = provider_id

    async def chat(self, request: ChatRequest) -> ChatResponse:
        return await self.dispatcher.chat(request, self.provider_id)
