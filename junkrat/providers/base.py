"""
Chat provider interface.

Every backend implements ChatProvider: single-shot chat(), incremental
stream_chat(), a cheap is_available() liveness probe and list_models().
Providers make exactly one attempt per call; retry and fallback belong to
the dispatcher (junkrat.providers.dispatch).

HTTP transport is httpx.AsyncClient. A client can be injected (tests pass
one built on httpx.MockTransport); otherwise one is created lazily with the
provider's timeout.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from junkrat.lib.config import ProviderSettings
from junkrat.lib.errors import AIError, APIError, InvalidRequestError, RateLimitError
from junkrat.lib.retry import CancelToken

logger = logging.getLogger(__name__)

__all__ = [
    "ChatRequest",
    "ChatResponse",
    "StreamChunk",
    "Usage",
    "ChatProvider",
    "error_from_response",
    "map_finish_reason",
    "HEALTH_PROBE_TIMEOUT",
    "LIST_MODELS_TIMEOUT",
]

HEALTH_PROBE_TIMEOUT = 5.0
LIST_MODELS_TIMEOUT = 10.0


@dataclass
class ChatRequest:
    messages: list[dict[str, str]]
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    cancel_token: CancelToken | None = None


@dataclass
class Usage:
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None


@dataclass
class ChatResponse:
    id: str
    content: str
    model: str
    finish_reason: str = "stop"  # stop, length, cancelled, error
    usage: Usage = field(default_factory=Usage)


@dataclass
class StreamChunk:
    delta: str
    done: bool
    finish_reason: str | None = None
    model: str | None = None


def map_finish_reason(reason: str | None) -> str:
    """Normalise backend finish reasons onto stop/length/cancelled/error."""
    normalized = reason.lower() if isinstance(reason, str) else reason
    if normalized in (None, "stop", "tool_calls", "function_call"):
        return "stop"
    if normalized in ("length", "max_tokens"):
        return "length"
    if normalized in ("cancelled", "canceled", "user_cancelled"):
        return "cancelled"
    return "error"


def _error_detail(response: httpx.Response) -> str | None:
    try:
        data = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if isinstance(error, dict):
        return error.get("message")
    return error or data.get("message")


def error_from_response(response: httpx.Response, provider: str) -> AIError:
    """Build the AIError for a non-2xx response.

    The response body must already be read (call `await response.aread()`
    first for streamed responses).
    """
    message = f"HTTP {response.status_code}: {response.reason_phrase}"
    detail = _error_detail(response)
    if detail:
        message += f" - {detail}"

    status = response.status_code
    if status == 429:
        return RateLimitError(message, provider, status)
    if status >= 500:
        return APIError(message, provider, status)
    return InvalidRequestError(message, provider, status)


class ChatProvider(ABC):
    """Base class for chat backends."""

    name = "Provider"

    def __init__(self, settings: ProviderSettings, client: httpx.AsyncClient | None = None):
        self.settings = settings
        self._client = client

    @property
    def id(self) -> str:
        return self.settings.id

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.timeout)
        return self._client

    def headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    @abstractmethod
    async def chat(self, request: ChatRequest) -> ChatResponse:
        """Send a request and wait for the full reply."""

    @abstractmethod
    def stream_chat(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        """Yield chunks as they arrive; the last chunk has done=True."""

    @abstractmethod
    async def is_available(self) -> bool:
        """Cheap liveness probe. Never raises."""

    @abstractmethod
    async def list_models(self) -> list[str]:
        """Model names the backend offers; [] when it can't be reached."""

    async def _send(self, request: httpx.Request, cancel_token: CancelToken | None, stream: bool = False) -> httpx.Response:
        """Send an HTTP request, racing it against the cancel token."""
        logger.debug(f"[{self.id}] {request.method} {request.url}")
        if cancel_token is None:
            return await self.client.send(request, stream=stream)
        return await cancel_token.race(self.client.send(request, stream=stream), self.id)

    async def _get_json(self, path_url: str, timeout: float) -> Any | None:
        """GET a JSON document, returning None on any transport or HTTP failure."""
        try:
            response = await self.client.get(path_url, headers=self.headers(), timeout=timeout)
        except httpx.HTTPError as e:
            logger.debug(f"[{self.id}] GET {path_url} failed: {e}")
            return None
        if not response.is_success:
            return None
        try:
            return response.json()
        except json.JSONDecodeError:
            return None

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
