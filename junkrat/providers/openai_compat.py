"""
OpenAI-compatible backend.

Used for Gemini (through its OpenAI endpoint), OpenRouter and any custom
server speaking the same protocol:
    POST {base_url}/chat/completions   (SSE when stream=true, ends with "data: [DONE]")
    GET  {base_url}/models
"""

import json
import logging
import time
from typing import AsyncIterator

from junkrat.lib.errors import InvalidRequestError, classify_error
from junkrat.providers.base import (
    HEALTH_PROBE_TIMEOUT,
    LIST_MODELS_TIMEOUT,
    ChatProvider,
    ChatRequest,
    ChatResponse,
    StreamChunk,
    Usage,
    error_from_response,
    map_finish_reason,
)

logger = logging.getLogger(__name__)

OPENROUTER_REFERER = "https://github.com/junkrat/junkrat"
OPENROUTER_TITLE = "junkrat"


def _parse_sse_line(line: str) -> dict | None:
    if not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    if not payload:
        return None
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


class OpenAICompatibleProvider(ChatProvider):
    name = "OpenAI-compatible"

    # Hosted endpoints refuse to work without a key
    requires_api_key = False

    def headers(self) -> dict[str, str]:
        headers = super().headers()
        if self.settings.api_key:
            headers["Authorization"] = f"Bearer {self.settings.api_key}"
        return headers

    def _check_key(self) -> None:
        if self.requires_api_key and not self.settings.api_key:
            raise InvalidRequestError(f"{self.name} API key is required", self.id)

    def _payload(self, request: ChatRequest, stream: bool) -> dict:
        payload = {
            "model": request.model or self.settings.model,
            "messages": request.messages,
            "stream": stream,
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        return payload

    def _build(self, request: ChatRequest, stream: bool):
        return self.client.build_request(
            "POST",
            f"{self.settings.base_url}/chat/completions",
            headers=self.headers(),
            json=self._payload(request, stream),
        )

    async def chat(self, request: ChatRequest) -> ChatResponse:
        self._check_key()
        try:
            response = await self._send(self._build(request, stream=False), request.cancel_token)
            if not response.is_success:
                raise error_from_response(response, self.id)

            data = response.json()
            choice = (data.get("choices") or [{}])[0]
            usage = data.get("usage") or {}
            return ChatResponse(
                id=data.get("id") or f"{self.id}-{int(time.time() * 1000)}",
                content=(choice.get("message") or {}).get("content") or "",
                model=data.get("model") or request.model or self.settings.model,
                finish_reason=map_finish_reason(choice.get("finish_reason")),
                usage=Usage(
                    prompt_tokens=usage.get("prompt_tokens"),
                    completion_tokens=usage.get("completion_tokens"),
                    total_tokens=usage.get("total_tokens"),
                ),
            )
        except Exception as e:
            raise classify_error(e, self.id, f"{self.name} chat request failed") from e

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        self._check_key()
        try:
            response = await self._send(self._build(request, stream=True), request.cancel_token, stream=True)
        except Exception as e:
            raise classify_error(e, self.id, f"{self.name} streaming request failed") from e

        last_model = request.model or self.settings.model
        try:
            if not response.is_success:
                await response.aread()
                raise error_from_response(response, self.id)

            async for raw_line in response.aiter_lines():
                if request.cancel_token is not None:
                    request.cancel_token.raise_if_cancelled(self.id)
                line = raw_line.strip()
                if not line:
                    continue
                if line == "data: [DONE]":
                    break

                chunk = _parse_sse_line(line)
                if chunk is None:
                    continue
                last_model = chunk.get("model") or last_model
                choice = (chunk.get("choices") or [{}])[0]
                delta = (choice.get("delta") or {}).get("content") or ""
                if delta:
                    yield StreamChunk(delta=delta, done=False, model=last_model)
                if choice.get("finish_reason"):
                    yield StreamChunk(
                        delta="",
                        done=True,
                        finish_reason=map_finish_reason(choice["finish_reason"]),
                        model=last_model,
                    )
                    return

            yield StreamChunk(delta="", done=True, finish_reason="stop", model=last_model)
        except Exception as e:
            raise classify_error(e, self.id, f"{self.name} streaming request failed") from e
        finally:
            await response.aclose()

    async def is_available(self) -> bool:
        if self.requires_api_key and not self.settings.api_key:
            return False
        data = await self._get_json(f"{self.settings.base_url}/models", HEALTH_PROBE_TIMEOUT)
        return data is not None

    async def list_models(self) -> list[str]:
        if self.requires_api_key and not self.settings.api_key:
            return []
        data = await self._get_json(f"{self.settings.base_url}/models", LIST_MODELS_TIMEOUT)
        if not isinstance(data, dict) or not isinstance(data.get("data"), list):
            return []
        return [m["id"] for m in data["data"] if isinstance(m, dict) and isinstance(m.get("id"), str)]


class GeminiProvider(OpenAICompatibleProvider):
    name = "Gemini"
    requires_api_key = True


class OpenRouterProvider(OpenAICompatibleProvider):
    name = "OpenRouter"
    requires_api_key = True

    def headers(self) -> dict[str, str]:
        headers = super().headers()
        headers["HTTP-Referer"] = OPENROUTER_REFERER
        headers["X-Title"] = OPENROUTER_TITLE
        return headers


class CustomProvider(OpenAICompatibleProvider):
    name = "Custom"
