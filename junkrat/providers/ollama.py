"""
Ollama backend.

Talks to a local Ollama server:
    POST /api/chat   (stream false: one JSON object; stream true: NDJSON lines)
    GET  /api/tags   (installed models; also used as the health probe)

If the configured model isn't installed, the first installed model is used
instead and a warning is logged.
"""

import json
import logging
import time
from typing import AsyncIterator

from junkrat.lib.errors import classify_error
from junkrat.providers.base import (
    HEALTH_PROBE_TIMEOUT,
    LIST_MODELS_TIMEOUT,
    ChatProvider,
    ChatRequest,
    ChatResponse,
    StreamChunk,
    Usage,
    error_from_response,
)

logger = logging.getLogger(__name__)


class OllamaProvider(ChatProvider):
    name = "Ollama"

    async def _resolve_model(self, requested: str | None) -> str:
        model = requested or self.settings.model
        models = await self.list_models()
        if models and model not in models:
            logger.warning(f"[ollama] Configured model '{model}' not found. Using '{models[0]}' instead.")
            return models[0]
        return model

    def _payload(self, request: ChatRequest, model: str, stream: bool) -> dict:
        payload = {"model": model, "messages": request.messages, "stream": stream}
        if request.temperature is not None:
            payload["options"] = {"temperature": request.temperature}
        return payload

    async def chat(self, request: ChatRequest) -> ChatResponse:
        try:
            model = await self._resolve_model(request.model)
            http_request = self.client.build_request(
                "POST",
                f"{self.settings.base_url}/api/chat",
                headers=self.headers(),
                json=self._payload(request, model, stream=False),
            )
            response = await self._send(http_request, request.cancel_token)
            if not response.is_success:
                raise error_from_response(response, self.id)

            data = response.json()
            prompt_tokens = data.get("prompt_eval_count")
            completion_tokens = data.get("eval_count")
            return ChatResponse(
                id=f"ollama-{int(time.time() * 1000)}",
                content=(data.get("message") or {}).get("content", ""),
                model=data.get("model", model),
                finish_reason="stop",
                usage=Usage(
                    prompt_tokens=prompt_tokens,
                    completion_tokens=completion_tokens,
                    total_tokens=(prompt_tokens or 0) + (completion_tokens or 0),
                ),
            )
        except Exception as e:
            raise classify_error(e, self.id, "Ollama chat request failed") from e

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        try:
            model = await self._resolve_model(request.model)
            http_request = self.client.build_request(
                "POST",
                f"{self.settings.base_url}/api/chat",
                headers=self.headers(),
                json=self._payload(request, model, stream=True),
            )
            response = await self._send(http_request, request.cancel_token, stream=True)
        except Exception as e:
            raise classify_error(e, self.id, "Ollama streaming request failed") from e

        try:
            if not response.is_success:
                await response.aread()
                raise error_from_response(response, self.id)

            async for line in response.aiter_lines():
                if request.cancel_token is not None:
                    request.cancel_token.raise_if_cancelled(self.id)
                if not line.strip():
                    continue
                try:
                    chunk = json.loads(line)
                except json.JSONDecodeError:
                    # Skip malformed lines
                    continue

                content = (chunk.get("message") or {}).get("content")
                if content:
                    yield StreamChunk(delta=content, done=False, model=chunk.get("model"))
                if chunk.get("done"):
                    yield StreamChunk(delta="", done=True, finish_reason="stop", model=chunk.get("model"))
                    return

            yield StreamChunk(delta="", done=True, finish_reason="stop", model=model)
        except Exception as e:
            raise classify_error(e, self.id, "Ollama streaming request failed") from e
        finally:
            await response.aclose()

    async def is_available(self) -> bool:
        data = await self._get_json(f"{self.settings.base_url}/api/tags", HEALTH_PROBE_TIMEOUT)
        return data is not None

    async def list_models(self) -> list[str]:
        data = await self._get_json(f"{self.settings.base_url}/api/tags", LIST_MODELS_TIMEOUT)
        if not isinstance(data, dict):
            return []
        return [m["name"] for m in data.get("models") or [] if isinstance(m, dict) and "name" in m]
