"""Local provider — an Ollama server's ``/api/chat`` endpoint."""

from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any

from .errors import ProviderError
from .http_provider import HttpLLMProvider, drop_none
from .provider import (
    ChatRequest,
    ChatResponse,
    ProviderCapabilities,
    StreamChunk,
    TokenUsage,
)


class OllamaProvider(HttpLLMProvider):
    """LLM provider for models served by Ollama; needs no API key.

    Configuration via environment variables:
        - ``CODEMATE_OLLAMA_URL``: server URL (default ``http://localhost:11434``)
    """

    _DEFAULT_BASE_URL = "http://localhost:11434"

    def __init__(self, base_url: str | None = None, **kwargs: Any) -> None:
        super().__init__(base_url or os.environ.get("CODEMATE_OLLAMA_URL"), **kwargs)

    def name(self) -> str:
        return "local"

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(streaming=True, vision=False, requires_api_key=False)

    async def chat(self, request: ChatRequest) -> ChatResponse:
        body = await self._post_json(
            f"{self._base(request)}/api/chat",
            self._payload(request, stream=False),
            {"Content-Type": "application/json"},
        )
        if "error" in body:
            msg = f"local model error: {body['error']}"
            raise ProviderError(msg, provider=self.name())
        has_counts = "prompt_eval_count" in body or "eval_count" in body
        return ChatResponse(
            content=(body.get("message") or {}).get("content", ""),
            usage=TokenUsage(
                prompt_tokens=body.get("prompt_eval_count", 0),
                completion_tokens=body.get("eval_count", 0),
            )
            if has_counts
            else None,
            model=body.get("model", request.model),
            finish_reason=body.get("done_reason"),
        )

    async def stream(
        self,
        request: ChatRequest,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        lines = self._post_lines(
            f"{self._base(request)}/api/chat",
            self._payload(request, stream=True),
            {"Content-Type": "application/json"},
            cancel,
        )
        # Newline-delimited JSON, one object per line.
        async with aclosing(lines):
            async for line in lines:
                event = self._decode_event(line, self.name())
                if "error" in event:
                    msg = f"local model error: {event['error']}"
                    raise ProviderError(msg, provider=self.name())
                content = (event.get("message") or {}).get("content")
                if content:
                    yield StreamChunk(content=content)
                if event.get("done"):
                    yield StreamChunk(is_complete=True)
                    return

    @staticmethod
    def _payload(request: ChatRequest, stream: bool) -> dict[str, Any]:
        return {
            "model": request.model,
            "messages": [{"role": m.role.value, "content": m.content} for m in request.messages],
            "stream": stream,
            "options": drop_none(
                {
                    "temperature": request.temperature,
                    "num_predict": request.max_tokens,
                    "top_p": request.top_p,
                    "frequency_penalty": request.frequency_penalty,
                    "presence_penalty": request.presence_penalty,
                }
            ),
        }
