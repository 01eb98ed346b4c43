"""OpenAI provider — Chat Completions API over HTTPS."""

from __future__ import annotations

import asyncio
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


class OpenAIProvider(HttpLLMProvider):
    """LLM provider for ``/chat/completions``; streams server-sent events."""

    _DEFAULT_BASE_URL = "https://api.openai.com/v1"

    def name(self) -> str:
        return "openai"

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(streaming=True, vision=True, requires_api_key=True)

    async def chat(self, request: ChatRequest) -> ChatResponse:
        body = await self._post_json(
            f"{self._base(request)}/chat/completions",
            self._payload(request, stream=False),
            self._headers(request),
        )
        choices = body.get("choices") or []
        if not choices:
            msg = "openai response contained no choices"
            raise ProviderError(msg, provider=self.name())
        choice = choices[0]
        usage = body.get("usage")
        return ChatResponse(
            content=(choice.get("message") or {}).get("content") or "",
            usage=TokenUsage(
                prompt_tokens=usage.get("prompt_tokens", 0),
                completion_tokens=usage.get("completion_tokens", 0),
            )
            if usage
            else None,
            model=body.get("model", request.model),
            finish_reason=choice.get("finish_reason"),
        )

    async def stream(
        self,
        request: ChatRequest,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        lines = self._post_lines(
            f"{self._base(request)}/chat/completions",
            self._payload(request, stream=True),
            self._headers(request),
            cancel,
        )
        async with aclosing(lines):
            async for line in lines:
                if not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if data == "[DONE]":
                    yield StreamChunk(is_complete=True)
                    return
                event = self._decode_event(data, self.name())
                for choice in event.get("choices") or []:
                    content = (choice.get("delta") or {}).get("content")
                    if content:
                        yield StreamChunk(content=content)

    # ------------------------------------------------------------------

    def _headers(self, request: ChatRequest) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._require_key(request)}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _payload(request: ChatRequest, stream: bool) -> dict[str, Any]:
        return drop_none(
            {
                "model": request.model,
                "messages": [
                    {"role": m.role.value, "content": m.content} for m in request.messages
                ],
                "temperature": request.temperature,
                "max_tokens": request.max_tokens,
                "top_p": request.top_p,
                "frequency_penalty": request.frequency_penalty,
                "presence_penalty": request.presence_penalty,
                "stream": stream,
            }
        )
