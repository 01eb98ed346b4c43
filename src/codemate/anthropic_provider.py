"""Anthropic provider — Messages API over HTTPS."""

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
    ChatRole,
    ProviderCapabilities,
    StreamChunk,
    TokenUsage,
)

_API_VERSION = "2023-06-01"
# The Messages API requires max_tokens on every request.
_FALLBACK_MAX_TOKENS = 1024


class AnthropicProvider(HttpLLMProvider):
    """LLM provider for ``/v1/messages``.

    System messages are lifted into the top-level ``system`` field; the API
    only accepts user and assistant turns in ``messages``.
    """

    _DEFAULT_BASE_URL = "https://api.anthropic.com"

    def name(self) -> str:
        return "anthropic"

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(streaming=True, vision=True, requires_api_key=True)

    async def chat(self, request: ChatRequest) -> ChatResponse:
        body = await self._post_json(
            f"{self._base(request)}/v1/messages",
            self._payload(request, stream=False),
            self._headers(request),
        )
        blocks = body.get("content") or []
        text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
        usage = body.get("usage")
        return ChatResponse(
            content=text,
            usage=TokenUsage(
                prompt_tokens=usage.get("input_tokens", 0),
                completion_tokens=usage.get("output_tokens", 0),
            )
            if usage
            else None,
            model=body.get("model", request.model),
            finish_reason=body.get("stop_reason"),
        )

    async def stream(
        self,
        request: ChatRequest,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        lines = self._post_lines(
            f"{self._base(request)}/v1/messages",
            self._payload(request, stream=True),
            self._headers(request),
            cancel,
        )
        async with aclosing(lines):
            async for line in lines:
                # "event:" lines duplicate the "type" field of the data payload.
                if not line.startswith("data:"):
                    continue
                event = self._decode_event(line[len("data:"):].strip(), self.name())
                kind = event.get("type")
                if kind == "content_block_delta":
                    delta = event.get("delta") or {}
                    if delta.get("type") == "text_delta" and delta.get("text"):
                        yield StreamChunk(content=delta["text"])
                elif kind == "message_stop":
                    yield StreamChunk(is_complete=True)
                    return
                elif kind == "error":
                    detail = (event.get("error") or {}).get("message", "stream error")
                    msg = f"anthropic stream error: {detail}"
                    raise ProviderError(msg, provider=self.name(), retryable=True)

    # ------------------------------------------------------------------

    def _headers(self, request: ChatRequest) -> dict[str, str]:
        return {
            "x-api-key": self._require_key(request),
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }

    @staticmethod
    def _payload(request: ChatRequest, stream: bool) -> dict[str, Any]:
        system = "\n\n".join(m.content for m in request.messages if m.role == ChatRole.SYSTEM)
        return drop_none(
            {
                "model": request.model,
                "system": system or None,
                "messages": [
                    {"role": m.role.value, "content": m.content}
                    for m in request.messages
                    if m.role != ChatRole.SYSTEM
                ],
                "max_tokens": request.max_tokens or _FALLBACK_MAX_TOKENS,
                "temperature": request.temperature,
                "top_p": request.top_p,
                "stream": stream,
            }
        )
