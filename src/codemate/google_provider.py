"""Google provider — Gemini ``generateContent`` REST API."""

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


class GoogleProvider(HttpLLMProvider):
    """LLM provider for Gemini models.

    Assistant turns are sent with the ``model`` role and system messages go
    into ``systemInstruction``.
    """

    _DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

    def name(self) -> str:
        return "google"

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(streaming=True, vision=True, requires_api_key=True)

    async def chat(self, request: ChatRequest) -> ChatResponse:
        body = await self._post_json(
            f"{self._base(request)}/models/{request.model}:generateContent",
            self._payload(request),
            self._headers(request),
        )
        candidates = body.get("candidates") or []
        if not candidates:
            reason = (body.get("promptFeedback") or {}).get("blockReason", "no candidates")
            msg = f"google response contained no candidates ({reason})"
            raise ProviderError(msg, provider=self.name())
        meta = body.get("usageMetadata")
        return ChatResponse(
            content=_candidate_text(candidates[0]),
            usage=TokenUsage(
                prompt_tokens=meta.get("promptTokenCount", 0),
                completion_tokens=meta.get("candidatesTokenCount", 0),
            )
            if meta
            else None,
            model=body.get("modelVersion", request.model),
            finish_reason=_finish_reason(candidates[0]),
        )

    async def stream(
        self,
        request: ChatRequest,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        lines = self._post_lines(
            f"{self._base(request)}/models/{request.model}:streamGenerateContent?alt=sse",
            self._payload(request),
            self._headers(request),
            cancel,
        )
        async with aclosing(lines):
            async for line in lines:
                if not line.startswith("data:"):
                    continue
                event = self._decode_event(line[len("data:"):].strip(), self.name())
                for candidate in event.get("candidates") or []:
                    text = _candidate_text(candidate)
                    if text:
                        yield StreamChunk(content=text)
        # The SSE stream simply ends; there is no terminal sentinel.
        if cancel is None or not cancel.is_set():
            yield StreamChunk(is_complete=True)

    # ------------------------------------------------------------------

    def _headers(self, request: ChatRequest) -> dict[str, str]:
        return {
            "x-goog-api-key": self._require_key(request),
            "Content-Type": "application/json",
        }

    @staticmethod
    def _payload(request: ChatRequest) -> dict[str, Any]:
        system = "\n\n".join(m.content for m in request.messages if m.role == ChatRole.SYSTEM)
        payload: dict[str, Any] = {
            "contents": [
                {
                    "role": "model" if m.role == ChatRole.ASSISTANT else "user",
                    "parts": [{"text": m.content}],
                }
                for m in request.messages
                if m.role != ChatRole.SYSTEM
            ],
            "generationConfig": drop_none(
                {
                    "temperature": request.temperature,
                    "maxOutputTokens": request.max_tokens,
                    "topP": request.top_p,
                    "frequencyPenalty": request.frequency_penalty,
                    "presencePenalty": request.presence_penalty,
                }
            ),
        }
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        return payload


def _candidate_text(candidate: dict[str, Any]) -> str:
    parts = (candidate.get("content") or {}).get("parts") or []
    return "".join(p.get("text", "") for p in parts)


def _finish_reason(candidate: dict[str, Any]) -> str | None:
    reason = candidate.get("finishReason")
    return reason.lower() if isinstance(reason, str) else None
