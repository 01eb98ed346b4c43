"""LLM Provider abstraction — pluggable backend for real and stub LLMs."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from enum import StrEnum

from pydantic import BaseModel, computed_field

# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


class ProviderCapabilities(BaseModel):
    """Declares what a provider can do."""

    streaming: bool = True
    vision: bool = False
    requires_api_key: bool = True


class ChatRole(StrEnum):
    """Role of a message participant."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(BaseModel):
    """Single message in a conversation."""

    role: ChatRole
    content: str


class ChatRequest(BaseModel):
    """Request payload sent to an LLM provider."""

    model: str
    messages: list[ChatMessage]
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    api_key: str | None = None
    base_url: str | None = None


class TokenUsage(BaseModel):
    """Token consumption metrics for a single request."""

    prompt_tokens: int
    completion_tokens: int

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class ChatResponse(BaseModel):
    """Response returned from an LLM provider."""

    content: str
    usage: TokenUsage | None = None
    model: str = ""
    finish_reason: str | None = None


class StreamChunk(BaseModel):
    """One increment of a streamed reply.

    The last chunk of a stream has ``is_complete=True``; when the stream
    failed it also carries ``error``.
    """

    content: str = ""
    is_complete: bool = False
    error: str | None = None


# ---------------------------------------------------------------------------
# LLMProvider ABC
# ---------------------------------------------------------------------------


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    def name(self) -> str:
        """Return the canonical provider name (e.g. 'openai', 'anthropic')."""

    @abstractmethod
    def capabilities(self) -> ProviderCapabilities:
        """Describe what this provider supports."""

    @abstractmethod
    async def chat(self, request: ChatRequest) -> ChatResponse:
        """Send a chat completion request."""

    @abstractmethod
    def stream(
        self,
        request: ChatRequest,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a chat completion as incremental chunks.

        Implementations raise ``ProviderError`` on failure; the gateway turns
        that into a terminal error chunk. Iteration stops early once
        *cancel* is set.
        """

    def requires_api_key(self) -> bool:
        return self.capabilities().requires_api_key


# ---------------------------------------------------------------------------
# Stub implementation (for testing / offline development)
# ---------------------------------------------------------------------------


class StubLLMProvider(LLMProvider):
    """Returns canned responses without making real HTTP calls."""

    _CANNED = "This is a stub response for testing purposes."

    def __init__(self, provider_name: str = "stub", reply: str | None = None) -> None:
        self._name = provider_name
        self._reply = reply

    def name(self) -> str:
        return self._name

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(streaming=True, vision=False, requires_api_key=False)

    def _reply_for(self, request: ChatRequest) -> str:
        return self._reply if self._reply is not None else f"{self._CANNED} (model={request.model})"

    async def chat(self, request: ChatRequest) -> ChatResponse:
        """Return a deterministic canned response."""
        prompt_tokens = sum(len(m.content.split()) for m in request.messages)
        reply = self._reply_for(request)
        return ChatResponse(
            content=reply,
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=len(reply.split()),
            ),
            model=request.model,
            finish_reason="stop",
        )

    async def stream(
        self,
        request: ChatRequest,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Yield the canned reply word by word, then a terminal chunk."""
        words = self._reply_for(request).split(" ")
        for index, word in enumerate(words):
            if cancel is not None and cancel.is_set():
                return
            yield StreamChunk(content=word if index == 0 else f" {word}")
            await asyncio.sleep(0)
        yield StreamChunk(is_complete=True)
