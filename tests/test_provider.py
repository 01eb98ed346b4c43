"""Tests for the LLMProvider abstraction and StubLLMProvider."""

from __future__ import annotations

import asyncio

import pytest

from codemate.provider import (
    ChatMessage,
    ChatRequest,
    ChatRole,
    LLMProvider,
    StreamChunk,
    StubLLMProvider,
    TokenUsage,
)


def _request(text: str = "hello there") -> ChatRequest:
    return ChatRequest(model="test-model", messages=[ChatMessage(role=ChatRole.USER, content=text)])


def test_stub_is_llm_provider() -> None:
    stub = StubLLMProvider()
    assert isinstance(stub, LLMProvider)
    assert stub.name() == "stub"
    assert stub.requires_api_key() is False


def test_total_tokens_is_computed() -> None:
    usage = TokenUsage(prompt_tokens=3, completion_tokens=4)
    assert usage.total_tokens == 7
    assert usage.model_dump()["total_tokens"] == 7


def test_chat_role_values() -> None:
    assert [r.value for r in ChatRole] == ["system", "user", "assistant"]


@pytest.mark.asyncio
async def test_stub_chat_counts_words() -> None:
    stub = StubLLMProvider(reply="one two three")
    response = await stub.chat(_request("a b"))
    assert response.content == "one two three"
    assert response.usage == TokenUsage(prompt_tokens=2, completion_tokens=3)
    assert response.model == "test-model"
    assert response.finish_reason == "stop"


@pytest.mark.asyncio
async def test_stub_default_reply_mentions_model() -> None:
    response = await StubLLMProvider().chat(_request())
    assert "model=test-model" in response.content


@pytest.mark.asyncio
async def test_stub_stream_reassembles_reply() -> None:
    stub = StubLLMProvider(reply="streamed reply here")
    chunks = [c async for c in stub.stream(_request())]
    assert chunks[-1] == StreamChunk(is_complete=True)
    assert "".join(c.content for c in chunks) == "streamed reply here"
    assert not any(c.is_complete for c in chunks[:-1])


@pytest.mark.asyncio
async def test_stub_stream_stops_when_cancelled() -> None:
    cancel = asyncio.Event()
    cancel.set()
    chunks = [c async for c in StubLLMProvider(reply="a b c").stream(_request(), cancel)]
    assert chunks == []
