"""Framework-free handlers for the chat and models HTTP routes.

Each handler returns a :class:`RouteResponse` that any web framework can
forward: a status code plus either a JSON payload or an iterator of
server-sent-event frames.
"""

from __future__ import annotations

import contextlib
import json
import logging
import time
from collections.abc import AsyncGenerator, AsyncIterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from .errors import ConfigurationError, ValidationError
from .gateway import ChatResult, UnifiedAIGateway
from .provider import StreamChunk, TokenUsage
from .registry import Provider

logger = logging.getLogger(__name__)

JSON_HEADERS = {"Content-Type": "application/json"}
SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}
DONE_FRAME = "data: [DONE]\n\n"


@dataclass
class RouteResponse:
    """What the web layer should send back."""

    status: int
    body: dict[str, Any] | None = None
    stream: AsyncIterator[str] | None = None
    headers: dict[str, str] = field(default_factory=lambda: dict(JSON_HEADERS))


def _now_ms() -> int:
    return int(time.time() * 1000)


def error_response(status: int, message: str) -> RouteResponse:
    return RouteResponse(
        status=status,
        body={"success": False, "error": message, "timestamp": _now_ms()},
    )


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


async def handle_chat(body: Any, gateway: UnifiedAIGateway) -> RouteResponse:
    """Handle ``POST /chat`` with ``{messages, model, temperature, maxTokens, stream}``."""
    if not isinstance(body, Mapping) or not body.get("messages"):
        return error_response(400, "Messages are required")

    options = {
        "model": body.get("model"),
        "temperature": body.get("temperature"),
        "max_tokens": body.get("maxTokens"),
    }
    try:
        if body.get("stream"):
            chunks = gateway.stream(body["messages"], options)
            return RouteResponse(status=200, stream=encode_sse(chunks), headers=dict(SSE_HEADERS))
        result = await gateway.chat(body["messages"], options)
    except ValidationError as exc:
        return error_response(400, str(exc))
    except ConfigurationError as exc:
        logger.error("Chat route misconfigured: %s", exc)
        return error_response(500, str(exc))
    except Exception as exc:  # noqa: BLE001
        logger.exception("Chat route failed")
        return error_response(500, str(exc))

    return RouteResponse(
        status=200,
        body={"success": True, "data": chat_payload(result), "timestamp": _now_ms()},
    )


def chat_payload(result: ChatResult) -> dict[str, Any]:
    return {
        "id": f"chat-{_now_ms()}",
        "content": result.content,
        "model": result.model,
        "usage": usage_payload(result.usage),
        "finishReason": result.finish_reason,
    }


def usage_payload(usage: TokenUsage) -> dict[str, int]:
    return {
        "promptTokens": usage.prompt_tokens,
        "completionTokens": usage.completion_tokens,
        "totalTokens": usage.total_tokens,
    }


def chunk_payload(chunk: StreamChunk) -> dict[str, Any]:
    payload: dict[str, Any] = {"content": chunk.content, "isComplete": chunk.is_complete}
    if chunk.error is not None:
        payload["error"] = chunk.error
    return payload


async def encode_sse(chunks: AsyncGenerator[StreamChunk, None]) -> AsyncIterator[str]:
    """Frame chunks as ``data: <json>`` events, closing with ``data: [DONE]``."""
    try:
        async with contextlib.aclosing(chunks) as stream:
            async for chunk in stream:
                yield f"data: {json.dumps(chunk_payload(chunk), ensure_ascii=False)}\n\n"
                if chunk.is_complete:
                    break
    except Exception as exc:  # noqa: BLE001
        logger.exception("SSE relay failed")
        yield f"data: {json.dumps({'error': str(exc)})}\n\n"
    yield DONE_FRAME


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


def handle_models(gateway: UnifiedAIGateway) -> RouteResponse:
    """Handle ``GET /models``."""
    try:
        available = gateway.get_available_providers()
        models = [
            {
                "id": model_id,
                "name": model_id,
                "provider": provider.value,
                "available": True,
                "contextWindow": gateway.registry.context_window(model_id),
            }
            for provider in Provider
            if provider in available
            for model_id in gateway.get_models_for_provider(provider)
        ]
    except Exception as exc:  # noqa: BLE001
        logger.exception("Models route failed")
        return error_response(500, str(exc))
    return RouteResponse(
        status=200,
        body={"success": True, "data": models, "timestamp": _now_ms()},
    )
