"""Chat session — ties conversation context to gateway calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing

from .config import ChatOptions
from .conversation import MAIN_BRANCH, ConversationStore, Message
from .gateway import ChatResult, UnifiedAIGateway
from .provider import ChatMessage, ChatRole, StreamChunk

logger = logging.getLogger(__name__)


class ChatSession:
    """Runs one user turn: append, take bounded context, call, append reply.

    Turns on the same conversation must not overlap; await each call
    before starting the next.
    """

    def __init__(self, conversations: ConversationStore, gateway: UnifiedAIGateway) -> None:
        self._conversations = conversations
        self._gateway = gateway

    async def send(
        self,
        conversation_id: str,
        text: str,
        branch_id: str = MAIN_BRANCH,
        options: ChatOptions | None = None,
    ) -> tuple[Message, ChatResult]:
        """Send *text* and store the assistant reply; returns (reply, result)."""
        self._conversations.add_message(conversation_id, ChatRole.USER, text, branch_id)
        context = self._context(conversation_id, branch_id)
        result = await self._gateway.chat(context, options)
        reply = self._conversations.add_message(
            conversation_id, ChatRole.ASSISTANT, result.content, branch_id
        )
        return reply, result

    async def send_stream(
        self,
        conversation_id: str,
        text: str,
        branch_id: str = MAIN_BRANCH,
        options: ChatOptions | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Relay streamed chunks; the reply is stored once the stream completes cleanly."""
        self._conversations.add_message(conversation_id, ChatRole.USER, text, branch_id)
        context = self._context(conversation_id, branch_id)
        parts: list[str] = []
        async with aclosing(self._gateway.stream(context, options, cancel)) as chunks:
            async for chunk in chunks:
                parts.append(chunk.content)
                if chunk.is_complete:
                    if chunk.error is None:
                        self._conversations.add_message(
                            conversation_id, ChatRole.ASSISTANT, "".join(parts), branch_id
                        )
                    else:
                        logger.warning("Reply to %s not stored: %s", conversation_id, chunk.error)
                yield chunk

    def _context(self, conversation_id: str, branch_id: str) -> list[ChatMessage]:
        messages = self._conversations.get_context(conversation_id, branch_id)
        if not messages:
            # The newest message alone exceeds the budget; send it on its own.
            branch = self._conversations.switch_to_branch(conversation_id, branch_id)
            messages = branch.messages[-1:]
        return ConversationStore.to_chat_messages(messages)
