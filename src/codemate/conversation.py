"""Conversation store — branching message history under a token budget."""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .context_compression import SummaryCompressor
from .errors import NotFoundError, ValidationError
from .provider import ChatMessage, ChatRole
from .storage import InMemoryKeyValueStore, Repository
from .telemetry import CodemateTracer, trace_compression
from .tokens import TokenBudget, estimate_tokens

logger = logging.getLogger(__name__)

MAIN_BRANCH = "main"
DEFAULT_MAX_CONTEXT_TOKENS = 8000
DEFAULT_COMPRESSION_THRESHOLD = 6000


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


class Message(BaseModel):
    """A single immutable message. ``parent_id`` is a lookup key, not a link.

    Compression is the one rewrite: the oldest kept message is replaced by a
    copy with the same id whose ``parent_id`` names the summary.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    role: ChatRole
    content: str
    timestamp: float
    token_count: int
    parent_id: str | None = None


class Branch(BaseModel):
    """An ordered message sequence; forks start as a value copy of main."""

    id: str
    parent_message_id: str = ""
    messages: list[Message] = Field(default_factory=list)
    created_at: float

    def token_sum(self) -> int:
        return sum(m.token_count for m in self.messages)


class Conversation(BaseModel):
    """A conversation and all of its branches."""

    id: str
    title: str
    created_at: float
    updated_at: float
    total_token_count: int = 0
    max_context_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS
    branches: dict[str, Branch]

    @property
    def main(self) -> Branch:
        return self.branches[MAIN_BRANCH]


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class ConversationStore:
    """Owns conversation lifecycle and enforces the context token budget.

    Writes for one conversation must be serialized by the caller (await
    ``add_message`` before issuing the next one).
    """

    def __init__(
        self,
        repository: Repository[Conversation] | None = None,
        max_context_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS,
        compression_threshold: int = DEFAULT_COMPRESSION_THRESHOLD,
        compressor: SummaryCompressor | None = None,
        clock: Callable[[], float] = time.time,
        tracer: CodemateTracer | None = None,
    ) -> None:
        if compression_threshold >= max_context_tokens:
            msg = "compression_threshold must be strictly less than max_context_tokens"
            raise ValueError(msg)
        self._repo = repository or Repository(
            InMemoryKeyValueStore(), "conversations", Conversation
        )
        self._max_context_tokens = max_context_tokens
        self._threshold = compression_threshold
        self._compressor = compressor or SummaryCompressor()
        self._clock = clock
        self._tracer = tracer
        self._conversations: dict[str, Conversation] = {
            c.id: c for c in self._repo.list()
        }

    # -- lifecycle ----------------------------------------------------------

    def create_conversation(self, title: str = "New conversation") -> Conversation:
        now = self._clock()
        conversation = Conversation(
            id=_new_id(),
            title=title,
            created_at=now,
            updated_at=now,
            max_context_tokens=self._max_context_tokens,
            branches={MAIN_BRANCH: Branch(id=MAIN_BRANCH, created_at=now)},
        )
        self._conversations[conversation.id] = conversation
        self._persist(conversation)
        logger.info("Created conversation %s", conversation.id)
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise NotFoundError("conversation", conversation_id)
        return conversation

    def list_conversations(self) -> list[Conversation]:
        """Return all conversations, most recently updated first."""
        return sorted(self._conversations.values(), key=lambda c: c.updated_at, reverse=True)

    def rename_conversation(self, conversation_id: str, title: str) -> Conversation:
        conversation = self.get_conversation(conversation_id)
        conversation.title = title
        self._touch(conversation)
        self._persist(conversation)
        return conversation

    def delete_conversation(self, conversation_id: str) -> None:
        """Remove a conversation; deleting an unknown id is a no-op."""
        if self._conversations.pop(conversation_id, None) is not None:
            logger.info("Deleted conversation %s", conversation_id)
        self._repo.delete(conversation_id)

    # -- messages -----------------------------------------------------------

    def add_message(
        self,
        conversation_id: str,
        role: ChatRole | str,
        content: str,
        branch_id: str = MAIN_BRANCH,
    ) -> Message:
        """Append a user or assistant message, compressing the branch if due."""
        if role not in (ChatRole.USER, ChatRole.ASSISTANT):
            msg = f"role must be 'user' or 'assistant', got '{role}'"
            raise ValidationError(msg)
        conversation = self.get_conversation(conversation_id)
        branch = self._branch(conversation, branch_id)

        message = Message(
            id=_new_id(),
            role=ChatRole(role),
            content=content,
            timestamp=self._clock(),
            token_count=estimate_tokens(content),
            parent_id=branch.messages[-1].id if branch.messages else None,
        )
        branch.messages.append(message)
        if branch_id == MAIN_BRANCH:
            conversation.total_token_count += message.token_count
        self._touch(conversation)
        logger.debug(
            "Appended %s message %s to %s/%s (%d tokens)",
            message.role, message.id, conversation_id, branch_id, message.token_count,
        )

        used = conversation.total_token_count if branch_id == MAIN_BRANCH else branch.token_sum()
        if used > self._threshold:
            self._compress(conversation, branch)

        self._persist(conversation)
        return message

    def get_message(
        self, conversation_id: str, message_id: str, branch_id: str = MAIN_BRANCH
    ) -> Message:
        branch = self._branch(self.get_conversation(conversation_id), branch_id)
        for message in branch.messages:
            if message.id == message_id:
                return message
        raise NotFoundError("message", message_id)

    def thread(
        self, conversation_id: str, message_id: str, branch_id: str = MAIN_BRANCH
    ) -> list[Message]:
        """Follow ``parent_id`` back from *message_id*; returns oldest first."""
        branch = self._branch(self.get_conversation(conversation_id), branch_id)
        by_id = {m.id: m for m in branch.messages}
        current = by_id.get(message_id)
        if current is None:
            raise NotFoundError("message", message_id)
        chain: list[Message] = []
        seen: set[str] = set()
        while current is not None and current.id not in seen:
            seen.add(current.id)
            chain.append(current)
            current = by_id.get(current.parent_id) if current.parent_id else None
        chain.reverse()
        return chain

    # -- branches -----------------------------------------------------------

    def create_branch(self, conversation_id: str, parent_message_id: str) -> Branch:
        """Fork main at *parent_message_id* (inclusive) into a new branch."""
        conversation = self.get_conversation(conversation_id)
        main = conversation.main
        index = next(
            (i for i, m in enumerate(main.messages) if m.id == parent_message_id), None
        )
        if index is None:
            raise NotFoundError("message", parent_message_id)

        now = self._clock()
        branch = Branch(
            id=_new_id(),
            parent_message_id=parent_message_id,
            messages=[m.model_copy() for m in main.messages[: index + 1]],
            created_at=now,
        )
        conversation.branches[branch.id] = branch
        self._touch(conversation)
        self._persist(conversation)
        logger.info("Forked branch %s of %s at %s", branch.id, conversation_id, parent_message_id)
        return branch

    def switch_to_branch(self, conversation_id: str, branch_id: str) -> Branch:
        return self._branch(self.get_conversation(conversation_id), branch_id)

    # -- context ------------------------------------------------------------

    def get_context(
        self,
        conversation_id: str,
        branch_id: str = MAIN_BRANCH,
        max_tokens: int | None = None,
    ) -> list[Message]:
        """Return the newest messages that fit in *max_tokens*, oldest first.

        The walk stops at the first message that would overflow the budget,
        so the result may be empty.
        """
        conversation = self.get_conversation(conversation_id)
        branch = self._branch(conversation, branch_id)
        budget = TokenBudget(
            conversation.max_context_tokens if max_tokens is None else max_tokens
        )
        selected: list[Message] = []
        for message in reversed(branch.messages):
            if not budget.fits(message.token_count):
                break
            budget.consume(message.token_count)
            selected.append(message)
        selected.reverse()
        return selected

    @staticmethod
    def to_chat_messages(messages: list[Message]) -> list[ChatMessage]:
        """Convert stored messages into provider request messages."""
        return [ChatMessage(role=m.role, content=m.content) for m in messages]

    # -- import / export ----------------------------------------------------

    def export_to_markdown(self, conversation_id: str, branch_id: str = MAIN_BRANCH) -> str:
        conversation = self.get_conversation(conversation_id)
        branch = self._branch(conversation, branch_id)
        lines = [
            f"# {conversation.title}",
            "",
            f"Created: {_format_time(conversation.created_at)}",
            f"Updated: {_format_time(conversation.updated_at)}",
            f"Messages: {len(branch.messages)}",
            "",
            "---",
            "",
        ]
        for message in branch.messages:
            lines += [
                f"## {message.role.value.capitalize()} ({_format_time(message.timestamp)})",
                "",
                message.content,
                "",
                "---",
                "",
            ]
        return "\n".join(lines)

    def export_to_json(self, conversation_id: str) -> str:
        conversation = self.get_conversation(conversation_id)
        data = conversation.model_dump(mode="json")
        data["exported_at"] = datetime.now(tz=UTC).isoformat()
        return json.dumps(data, indent=2, ensure_ascii=False)

    def import_from_json(self, data: str) -> Conversation:
        """Import an exported conversation under a freshly minted id."""
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as exc:
            msg = f"conversation import is not valid JSON: {exc}"
            raise ValidationError(msg) from exc
        if not isinstance(payload, dict):
            msg = "conversation import must be a JSON object"
            raise ValidationError(msg)
        payload.pop("exported_at", None)
        payload["id"] = _new_id()
        try:
            conversation = Conversation.model_validate(payload)
        except PydanticValidationError as exc:
            msg = f"conversation import is malformed: {exc}"
            raise ValidationError(msg) from exc
        if MAIN_BRANCH not in conversation.branches:
            msg = "conversation import has no main branch"
            raise ValidationError(msg)

        # Branch ids are the dict keys; stored ids are not trusted.
        for key, branch in conversation.branches.items():
            branch.id = key
        conversation.total_token_count = conversation.main.token_sum()
        conversation.updated_at = max(conversation.updated_at, conversation.created_at)
        self._conversations[conversation.id] = conversation
        self._persist(conversation)
        logger.info("Imported conversation %s", conversation.id)
        return conversation

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _branch(conversation: Conversation, branch_id: str) -> Branch:
        branch = conversation.branches.get(branch_id)
        if branch is None:
            raise NotFoundError("branch", branch_id)
        return branch

    def _touch(self, conversation: Conversation) -> None:
        conversation.updated_at = max(conversation.updated_at, self._clock())

    def _persist(self, conversation: Conversation) -> None:
        self._repo.put(conversation.id, conversation)

    def _compress(self, conversation: Conversation, branch: Branch) -> None:
        plan = self._compressor.plan(branch.messages)
        if plan is None:
            return
        with trace_compression(conversation.id, self._tracer):
            summary = Message(
                id=_new_id(),
                role=ChatRole.SYSTEM,
                content=plan.summary,
                timestamp=self._clock(),
                token_count=estimate_tokens(plan.summary),
            )
            recent = branch.messages[-plan.kept_count:]
            # Re-parent the oldest survivor so thread walks reach the summary.
            recent[0] = recent[0].model_copy(update={"parent_id": summary.id})
            branch.messages = [summary, *recent]
            if branch is conversation.main:
                conversation.total_token_count = branch.token_sum()
        logger.info(
            "Compressed %s/%s: %d messages summarized, %d kept",
            conversation.id, branch.id, plan.summarized_count, plan.kept_count,
        )


def _format_time(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=UTC).strftime("%Y-%m-%d %H:%M:%S UTC")
