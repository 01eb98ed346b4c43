"""Context compression — collapse old conversation history into one summary."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from .provider import ChatRole

# Substring (lower-cased) -> topic label. Order is the order topics are reported.
DEFAULT_TOPICS: tuple[tuple[str, str], ...] = (
    ("code", "code"),
    ("debug", "debugging"),
    ("optimi", "optimization"),
    ("feature", "feature development"),
    ("test", "testing"),
    ("refactor", "refactoring"),
)

SUMMARY_PREFIX = "[Conversation summary]"


class _HasRoleAndContent(Protocol):
    @property
    def role(self) -> ChatRole: ...

    @property
    def content(self) -> str: ...


@dataclass
class CompressionPlan:
    """Which messages get summarized and which survive verbatim."""

    summarized_count: int
    kept_count: int
    summary: str


class SummaryCompressor:
    """Keyword-digest compressor.

    Keeps the ``keep_recent`` newest messages verbatim and replaces the rest
    with a single summary line. Branches shorter than ``min_messages`` are
    never compressed. The summary is lossy: topic keywords plus a count.
    """

    def __init__(
        self,
        keep_recent: int = 5,
        min_messages: int = 10,
        topics: Sequence[tuple[str, str]] = DEFAULT_TOPICS,
    ) -> None:
        if keep_recent < 1:
            msg = "keep_recent must be at least 1"
            raise ValueError(msg)
        if min_messages <= keep_recent:
            msg = "min_messages must be greater than keep_recent"
            raise ValueError(msg)
        self._keep_recent = keep_recent
        self._min_messages = min_messages
        self._topics = tuple(topics)

    @property
    def keep_recent(self) -> int:
        return self._keep_recent

    def should_compress(self, messages: Sequence[_HasRoleAndContent]) -> bool:
        return len(messages) >= self._min_messages

    def detect_topics(self, messages: Sequence[_HasRoleAndContent]) -> list[str]:
        """Return topic labels mentioned in user messages, in vocabulary order."""
        found: set[str] = set()
        for message in messages:
            if message.role != ChatRole.USER:
                continue
            lowered = message.content.lower()
            for needle, label in self._topics:
                if needle in lowered:
                    found.add(label)
        return [label for _needle, label in self._topics if label in found]

    def summarize(self, messages: Sequence[_HasRoleAndContent]) -> str:
        topics = self.detect_topics(messages)
        topic_text = ", ".join(topics) if topics else "general questions"
        return f"{SUMMARY_PREFIX} User discussed {topic_text}; {len(messages)} messages"

    def plan(self, messages: Sequence[_HasRoleAndContent]) -> CompressionPlan | None:
        """Return the compression plan, or None when the branch is too short."""
        if not self.should_compress(messages):
            return None
        old = messages[: -self._keep_recent]
        return CompressionPlan(
            summarized_count=len(old),
            kept_count=self._keep_recent,
            summary=self.summarize(old),
        )
