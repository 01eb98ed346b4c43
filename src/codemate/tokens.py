"""Token estimation and budget tracking."""

from __future__ import annotations

import math

# Average characters per token for English prose and source code.
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Estimate token count from text. Rough heuristic: ceil(chars / 4)."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class TokenBudget:
    """Tracks token consumption against a configured maximum."""

    def __init__(self, max_tokens: int) -> None:
        if max_tokens < 0:
            msg = "max_tokens must not be negative"
            raise ValueError(msg)
        self._max = max_tokens
        self._consumed = 0

    def consume(self, tokens: int) -> None:
        self._consumed += tokens

    def fits(self, tokens: int) -> bool:
        """Return True when *tokens* more would stay within the maximum."""
        return self._consumed + tokens <= self._max

    def remaining(self) -> int:
        return self._max - self._consumed

    def is_within_budget(self) -> bool:
        return self._consumed <= self._max

    def overflow(self) -> int:
        return max(0, self._consumed - self._max)

    @property
    def max_tokens(self) -> int:
        return self._max

    @property
    def consumed(self) -> int:
        return self._consumed
