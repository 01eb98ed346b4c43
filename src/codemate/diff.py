"""Line-level diff between two text revisions.

The comparison walks both line sequences with two cursors and a single line
of lookahead. It is not a minimal edit script: a moved block shows up as a
run of removals followed by a run of additions. Callers rely on the exact
output, so keep the lookahead rules unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from pydantic import BaseModel

from .errors import ValidationError


class DiffKind(StrEnum):
    """Kind of a single diff line."""

    ADD = "add"
    REMOVE = "remove"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class DiffLine:
    """One line of diff output.

    ``line_number`` is the new-side number for ``add``/``unchanged`` lines and
    the old-side number for ``remove`` lines (1-based).
    """

    kind: DiffKind
    content: str
    line_number: int
    old_line_number: int | None = None
    new_line_number: int | None = None


class ChangeStats(BaseModel):
    """Summary counts derived from a diff."""

    additions: int = 0
    deletions: int = 0
    modifications: int = 0


# ---------------------------------------------------------------------------
# Comparison
# ---------------------------------------------------------------------------


def compare_lines(old_content: str, new_content: str) -> list[DiffLine]:
    """Return the line diff turning *old_content* into *new_content*."""
    old_lines = old_content.split("\n")
    new_lines = new_content.split("\n")
    diff: list[DiffLine] = []
    i = j = 0

    while i < len(old_lines) or j < len(new_lines):
        if i >= len(old_lines):
            diff.append(_added(new_lines[j], j))
            j += 1
            continue
        if j >= len(new_lines):
            diff.append(_removed(old_lines[i], i))
            i += 1
            continue

        old_line, new_line = old_lines[i], new_lines[j]
        if old_line == new_line:
            diff.append(
                DiffLine(
                    kind=DiffKind.UNCHANGED,
                    content=new_line,
                    line_number=j + 1,
                    old_line_number=i + 1,
                    new_line_number=j + 1,
                )
            )
            i += 1
            j += 1
            continue

        next_old = old_lines[i + 1] if i + 1 < len(old_lines) else None
        next_new = new_lines[j + 1] if j + 1 < len(new_lines) else None
        if next_old == new_line:
            diff.append(_removed(old_line, i))
            i += 1
        elif next_new == old_line:
            diff.append(_added(new_line, j))
            j += 1
        else:
            # Substitution
            diff.append(_removed(old_line, i))
            diff.append(_added(new_line, j))
            i += 1
            j += 1

    return diff


def _added(content: str, index: int) -> DiffLine:
    return DiffLine(
        kind=DiffKind.ADD, content=content, line_number=index + 1, new_line_number=index + 1
    )


def _removed(content: str, index: int) -> DiffLine:
    return DiffLine(
        kind=DiffKind.REMOVE, content=content, line_number=index + 1, old_line_number=index + 1
    )


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


def change_stats(diff: list[DiffLine]) -> ChangeStats:
    """Derive change counts; paired add/remove lines count as modifications."""
    adds = sum(1 for d in diff if d.kind == DiffKind.ADD)
    removes = sum(1 for d in diff if d.kind == DiffKind.REMOVE)
    modifications = min(adds, removes)
    return ChangeStats(
        additions=adds - modifications,
        deletions=removes - modifications,
        modifications=modifications,
    )


def initial_stats(content: str) -> ChangeStats:
    """Stats for the first revision of a file: every line is an addition."""
    return ChangeStats(additions=len(content.split("\n")))


# ---------------------------------------------------------------------------
# Replay and rendering
# ---------------------------------------------------------------------------


def apply_diff(old_content: str, diff: list[DiffLine]) -> str:
    """Replay *diff* against *old_content* and return the new text.

    Raises ``ValidationError`` when the diff does not match the old text.
    """
    old_lines = old_content.split("\n")
    result: list[str] = []
    cursor = 0
    for line in diff:
        if line.kind == DiffKind.ADD:
            result.append(line.content)
            continue
        if cursor >= len(old_lines) or old_lines[cursor] != line.content:
            msg = f"diff does not apply at old line {cursor + 1}"
            raise ValidationError(msg)
        if line.kind == DiffKind.UNCHANGED:
            result.append(line.content)
        cursor += 1
    if cursor != len(old_lines):
        msg = f"diff leaves {len(old_lines) - cursor} old line(s) unconsumed"
        raise ValidationError(msg)
    return "\n".join(result)


_PREFIX = {DiffKind.ADD: "+", DiffKind.REMOVE: "-", DiffKind.UNCHANGED: " "}


def render_unified(diff: list[DiffLine]) -> str:
    """Render a diff as ``+``/``-``/space prefixed lines."""
    return "\n".join(f"{_PREFIX[d.kind]}{d.content}" for d in diff)
